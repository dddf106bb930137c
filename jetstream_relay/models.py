from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_serializer


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# commit payload of a kind=commit event
class Commit(BaseModel):
    model_config = ConfigDict(extra="allow", frozen=True)

    rev: str
    operation: Literal["create", "update", "delete"]
    collection: str
    rkey: str
    record: dict[str, Any] | None = None
    cid: str | None = None


class IdentityInfo(BaseModel):
    model_config = ConfigDict(extra="allow", frozen=True)

    did: str | None = None
    handle: str | None = None
    seq: int | None = None
    time: str | None = None


class AccountInfo(BaseModel):
    model_config = ConfigDict(extra="allow", frozen=True)

    active: bool | None = None
    did: str | None = None
    seq: int | None = None
    time: str | None = None
    status: str | None = None


class Event(BaseModel):
    # unknown fields are kept and forwarded as received

    model_config = ConfigDict(extra="allow", frozen=True)

    did: str
    time_us: int
    kind: Literal["commit", "identity", "account"]
    commit: Commit | None = None
    identity: IdentityInfo | None = None
    account: AccountInfo | None = None

    @property
    def collection(self) -> str | None:
        return self.commit.collection if self.commit else None

    def raw(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_unset=True)


# persisted aggregate record
class StoredStats(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    cursor: int = 0
    event_counts: dict[str, int] = Field(default_factory=dict, alias="eventCounts")
    total_events: int = Field(0, alias="totalEvents")
    total_received: int = Field(0, alias="totalReceived")
    last_event_time: datetime = Field(default_factory=utcnow, alias="lastEventTime")

    def to_json_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class DeliveryTask(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    event: Event
    queued_at: datetime = Field(default_factory=utcnow, alias="queuedAt")
    retry_count: int = Field(0, alias="retryCount")

    @field_serializer("event")
    def _raw_event(self, event: Event) -> dict[str, Any]:
        return event.raw()


# a task leased from the queue; attempt counts from 1
class QueueMessage(BaseModel):
    id: int
    task: DeliveryTask
    attempt: int


class DeadLetter(BaseModel):
    id: int
    task: DeliveryTask | None
    body: str
    attempts: int
    last_error: str | None = None
    enqueued_at: datetime
    failed_at: datetime


class QueueDepth(BaseModel):
    pending: int = 0
    in_flight: int = 0
    dead: int = 0


class ConnectionStatus(BaseModel):
    connected: bool
    state: str | None = None
    url: str | None = None
