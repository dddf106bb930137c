import os
import re
from collections.abc import Mapping
from typing import Literal
from urllib.parse import urlsplit

from pydantic import BaseModel, Field, ValidationError, field_validator

from .exceptions import ConfigError

DEFAULT_JETSTREAM_URL = "wss://jetstream1.us-west.bsky.network/subscribe"
USER_AGENT = "Jetstream-Relay/1.0"

# upstream rejects more than this many wantedCollections
MAX_COLLECTIONS = 100
WILDCARD = "*"

CURSOR_BUFFER_US = 5 * 1000 * 1000
BACKOFF_BASE_MS = 1000
BACKOFF_MAX_MS = 30000
STATS_FLUSH_EVERY = 100
STATS_KEY = "stats"

_PATTERN_RE = re.compile(r"^[A-Za-z0-9-]+(\.[A-Za-z0-9-]+)*(\.\*)?$")

# env var name -> settings field
ENV_FIELDS = {
    "JETSTREAM_URL": "jetstream_url",
    "JETSTREAM_COLLECTIONS": "collections",
    "WEBHOOK_URL": "webhook_url",
    "WEBHOOK_BEARER_TOKEN": "webhook_bearer_token",
    "WEBHOOK_TIMEOUT": "webhook_timeout",
    "STATE_DB_PATH": "state_db_path",
    "QUEUE_DB_PATH": "queue_db_path",
    "QUEUE_NAME": "queue_name",
    "DEAD_LETTER_QUEUE": "dead_letter_queue",
    "QUEUE_MAX_BATCH_SIZE": "max_batch_size",
    "QUEUE_MAX_BATCH_WAIT": "max_batch_wait",
    "QUEUE_MAX_ATTEMPTS": "max_attempts",
    "QUEUE_VISIBILITY_TIMEOUT": "visibility_timeout",
    "QUEUE_RETRY_DELAY": "retry_delay",
    "CONSUMER_WORKERS": "consumer_workers",
    "LOG_LEVEL": "log_level",
    "HOST": "host",
    "PORT": "port",
}
_FIELD_ENV = {field: env for env, field in ENV_FIELDS.items()}


def is_valid_pattern(pattern: str) -> bool:
    """Exact dotted name, dotted prefix ending in `.*`, or the lone wildcard."""
    return pattern == WILDCARD or bool(_PATTERN_RE.match(pattern))


# app settings
class Settings(BaseModel):
    jetstream_url: str = DEFAULT_JETSTREAM_URL
    collections: list[str] = Field(default_factory=lambda: [WILDCARD])

    webhook_url: str
    webhook_bearer_token: str | None = None
    webhook_timeout: float = Field(10.0, gt=0)

    state_db_path: str = "data/state.db"
    queue_db_path: str = "data/queue.db"
    queue_name: str = Field("jetstream-events", min_length=1)
    dead_letter_queue: str = Field("jetstream-events-dlq", min_length=1)
    max_batch_size: int = Field(10, gt=0)
    max_batch_wait: float = Field(5.0, ge=0)
    max_attempts: int = Field(3, gt=0)
    visibility_timeout: float = Field(60.0, gt=0)
    retry_delay: float = Field(0.0, ge=0)
    consumer_workers: int = Field(2, gt=0)

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    host: str = "0.0.0.0"
    port: int = Field(8080, gt=0, lt=65536)

    @field_validator("collections", mode="before")
    @classmethod
    def split_collections(cls, v):
        if isinstance(v, str):
            v = v.split(",")
        return [p.strip() for p in v if p and p.strip()]

    @field_validator("collections")
    @classmethod
    def valid_collections(cls, v: list[str]) -> list[str]:
        if not v:
            raise ValueError("at least one collection pattern is required")
        if len(v) > MAX_COLLECTIONS:
            raise ValueError(f"at most {MAX_COLLECTIONS} collection patterns are allowed")
        if WILDCARD in v and len(v) > 1:
            raise ValueError("'*' cannot be combined with other patterns")
        bad = [p for p in v if not is_valid_pattern(p)]
        if bad:
            raise ValueError(f"invalid collection patterns: {', '.join(bad)}")
        return v

    @field_validator("jetstream_url")
    @classmethod
    def websocket_url(cls, v: str) -> str:
        parts = urlsplit(v.strip())
        if parts.scheme not in ("ws", "wss") or not parts.netloc:
            raise ValueError("must be a ws:// or wss:// URL")
        return v.strip()

    @field_validator("webhook_url")
    @classmethod
    def http_url(cls, v: str) -> str:
        parts = urlsplit(v.strip())
        if parts.scheme not in ("http", "https") or not parts.netloc:
            raise ValueError("must be an http:// or https:// URL")
        return v.strip()

    @field_validator("webhook_bearer_token", mode="before")
    @classmethod
    def blank_token(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @field_validator("log_level", mode="before")
    @classmethod
    def upper_level(cls, v):
        return v.upper() if isinstance(v, str) else v

    @property
    def wants_all_collections(self) -> bool:
        return self.collections == [WILDCARD]

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        """Build settings from environment variables.

        Raises ConfigError naming every missing or invalid variable.
        """
        environ = os.environ if environ is None else environ
        values = {
            field: environ[name]
            for name, field in ENV_FIELDS.items()
            if environ.get(name, "") != ""
        }
        try:
            return cls(**values)
        except ValidationError as e:
            problems = []
            for err in e.errors():
                field = str(err["loc"][0]) if err["loc"] else "settings"
                problems.append(f"{_FIELD_ENV.get(field, field)}: {err['msg']}")
            raise ConfigError("invalid configuration: " + "; ".join(problems)) from e


def load_settings() -> Settings:
    return Settings.from_env()
