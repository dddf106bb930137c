import logging

import httpx

from .config import USER_AGENT
from .exceptions import WebhookDeliveryError
from .models import Event

log = logging.getLogger("delivery")


class WebhookClient:
    # any 2xx is success; transport failures surface as httpx.HTTPError

    def __init__(
        self,
        url: str,
        bearer_token: str | None = None,
        timeout: float = 10.0,
        user_agent: str = USER_AGENT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.url = url
        headers = {"Content-Type": "application/json", "User-Agent": user_agent}
        if bearer_token:
            headers["Authorization"] = f"Bearer {bearer_token}"
        self._client = httpx.AsyncClient(headers=headers, timeout=timeout, transport=transport)

    async def deliver(self, event: Event) -> None:
        response = await self._client.post(self.url, json=event.raw())
        if not response.is_success:
            raise WebhookDeliveryError(
                f"webhook request failed: {response.status_code} {response.reason_phrase}",
                status_code=response.status_code,
            )

    async def close(self) -> None:
        await self._client.aclose()
