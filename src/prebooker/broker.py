"""QStash REST client for delayed webhook delivery.

Messages are published with Upstash-Not-Before so the broker holds them
until the dispatch instant, then POSTs the JSON body to the callback URL.
"""

from __future__ import annotations

import logging
from datetime import datetime

import httpx
import orjson

from prebooker.errors import ScheduleError

logger = logging.getLogger(__name__)


class QStashClient:
    """
    Minimal async client for the two calls the trigger needs.

        async with QStashClient(token="...") as broker:
            message_id = await broker.publish(url, body, not_before=dispatch_at)
            await broker.cancel(message_id)
    """

    def __init__(
        self,
        token: str,
        base_url: str = "https://qstash.upstash.io",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._token = token
        self._base_url = base_url.rstrip("/")
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> QStashClient:
        kwargs: dict = {
            "base_url": self._base_url,
            "headers": {"Authorization": f"Bearer {self._token}"},
            "timeout": httpx.Timeout(10.0, connect=5.0),
        }
        if self._transport is not None:
            kwargs["transport"] = self._transport
        self._client = httpx.AsyncClient(**kwargs)
        return self

    async def __aexit__(self, *args: object) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def publish(self, url: str, body: dict, not_before: datetime) -> str:
        """POST /v2/publish/{url}. Returns the message id."""
        assert self._client is not None
        headers = {
            "Content-Type": "application/json",
            "Upstash-Not-Before": str(int(not_before.timestamp())),
            # A redelivered timed attempt would land after the slot opened;
            # the cron sweep covers missed deliveries instead.
            "Upstash-Retries": "0",
        }
        try:
            resp = await self._client.post(
                f"/v2/publish/{url}", content=orjson.dumps(body), headers=headers
            )
        except httpx.HTTPError as e:
            raise ScheduleError(f"Failed to publish to QStash: {e}") from e

        if resp.status_code >= 400:
            raise ScheduleError(
                f"QStash rejected publish (HTTP {resp.status_code}): {resp.text[:200]}"
            )
        try:
            message_id = orjson.loads(resp.content).get("messageId")
        except (orjson.JSONDecodeError, AttributeError) as e:
            raise ScheduleError(
                f"Unexpected QStash publish response (HTTP {resp.status_code}): {resp.text[:200]}"
            ) from e
        if not message_id or not isinstance(message_id, str):
            raise ScheduleError("QStash publish response had no messageId")

        logger.info(
            "Published message %s (not before %s)", message_id, not_before.isoformat()
        )
        return message_id

    async def cancel(self, message_id: str) -> bool:
        """DELETE /v2/messages/{id}. Returns False if the message was already
        delivered or unknown (not an error)."""
        assert self._client is not None
        try:
            resp = await self._client.delete(f"/v2/messages/{message_id}")
        except httpx.HTTPError as e:
            raise ScheduleError(f"Failed to cancel QStash message: {e}") from e

        if resp.status_code == 404 or "not found" in resp.text.lower():
            logger.info("Message %s not found (already delivered?)", message_id)
            return False
        if resp.status_code >= 400:
            raise ScheduleError(
                f"QStash rejected cancel (HTTP {resp.status_code}): {resp.text[:200]}"
            )
        logger.info("Message %s cancelled", message_id)
        return True
