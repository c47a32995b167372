"""Push-notification relay for recipients that are offline.

The relay is an external HTTP service. Notifications carry identifiers only,
never ciphertext or plaintext. Failures are reported in the returned
:class:`PushResult` and never propagate into the send path.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any

import httpx
from jose import jwt

from parley.core.settings import settings
from parley.models import Message

logger = logging.getLogger(__name__)

HTTP_BAD_REQUEST = 400
PUSH_TOKEN_TTL_SECONDS = 60


@dataclass(frozen=True)
class PushRelayConfig:
    """Immutable configuration for the push relay."""

    url: str | None
    timeout_seconds: float
    signing_secret: str | None

    @property
    def enabled(self) -> bool:
        return bool(self.url)


@dataclass(frozen=True)
class PushResult:
    """Outcome of a single notification attempt."""

    sent: bool
    reason: str | None = None


def load_push_config() -> PushRelayConfig:
    """Build configuration object from global settings."""

    return PushRelayConfig(
        url=settings.push_relay_url,
        timeout_seconds=float(settings.push_relay_timeout_seconds),
        signing_secret=settings.secret_key,
    )


def build_notification(message: Message) -> dict[str, Any]:
    """Return the content-free notification body for a message."""
    return {
        "recipientId": message.recipient_id,
        "senderId": message.sender_id,
        "conversationId": message.conversation_id,
        "messageId": message.id,
        "type": message.type,
    }


class PushRelay:
    """HTTP client wrapper for the push-notification relay."""

    def __init__(
        self,
        config: PushRelayConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config or load_push_config()
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._client_lock = asyncio.Lock()
        self._tasks: set[asyncio.Task[PushResult]] = set()
        self.sent_count = 0
        self.failed_count = 0

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    async def _ensure_client(self) -> httpx.AsyncClient:
        async with self._client_lock:
            if self._client is None:
                self._client = httpx.AsyncClient(
                    timeout=httpx.Timeout(self.config.timeout_seconds),
                    transport=self._transport,
                )
        return self._client

    def _build_auth_headers(self) -> dict[str, str]:
        if not self.config.signing_secret:
            return {}
        now = int(time.time())
        token = jwt.encode(
            {"iss": settings.app_name, "iat": now, "exp": now + PUSH_TOKEN_TTL_SECONDS},
            self.config.signing_secret,
            algorithm="HS256",
        )
        return {"Authorization": f"Bearer {token}"}

    async def notify(self, payload: dict[str, Any]) -> PushResult:
        """Send one notification. Never raises."""
        if not self.enabled:
            return PushResult(sent=False, reason="disabled")

        try:
            client = await self._ensure_client()
            response = await client.post(
                self.config.url or "",
                json=payload,
                headers=self._build_auth_headers(),
            )
        except httpx.HTTPError as exc:
            self.failed_count += 1
            logger.warning(
                "Push relay request failed for message %s: %s", payload.get("messageId"), exc
            )
            return PushResult(sent=False, reason="network_error")

        if response.status_code >= HTTP_BAD_REQUEST:
            self.failed_count += 1
            logger.warning(
                "Push relay rejected message %s with status %d",
                payload.get("messageId"),
                response.status_code,
            )
            return PushResult(sent=False, reason=f"http_{response.status_code}")

        self.sent_count += 1
        return PushResult(sent=True)

    async def notify_message(self, message: Message) -> PushResult:
        return await self.notify(build_notification(message))

    def schedule(self, message: Message) -> asyncio.Task[PushResult] | None:
        """Fire a notification in the background without blocking the caller."""
        if not self.enabled:
            return None
        # Snapshot now; the ORM instance may be detached before the task runs.
        task = asyncio.create_task(self.notify(build_notification(message)))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def close(self) -> None:
        """Wait for in-flight notifications and release the HTTP client."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        async with self._client_lock:
            if self._client is not None:
                await self._client.aclose()
                self._client = None
