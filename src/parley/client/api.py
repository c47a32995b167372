"""Async HTTP client for the Parley REST API."""

from __future__ import annotations

import logging
from typing import Any

import httpx

logger = logging.getLogger(__name__)

HTTP_BAD_REQUEST = 400
HTTP_NOT_FOUND = 404
API_PREFIX = "/api/v1"


class MessagingApiError(RuntimeError):
    """Raised when a REST call fails at the network or HTTP level."""

    def __init__(self, detail: str, status_code: int | None = None) -> None:
        super().__init__(detail)
        self.detail = detail
        self.status_code = status_code


class MessagingApiClient:
    """HTTP client wrapper for the messaging endpoints."""

    def __init__(
        self,
        base_url: str,
        token: str,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 10.0,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=f"{base_url.rstrip('/')}{API_PREFIX}",
            headers={"Authorization": f"Bearer {token}"},
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise MessagingApiError(f"Request to {path} failed: {exc}") from exc

        if response.status_code >= HTTP_BAD_REQUEST:
            try:
                detail = response.json().get("detail", response.text)
            except ValueError:
                detail = response.text
            raise MessagingApiError(str(detail), status_code=response.status_code)
        return response.json()

    async def send_message(
        self,
        content: dict[str, Any],
        conversation_id: int | None = None,
        recipient_id: int | None = None,
        message_type: str = "text",
        attachments: list[dict[str, Any]] | None = None,
        reply_to: int | None = None,
        expires_in: int | None = None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {"content": content, "type": message_type}
        if conversation_id is not None:
            body["conversationId"] = conversation_id
        if recipient_id is not None:
            body["recipientId"] = recipient_id
        if attachments:
            body["attachments"] = attachments
        if reply_to is not None:
            body["replyTo"] = reply_to
        if expires_in is not None:
            body["expiresIn"] = expires_in
        return await self._request("POST", "/messages", json=body)

    async def get_messages(
        self,
        conversation_id: int,
        limit: int | None = None,
        before: str | None = None,
        after: str | None = None,
    ) -> dict[str, Any]:
        params: dict[str, Any] = {}
        if limit is not None:
            params["limit"] = limit
        if before is not None:
            params["before"] = before
        if after is not None:
            params["after"] = after
        return await self._request(
            "GET", f"/messages/conversation/{conversation_id}", params=params
        )

    async def get_conversations(self, limit: int | None = None, skip: int = 0) -> dict[str, Any]:
        params: dict[str, Any] = {"skip": skip}
        if limit is not None:
            params["limit"] = limit
        return await self._request("GET", "/messages/conversations", params=params)

    async def get_unread_count(self, conversation_id: int | None = None) -> int:
        params = {"conversationId": conversation_id} if conversation_id is not None else {}
        data = await self._request("GET", "/messages/unread", params=params)
        return int(data["unreadCount"])

    async def mark_read(self, message_id: int) -> dict[str, Any]:
        return await self._request("PUT", f"/messages/{message_id}/read")

    async def delete_message(self, message_id: int, for_everyone: bool = False) -> dict[str, Any]:
        return await self._request(
            "DELETE", f"/messages/{message_id}", json={"forEveryone": for_everyone}
        )

    async def exchange_keys(self, recipient_id: int, public_key: str) -> dict[str, Any]:
        return await self._request(
            "POST",
            "/messages/keys/exchange",
            json={"recipientId": recipient_id, "publicKey": public_key},
        )

    async def get_public_key(self, user_id: int) -> str | None:
        """Return the user's published key, or None if they have not published one."""
        try:
            data = await self._request("GET", f"/messages/keys/{user_id}")
        except MessagingApiError as exc:
            if exc.status_code == HTTP_NOT_FOUND:
                return None
            raise
        return data["publicKey"]

    async def close(self) -> None:
        await self._client.aclose()
