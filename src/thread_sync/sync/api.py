"""HTTP fallback endpoints: thread index/fetch/CRUD, draft links, token balance."""

from __future__ import annotations

import inspect
import json
import logging
from typing import Any, Callable

import httpx

from thread_sync import config
from thread_sync.exceptions import ApiError

logger = logging.getLogger(__name__)


class ThreadsApiClient:
    """Async client for the thread HTTP API.

    Every call opens a short-lived ``httpx.AsyncClient``; errors come back as
    ``ApiError`` carrying the server's ``code`` and ``message`` when present.

    Args:
        base_url: API origin (defaults to ``THREAD_SYNC_API_URL``).
        get_credential: Callable (sync or async) returning a bearer token or None.
        timeout: Per-request timeout in seconds.
        transport: Optional httpx transport (e.g. ``httpx.MockTransport``).
    """

    def __init__(
        self,
        base_url: str | None = None,
        get_credential: Callable[[], Any] | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = (base_url or config.DEFAULT_API_URL).rstrip("/")
        self.timeout = timeout
        self._get_credential = get_credential
        self._transport = transport

    async def _credential(self) -> str | None:
        if self._get_credential is None:
            return None
        try:
            jwt = self._get_credential()
            if inspect.isawaitable(jwt):
                jwt = await jwt
        except Exception as e:
            raise ApiError(f"Credential provider failed: {e}", code="AUTH_FAILED") from e
        return jwt or None

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict:
        headers = {"Accept": "application/json"}
        jwt = await self._credential()
        if jwt:
            headers["Authorization"] = f"Bearer {jwt}"

        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.request(method, path, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            raise ApiError(f"{method} {path} failed: {e}", code="API_UNREACHABLE") from e

        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        if response.is_error:
            message = body.get("message") or f"HTTP {response.status_code}"
            logger.warning("%s %s -> %d: %s", method, path, response.status_code, message)
            raise ApiError(
                message,
                code=body.get("code"),
                payload=body,
                status_code=response.status_code,
            )
        return body

    # ------------------------------------------------------------------
    # Threads
    # ------------------------------------------------------------------

    async def threads_index(self, since: str | None = None) -> dict:
        """``{serverTime, threads: [{threadId, updatedAt, draftUpdatedAt, version, draftRev, deletedAt}]}``"""
        return await self._request("POST", "/api/threads/indexer", json={"since": since})

    async def get_thread(self, thread_id: str) -> dict | None:
        body = await self._request("POST", "/api/threads/get", json={"threadId": thread_id})
        thread = body.get("thread")
        return thread if isinstance(thread, dict) else None

    async def create_thread(self, thread_id: str, title: str) -> dict | None:
        body = await self._request(
            "POST", "/api/threads/create", json={"threadId": thread_id, "title": title}
        )
        thread = body.get("thread")
        return thread if isinstance(thread, dict) else None

    async def rename_thread(self, thread_id: str, title: str) -> dict:
        return await self._request(
            "POST", "/api/threads/rename", json={"threadId": thread_id, "title": title}
        )

    async def delete_thread(self, thread_id: str) -> dict:
        return await self._request("POST", "/api/threads/delete", json={"threadId": thread_id})

    # ------------------------------------------------------------------
    # Draft media
    # ------------------------------------------------------------------

    async def add_draft_link(
        self,
        thread_id: str,
        item_id: str,
        client_file_id: str,
        url: str,
        title: str | None = None,
        url_meta: dict | None = None,
    ) -> dict:
        """Register a media URL on the draft. Returns ``{draftFile, draftRev, draftUpdatedAt}``."""
        fields = {
            "threadId": thread_id,
            "itemId": item_id,
            "clientFileId": client_file_id,
            "sourceType": "url",
            "url": url,
            "title": title or "New Thread",
            "urlMeta": json.dumps(url_meta or {}),
        }
        # (None, value) parts force multipart/form-data without a file part
        return await self._request(
            "POST",
            "/api/threads/draft/upload",
            files={k: (None, v) for k, v in fields.items()},
        )

    async def delete_draft_media(self, thread_id: str, item_id: str) -> dict:
        return await self._request(
            "POST", "/api/threads/draft/delete", json={"threadId": thread_id, "itemId": item_id}
        )

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    async def get_tokens(self) -> dict:
        """``{mediaTokens, mediaTokensBalance, mediaTokensReserved, pricingVersion, serverTime}``"""
        return await self._request("GET", "/api/auth/tokens")
