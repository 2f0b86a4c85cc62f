"""
Minimal Lark open-platform client: tenant token + reply to a message.

Replies are best-effort. Any failure is logged and reported as False;
the inbound webhook response never depends on delivery.
"""

from __future__ import annotations

import asyncio
import json
import time
from typing import Callable, Optional, Protocol

import httpx

from .logging_config import logger

TENANT_TOKEN_PATH = "/open-apis/auth/v3/tenant_access_token/internal"
REPLY_PATH_TEMPLATE = "/open-apis/im/v1/messages/{message_id}/reply"

# Refresh the tenant token this many seconds before it expires.
TOKEN_REFRESH_MARGIN = 60.0


class ReplySender(Protocol):
    async def reply(self, message_id: str, text: str) -> bool:
        ...


class LarkAPIError(Exception):
    def __init__(self, message: str, *, code: Optional[int] = None) -> None:
        super().__init__(message)
        self.code = code


class LarkMessenger:
    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        app_id: str,
        app_secret: str,
        base_url: str = "https://open.larksuite.com",
        timeout: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = client
        self._app_id = app_id
        self._app_secret = app_secret
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._clock = clock
        self._token: Optional[str] = None
        self._token_expires_at = 0.0
        self._token_lock = asyncio.Lock()

    async def _request(self, path: str, *, json_body: dict, token: Optional[str] = None) -> dict:
        headers = {"Content-Type": "application/json; charset=utf-8"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        resp = await self._client.post(
            self._base_url + path, headers=headers, json=json_body, timeout=self._timeout
        )
        try:
            data = resp.json()
        except ValueError as exc:
            raise LarkAPIError(f"HTTP {resp.status_code} with non-JSON body") from exc
        code = data.get("code") if isinstance(data, dict) else None
        if resp.status_code >= 400 or code != 0:
            msg = data.get("msg") if isinstance(data, dict) else None
            raise LarkAPIError(f"HTTP {resp.status_code}: {msg or data}", code=code)
        return data

    async def tenant_access_token(self) -> str:
        async with self._token_lock:
            if self._token and self._clock() < self._token_expires_at:
                return self._token
            data = await self._request(
                TENANT_TOKEN_PATH,
                json_body={"app_id": self._app_id, "app_secret": self._app_secret},
            )
            token = data.get("tenant_access_token")
            if not isinstance(token, str) or not token:
                raise LarkAPIError("tenant_access_token missing from response")
            expire = float(data.get("expire") or 0)
            self._token = token
            self._token_expires_at = self._clock() + max(0.0, expire - TOKEN_REFRESH_MARGIN)
            return token

    async def reply(self, message_id: str, text: str) -> bool:
        try:
            token = await self.tenant_access_token()
            await self._request(
                REPLY_PATH_TEMPLATE.format(message_id=message_id),
                json_body={
                    "msg_type": "text",
                    "content": json.dumps({"text": text}, ensure_ascii=False),
                },
                token=token,
            )
        except (httpx.HTTPError, LarkAPIError) as exc:
            logger.error("lark: failed to reply to message %s: %s", message_id, exc)
            return False
        return True


__all__ = ["ReplySender", "LarkAPIError", "LarkMessenger"]
