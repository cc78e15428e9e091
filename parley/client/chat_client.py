"""
HTTP client for a running parley server.

Posts one message per turn to /chat and reads the plain-text body as it
streams in. The server's X-Session-Id header is remembered so every later
turn continues the same conversation.
"""

from __future__ import annotations

import json
import logging

import httpx

from parley import SESSION_HEADER
from parley.config import get_config
from parley.errors import TransportError

logger = logging.getLogger(__name__)


class ChatClient:
    """Streams replies from POST /chat, keeping the session id between turns."""

    def __init__(
        self,
        server_url: str = "http://localhost:3001",
        session_id: str | None = None,
        timeout: float = 120,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.server_url = server_url.rstrip("/")
        self.session_id = session_id
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_config(cls, session_id: str | None = None) -> "ChatClient":
        c_cfg = get_config().get("client", {})
        return cls(
            server_url=c_cfg.get("server_url", "http://localhost:3001"),
            session_id=session_id,
            timeout=c_cfg.get("timeout", 120),
        )

    @staticmethod
    def _parse_error(resp: httpx.Response, raw: bytes) -> tuple[str, str | None]:
        """Return (message, session_id) from an error response."""
        try:
            data = json.loads(raw)
        except ValueError:
            data = None
        if isinstance(data, dict) and data.get("error"):
            sid = data.get("session_id")
            return f"HTTP {resp.status_code}: {data['error']}", sid if isinstance(sid, str) else None
        return f"HTTP {resp.status_code}: {raw[:200].decode('utf-8', 'replace')}", None

    async def stream(self, message: str):
        """Yield decoded reply text as it arrives."""
        payload = {"message": message}
        if self.session_id:
            payload["sessionId"] = self.session_id

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                async with client.stream("POST", f"{self.server_url}/chat", json=payload) as resp:
                    if resp.status_code >= 400:
                        raw = await resp.aread()
                        error_text, body_sid = self._parse_error(resp, raw)
                        sid = resp.headers.get(SESSION_HEADER) or body_sid
                        if not self.session_id and sid:
                            # A failed first turn may still have stored the user message.
                            self.session_id = sid
                        raise TransportError(error_text, session_id=sid)

                    sid = resp.headers.get(SESSION_HEADER)
                    if sid and sid != self.session_id:
                        logger.debug("Session id is now %s", sid)
                        self.session_id = sid

                    async for text in resp.aiter_text():
                        if text:
                            yield text
        except httpx.HTTPError as e:
            logger.warning("Chat request to %s failed: %s", self.server_url, e)
            raise TransportError(str(e) or e.__class__.__name__, session_id=self.session_id) from e

    async def send(self, message: str) -> str:
        """Send one message and return the complete reply."""
        chunks = []
        async for text in self.stream(message):
            chunks.append(text)
        return "".join(chunks)

    async def health(self) -> bool:
        try:
            async with httpx.AsyncClient(timeout=5, transport=self._transport) as client:
                resp = await client.get(f"{self.server_url}/health")
                return resp.status_code == 200
        except httpx.HTTPError:
            return False
