"""
Session registry: session id resolution and per-session turn serialization.

Only one turn may be in flight per session id, because
history read -> generate -> history write is not atomic. Two policies:

  reject  a competing request fails immediately with SessionBusy
  wait    it queues on the session's lock, up to wait_timeout seconds

Locks are created on demand and dropped when nobody holds or waits on them,
so the table never grows with the number of sessions ever seen.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from uuid import uuid4

from parley.config import get_config
from parley.errors import SessionBusy

logger = logging.getLogger(__name__)

BUSY_POLICIES = ("reject", "wait")


def resolve_session_id(candidate: str | None) -> str:
    """Return the caller's id if given, else a fresh random one."""
    if candidate and candidate.strip():
        return candidate
    return uuid4().hex


class _Entry:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = asyncio.Lock()
        self.users = 0


class SessionRegistry:
    """Resolves session ids and hands out per-session turn locks."""

    def __init__(self, busy_policy: str = "reject", wait_timeout: float = 30.0):
        if busy_policy not in BUSY_POLICIES:
            raise ValueError(f"busy_policy must be one of {BUSY_POLICIES}, got {busy_policy!r}")
        self.busy_policy = busy_policy
        self.wait_timeout = wait_timeout
        self._entries: dict[str, _Entry] = {}

    @classmethod
    def from_config(cls) -> "SessionRegistry":
        s_cfg = get_config().get("sessions", {})
        return cls(
            busy_policy=s_cfg.get("busy_policy", "reject"),
            wait_timeout=s_cfg.get("wait_timeout", 30.0),
        )

    def resolve_session_id(self, candidate: str | None) -> str:
        return resolve_session_id(candidate)

    def is_busy(self, session_id: str) -> bool:
        entry = self._entries.get(session_id)
        return entry is not None and entry.lock.locked()

    async def acquire(self, session_id: str) -> None:
        """Take the turn lock for a session or raise SessionBusy."""
        entry = self._entries.get(session_id)
        if entry is None:
            entry = self._entries[session_id] = _Entry()

        if self.busy_policy == "reject" and entry.lock.locked():
            logger.info("Session %s busy, rejecting request", session_id)
            raise SessionBusy(f"Session {session_id} already has a turn in progress", session_id=session_id)

        entry.users += 1
        try:
            if self.busy_policy == "reject":
                await entry.lock.acquire()
                return
            acquired = await self._wait_for(entry.lock)
        except BaseException:
            self._drop(session_id, entry)
            raise
        if not acquired:
            self._drop(session_id, entry)
            logger.info("Session %s still busy after %.1fs", session_id, self.wait_timeout)
            raise SessionBusy(
                f"Session {session_id} still busy after {self.wait_timeout}s", session_id=session_id
            )

    async def _wait_for(self, lock: asyncio.Lock) -> bool:
        """
        Wait up to wait_timeout for the lock. Returns True once it is held.
        A lock handed over just as the wait ends or the caller is cancelled
        is either kept and reported, or released.
        """
        waiter = asyncio.ensure_future(lock.acquire())
        try:
            await asyncio.wait({waiter}, timeout=self.wait_timeout)
        except BaseException:
            if waiter.done() and not waiter.cancelled():
                lock.release()
            else:
                waiter.cancel()
            raise
        if waiter.done():
            return True
        waiter.cancel()
        return False

    def release(self, session_id: str) -> None:
        entry = self._entries.get(session_id)
        if entry is None or not entry.lock.locked():
            return
        entry.lock.release()
        self._drop(session_id, entry)

    def _drop(self, session_id: str, entry: _Entry) -> None:
        entry.users -= 1
        if entry.users <= 0 and self._entries.get(session_id) is entry:
            del self._entries[session_id]

    @asynccontextmanager
    async def turn(self, session_id: str):
        """`async with registry.turn(sid):` holds the lock for one turn."""
        await self.acquire(session_id)
        try:
            yield
        finally:
            self.release(session_id)
