"""
Conversation orchestrator: the core of parley.

Turns one inbound (session_id?, message) pair into an ordered, persisted,
streamed exchange. A turn runs in two phases:

  start_turn()   resolve the session, take its turn lock, load history,
                 store the user message, start generation and wait for the
                 first fragment. Any failure here is raised to the caller
                 before a single byte has been streamed.
  Turn.stream()  relay fragments as they arrive while accumulating them,
                 then store the assistant reply and release the lock.

Failure policy once streaming has started:
  - generation fails mid-stream: the stream just ends. Whatever was
    accumulated is stored if it is non-empty after stripping, so a
    truncated answer can end up in history. The status code was already
    sent and cannot be changed.
  - the caller disconnects: generation is abandoned and nothing is stored
    for the assistant.
In both cases the user message stays stored.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import AsyncIterator

from parley.backends.base import BaseBackend
from parley.errors import GenerationError, ParleyError, StorageError
from parley.prompts import DEFAULT_SYSTEM_PROMPT, build_prompt
from parley.sessions import SessionRegistry
from parley.storage.models import Message, Role
from parley.storage.sqlite_store import SQLiteStore

logger = logging.getLogger(__name__)


class Turn:
    """One in-flight exchange. Holds the session's turn lock until finished."""

    def __init__(
        self,
        orchestrator: "ConversationOrchestrator",
        session_id: str,
        user_message: Message,
        fragments: AsyncIterator[str],
        first_fragment: str,
    ):
        self.orchestrator = orchestrator
        self.session_id = session_id
        self.user_message = user_message
        self._fragments = fragments
        self._first = first_fragment
        self._started = time.monotonic()
        self._finished = False
        self.assistant_message: Message | None = None
        self.text = ""

    async def stream(self) -> AsyncIterator[str]:
        """Yield fragments in arrival order, then persist the reply."""
        if self._finished:
            return
        chunks: list[str] = []
        completed = False
        try:
            chunks.append(self._first)
            yield self._first
            async for fragment in self._fragments:
                chunks.append(fragment)
                yield fragment
            completed = True
        except (asyncio.CancelledError, GeneratorExit):
            logger.info(
                "Client left session %s mid-stream after %d fragments, reply discarded",
                self.session_id, len(chunks),
            )
            raise
        except Exception as e:
            completed = True
            if isinstance(e, GenerationError):
                logger.warning("Generation failed mid-stream for session %s: %s", self.session_id, e)
            else:
                logger.exception("Unexpected error mid-stream for session %s", self.session_id)
        finally:
            self.text = "".join(chunks)
            await self._finish(persist=completed)

    async def aclose(self) -> None:
        """Abandon a turn whose stream was never consumed."""
        if not self._finished:
            logger.info("Turn for session %s abandoned before streaming", self.session_id)
            await self._finish(persist=False)

    async def _finish(self, persist: bool) -> None:
        if self._finished:
            return
        self._finished = True
        try:
            try:
                await self._fragments.aclose()
            except Exception as e:
                logger.debug("Closing generation for session %s raised %s", self.session_id, e)
            if persist:
                self.assistant_message = self.orchestrator._store_reply(self.session_id, self.text)
                logger.info(
                    "Turn finished for session %s (%d chars, %.0fms)",
                    self.session_id, len(self.text), (time.monotonic() - self._started) * 1000,
                )
        finally:
            self.orchestrator.sessions.release(self.session_id)


class ConversationOrchestrator:
    """Assembles prompts, invokes the backend and persists both sides of a turn."""

    def __init__(
        self,
        store: SQLiteStore,
        backend: BaseBackend,
        sessions: SessionRegistry | None = None,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
    ):
        self.store = store
        self.backend = backend
        self.sessions = sessions or SessionRegistry()
        self.system_prompt = system_prompt

    async def start_turn(self, session_id: str | None, message: str) -> Turn:
        """
        Run everything up to the first generated fragment.
        Raises StorageError, GenerationError or SessionBusy, each tagged
        with the resolved session id. The lock is released on failure.
        """
        sid = self.sessions.resolve_session_id(session_id)
        await self.sessions.acquire(sid)
        fragments = None
        try:
            self.store.ensure_session(sid)
            history = self.store.list_messages(sid)
            prompt = build_prompt(self.system_prompt, history, message)
            user_message = self.store.append_message(sid, Role.USER, message)
            logger.debug("Session %s: %d prior messages, user message stored", sid, len(history))

            fragments = self.backend.generate(prompt).__aiter__()
            try:
                first = await fragments.__anext__()
            except StopAsyncIteration:
                raise GenerationError("Model returned no output") from None
            except GenerationError:
                raise
            except Exception as e:
                logger.exception("Backend raised unexpectedly for session %s", sid)
                raise GenerationError(str(e) or e.__class__.__name__) from e
        except BaseException as e:
            if fragments is not None:
                try:
                    await fragments.aclose()
                except Exception:
                    logger.debug("Ignoring error while closing failed generation", exc_info=True)
            self.sessions.release(sid)
            if isinstance(e, ParleyError):
                e.session_id = e.session_id or sid
                logger.warning("Turn failed before streaming for session %s: %s", sid, e)
            raise

        return Turn(self, sid, user_message, fragments, first)

    async def chat(self, session_id: str | None, message: str) -> tuple[str, str]:
        """Run a whole turn without a caller-side stream. Returns (session_id, reply)."""
        turn = await self.start_turn(session_id, message)
        async for _ in turn.stream():
            pass
        return turn.session_id, turn.text

    def history(self, session_id: str) -> list[Message]:
        return self.store.list_messages(session_id)

    def _store_reply(self, session_id: str, text: str) -> Message | None:
        if not text.strip():
            logger.info("Empty reply for session %s, not stored", session_id)
            return None
        try:
            return self.store.append_message(session_id, Role.ASSISTANT, text)
        except StorageError as e:
            logger.error("Could not store reply for session %s: %s", session_id, e)
            return None
