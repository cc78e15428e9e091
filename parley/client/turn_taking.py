"""
Client-side turn-taking state machine.

    Idle --start--> Listening --transcript--> Transmitting --> Speaking --> Idle

A single driver task walks through one turn at a time, so capture,
transmission and playback can never overlap. In continuous mode the driver
re-arms capture after each turn through an explicit scheduled transition
(a delay owned by the driver task), which stop() cancels along with
whatever capture or playback is running.

Every exit path releases the capture/playback resource it acquired, and
every error ends in Idle (or, in continuous mode, a scheduled retry).
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Protocol

from parley.config import get_config

logger = logging.getLogger(__name__)

DEFAULT_APOLOGY = "Sorry, I encountered an error. Please try again."


class State(str, Enum):
    IDLE = "idle"
    LISTENING = "listening"
    TRANSMITTING = "transmitting"
    SPEAKING = "speaking"


class Capture(Protocol):
    async def capture(self) -> str | None:
        """Finalized transcript, or None/"" for silence. Raises on error."""
        ...

    def abort(self) -> None:
        """Stop any capture in progress. Safe to call when idle."""
        ...


class Playback(Protocol):
    async def speak(self, text: str) -> None:
        """Return when the utterance has finished playing."""
        ...

    def abort(self) -> None:
        ...


class Transport(Protocol):
    async def send(self, message: str) -> str:
        ...


@dataclass(frozen=True)
class Controls:
    """Which user inputs are enabled right now."""
    start: bool
    stop: bool


@dataclass(frozen=True)
class ScheduledTransition:
    target: State
    delay: float


class TurnTakingMachine:
    """Sole owner of the capture and playback resources."""

    def __init__(
        self,
        capture: Capture,
        playback: Playback,
        transport: Transport,
        listen_restart_delay: float = 0.5,
        listen_error_delay: float = 1.0,
        speak_settle_delay: float = 0.3,
        apology: str = DEFAULT_APOLOGY,
        on_change: Callable[[State, State], None] | None = None,
    ):
        self.capture = capture
        self.playback = playback
        self.transport = transport
        self.listen_restart_delay = listen_restart_delay
        self.listen_error_delay = listen_error_delay
        self.speak_settle_delay = speak_settle_delay
        self.apology = apology
        self.state = State.IDLE
        self.continuous = False
        self.pending: ScheduledTransition | None = None
        self.last_transcript: str | None = None
        self.last_reply: str | None = None
        self._observers: list[Callable[[State, State], None]] = []
        if on_change:
            self._observers.append(on_change)
        self._task: asyncio.Task | None = None

    @classmethod
    def from_config(cls, capture: Capture, playback: Playback, transport: Transport, **kwargs) -> "TurnTakingMachine":
        c_cfg = get_config().get("client", {})
        return cls(
            capture,
            playback,
            transport,
            listen_restart_delay=c_cfg.get("listen_restart_delay", 0.5),
            listen_error_delay=c_cfg.get("listen_error_delay", 1.0),
            speak_settle_delay=c_cfg.get("speak_settle_delay", 0.3),
            apology=c_cfg.get("apology") or DEFAULT_APOLOGY,
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Public surface
    # ------------------------------------------------------------------

    def subscribe(self, observer: Callable[[State, State], None]) -> None:
        self._observers.append(observer)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def controls(self) -> Controls:
        # The start trigger is only live from a settled Idle.
        return Controls(
            start=not self.running and self.state is State.IDLE,
            stop=self.running or self.continuous,
        )

    def start(self, continuous: bool = False) -> bool:
        """Begin listening. Returns False if the start control is disabled."""
        if not self.controls().start:
            logger.debug("start ignored in state %s", self.state.value)
            return False
        self.continuous = continuous
        self._task = asyncio.get_running_loop().create_task(self._drive())
        return True

    async def stop(self) -> None:
        """Leave continuous mode, cancel capture/playback and return to Idle now."""
        self.continuous = False
        task = self._task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self.capture.abort()
        self.playback.abort()
        self.pending = None
        self._set_state(State.IDLE)

    async def wait(self) -> None:
        """Wait for the driver to finish (single turn, or until stopped)."""
        if self._task is not None:
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    # ------------------------------------------------------------------
    # Driver
    # ------------------------------------------------------------------

    def _set_state(self, new: State) -> None:
        old = self.state
        if old is new:
            return
        self.state = new
        logger.debug("turn state %s -> %s", old.value, new.value)
        for observer in list(self._observers):
            observer(old, new)

    @asynccontextmanager
    async def _holding(self, state: State, release: Callable[[], None] | None = None):
        """Enter a busy state; release its resource on every exit path."""
        self._set_state(state)
        try:
            yield
        finally:
            if release is not None:
                release()

    async def _drive(self) -> None:
        try:
            while True:
                delay = await self._turn()
                if not self.continuous:
                    break
                self.pending = ScheduledTransition(State.LISTENING, delay)
                await asyncio.sleep(delay)
                self.pending = None
        finally:
            self.pending = None

    async def _turn(self) -> float:
        """Run one listen/transmit/speak pass. Returns the delay before re-arming."""
        try:
            return await self._listen_transmit_speak()
        finally:
            self._set_state(State.IDLE)

    async def _listen_transmit_speak(self) -> float:
        try:
            async with self._holding(State.LISTENING, self.capture.abort):
                transcript = await self.capture.capture()
        except Exception as e:
            logger.warning("Capture failed: %s", e)
            return self.listen_error_delay

        if not transcript or not transcript.strip():
            logger.debug("Capture ended without a transcript")
            return self.listen_restart_delay
        self.last_transcript = transcript

        async with self._holding(State.TRANSMITTING):
            try:
                reply = await self.transport.send(transcript)
            except Exception as e:
                logger.warning("Transmission failed: %s", e)
                reply = ""
        # Something is always spoken: the reply, or the apology.
        text = reply.strip() or self.apology
        self.last_reply = text

        try:
            async with self._holding(State.SPEAKING, self.playback.abort):
                await self.playback.speak(text)
        except Exception as e:
            logger.warning("Playback failed: %s", e)
            return self.listen_error_delay
        return self.speak_settle_delay
