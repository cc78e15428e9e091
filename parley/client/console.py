"""
Console stand-ins for the speech engines.

ConsoleCapture reads a typed line in place of a spoken transcript and
ConsolePlayback prints the reply in place of speaking it. They implement
the same capture/abort and speak/abort surface a real STT/TTS engine
would, so `parley talk` exercises the full turn-taking loop.
"""

from __future__ import annotations

import asyncio
import sys
from typing import Callable, TextIO


class ConsoleCapture:
    """Reads one line from stdin per capture. A blank line means silence."""

    def __init__(self, prompt: str = "you> ", on_eof: Callable[[], None] | None = None,
                 reader: Callable[[str], str] = input):
        self.prompt = prompt
        self.on_eof = on_eof
        self._reader = reader
        self.exhausted = False

    async def capture(self) -> str | None:
        if self.exhausted:
            return None
        try:
            line = await asyncio.to_thread(self._reader, self.prompt)
        except EOFError:
            self.exhausted = True
            if self.on_eof:
                self.on_eof()
            return None
        return line.strip() or None

    def abort(self) -> None:
        # A blocked input() can't be interrupted; the driver task is cancelled instead.
        pass


class ConsolePlayback:
    """Prints replies, pausing about as long as speaking them would take."""

    def __init__(self, out: TextIO | None = None, seconds_per_word: float = 0.0, prefix: str = "assistant> "):
        self.out = out or sys.stdout
        self.seconds_per_word = seconds_per_word
        self.prefix = prefix
        self.speaking = False

    async def speak(self, text: str) -> None:
        self.speaking = True
        try:
            print(f"{self.prefix}{text}", file=self.out, flush=True)
            if self.seconds_per_word:
                await asyncio.sleep(self.seconds_per_word * len(text.split()))
        finally:
            self.speaking = False

    def abort(self) -> None:
        self.speaking = False
