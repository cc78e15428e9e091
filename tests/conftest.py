"""
Shared fixtures: a temp SQLite store and a scripted generation backend.
"""

import asyncio

import pytest

from parley.backends.base import BaseBackend
from parley.storage.sqlite_store import SQLiteStore


class ScriptedBackend(BaseBackend):
    """
    Plays back one script per generate() call.
    A script is a list of items: strings are yielded as fragments,
    exceptions are raised, asyncio.Events are awaited (a gate).
    """

    def __init__(self, *scripts):
        super().__init__("scripted", "http://scripted", model="scripted-1")
        self.scripts = list(scripts)
        self.prompts: list[list[dict]] = []
        self.closed = 0

    async def generate(self, messages):
        self.prompts.append([dict(m) for m in messages])
        script = self.scripts.pop(0) if self.scripts else ["ok"]
        try:
            for item in script:
                if isinstance(item, BaseException):
                    raise item
                if isinstance(item, asyncio.Event):
                    await item.wait()
                    continue
                yield item
        finally:
            self.closed += 1

    async def health_check(self) -> bool:
        return True


@pytest.fixture
def store(tmp_path):
    """Create a fresh SQLite store for each test."""
    return SQLiteStore(str(tmp_path / "test.db"))
