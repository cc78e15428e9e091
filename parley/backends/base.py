"""
Base backend abstraction.
The orchestrator only ever sees this interface, so tests can swap in a
scripted backend without touching the network.
"""

from __future__ import annotations

import abc
import logging
from typing import AsyncIterator

logger = logging.getLogger(__name__)


class BaseBackend(abc.ABC):
    """
    Abstract base for LLM backends.
    Each backend knows how to stream a completion and report health.
    """

    def __init__(self, name: str, url: str, timeout: float = 120, model: str = ""):
        self.name = name
        self.url = url.rstrip("/")
        self.timeout = timeout
        self.model = model

    @abc.abstractmethod
    def generate(self, messages: list[dict]) -> AsyncIterator[str]:
        """
        Stream a completion for an OpenAI-format messages list.
        Yields text fragments in generation order.
        Raises GenerationError if the call fails, before or mid-stream.
        """
        ...

    @abc.abstractmethod
    async def health_check(self) -> bool:
        """Check if this backend is reachable and responsive."""
        ...

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name!r} url={self.url!r}>"
