"""
Prompt assembly.

The system instruction is never stored. It is injected in front of the
stored history on every turn, so changing it takes effect immediately
for every session.
"""

from __future__ import annotations

from typing import Iterable

from parley.config import get_config
from parley.storage.models import Message, Role

# Replies are read aloud, so keep them short and free of markup.
DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful voice assistant. Your replies are spoken aloud. "
    "Answer briefly, in plain conversational language, in one to three sentences "
    "unless the user asks for more detail. Do not use markdown, lists, code blocks, "
    "emoji or any other formatting that cannot be spoken."
)


def system_prompt_from_config() -> str:
    return get_config().get("prompt", {}).get("system") or DEFAULT_SYSTEM_PROMPT


def build_prompt(system_prompt: str, history: Iterable[Message], user_message: str) -> list[dict]:
    """System instruction, then prior history in order, then the new user message."""
    messages = [{"role": Role.SYSTEM.value, "content": system_prompt}]
    messages.extend(m.to_openai_format() for m in history)
    messages.append({"role": Role.USER.value, "content": user_message})
    return messages
