"""
Generation backends for parley.
A backend turns an ordered prompt into a stream of text fragments.
"""
from parley.backends.base import BaseBackend
from parley.backends.openai_compat import OpenAICompatibleBackend

__all__ = [
    "BaseBackend",
    "OpenAICompatibleBackend",
]
