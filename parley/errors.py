"""
Error taxonomy for parley.

Every failure the conversation engine reports is a ParleyError. The HTTP
layer turns one raised before streaming starts into a JSON error with the
class's status_code; once streaming has begun they only end the stream.
"""

from __future__ import annotations


class ParleyError(Exception):
    """Base for all parley errors."""
    status_code = 500

    def __init__(self, message: str = "", session_id: str | None = None):
        super().__init__(message or self.__class__.__doc__)
        self.session_id = session_id

    @property
    def message(self) -> str:
        return str(self)


class StorageError(ParleyError):
    """Message store unreachable or misconfigured."""
    status_code = 503


class GenerationError(ParleyError):
    """Model call failed or returned no usable output."""
    status_code = 502


class SessionBusy(ParleyError):
    """Another turn is already in flight for this session."""
    status_code = 409


class TransportError(ParleyError):
    """Caller or server went away mid-stream."""
    status_code = 499
