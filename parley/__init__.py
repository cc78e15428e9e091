"""parley: spoken multi-turn conversations with a streamed LLM backend."""

__version__ = "0.1.0"

# Response header carrying the session id of a /chat turn.
SESSION_HEADER = "X-Session-Id"
