from parley.storage.models import Message, Role, Session
from parley.storage.sqlite_store import SQLiteStore

__all__ = ["Message", "Role", "Session", "SQLiteStore"]
