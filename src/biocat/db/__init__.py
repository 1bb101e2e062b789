# Re-export session helpers so callers can do: from biocat.db import session_scope
from .session import (
    create_db_engine,
    create_all,
    check_connection,
    session_scope,
    Base,
)

__all__ = [
    "create_db_engine",
    "create_all",
    "check_connection",
    "session_scope",
    "Base",
]
