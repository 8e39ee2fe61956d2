"""
Session persistence on SQLAlchemy.
"""

from .models import Base, SessionRecord, SessionResourceRecord
from .session_store import SessionStore

__all__ = ["Base", "SessionRecord", "SessionResourceRecord", "SessionStore"]
