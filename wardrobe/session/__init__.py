"""Session persistence helpers."""

from .store import Session, SessionStore, user_id_from_token

__all__ = ["Session", "SessionStore", "user_id_from_token"]
