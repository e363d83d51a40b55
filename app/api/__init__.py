"""API routes"""

from app.api import mirrors, servers, sync, users

__all__ = ["servers", "users", "mirrors", "sync"]
