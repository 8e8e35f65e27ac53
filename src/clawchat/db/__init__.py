"""Database package."""

from clawchat.db.base import Base

__all__ = ["Base"]
