"""Database primitives: declarative base and engine/session management."""

from series_kernel.db.base import Base, TrackedBase, UUIDString

__all__ = ["Base", "TrackedBase", "UUIDString"]
