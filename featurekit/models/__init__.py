"""
SQLAlchemy models.
"""

from featurekit.models.base import Base, StandardMixin, TimestampMixin, UUIDMixin

__all__ = [
    "Base",
    "StandardMixin",
    "TimestampMixin",
    "UUIDMixin",
]
