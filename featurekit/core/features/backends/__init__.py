"""
Feature repository backends.
"""

from .memory import MemoryFeatureRepository
from .database import DatabaseFeatureRepository

__all__ = ["MemoryFeatureRepository", "DatabaseFeatureRepository"]
