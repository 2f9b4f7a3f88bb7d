"""Store contract and the in-memory reference store."""

from .base import TrafficStore
from .memory import InMemoryTrafficStore

__all__ = ["InMemoryTrafficStore", "TrafficStore"]
