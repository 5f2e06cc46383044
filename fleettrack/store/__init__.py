"""
FleetTrack persistence: store contract, implementations, history view.
"""

from .base import TrackingStore
from .memory import InMemoryTrackingStore
from .redis_store import RedisTrackingStore, RedisConnectionManager
from .history import LocationHistoryStore

__all__ = [
    "TrackingStore",
    "InMemoryTrackingStore",
    "RedisTrackingStore",
    "RedisConnectionManager",
    "LocationHistoryStore",
]
