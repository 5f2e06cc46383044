"""
Location History Store.

Append-only view of a trip's samples on top of a ``TrackingStore``.
"""

from __future__ import annotations

from typing import List, Optional
import logging

from ..core.clustering import DEFAULT_DISPLAY_POINTS, sample_for_display
from ..models import LocationFix, LocationSample, TrackingLog, Trip
from .base import TrackingStore


logger = logging.getLogger(__name__)


class LocationHistoryStore:
    """
    Append-only, monotonically sequenced location history.

    Samples are never updated or deleted. Readers that need fewer points
    (map rendering, clustering windows) subsample on read.
    """

    def __init__(self, store: TrackingStore):
        self._store = store

    async def append(self, trip: Trip, fix: LocationFix) -> int:
        """
        Store a fix for ``trip`` and stamp ``trip.last_ping_at``.

        The stamp is written to a fresh copy of the trip, so concurrent
        changes to other fields are kept; ``trip`` itself is updated too.

        Returns:
            The assigned sequence number
        """
        sample = await self._store.append_sample(trip.id, fix)
        trip.last_ping_at = fix.received_at
        current = await self._store.get_trip(trip.id)
        if current is not None:
            current.last_ping_at = fix.received_at
            await self._store.save_trip(current)
        logger.debug(
            f"Stored {fix.source.value} sample #{sample.sequence_number} for trip {trip.trip_code}"
        )
        return sample.sequence_number

    async def history(self, trip_id: str, limit: Optional[int] = None) -> List[LocationSample]:
        return await self._store.list_samples(trip_id, limit=limit)

    async def latest(self, trip_id: str) -> Optional[LocationSample]:
        return await self._store.latest_sample(trip_id)

    async def tracking_log(self, trip_id: str) -> Optional[TrackingLog]:
        return await self._store.get_tracking_log(trip_id)

    async def sample_for_display(
        self,
        trip_id: str,
        max_points: int = DEFAULT_DISPLAY_POINTS,
    ) -> List[LocationSample]:
        """
        Evenly spaced samples for rendering, first and last always kept.
        """
        samples = await self._store.list_samples(trip_id)
        return sample_for_display(samples, max_points=max_points)
