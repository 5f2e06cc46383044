"""
Tracking health monitoring.

Two conditions on ongoing trips:

    tracking_lost  no location received for longer than the threshold
                   (critical past 2 hours, high otherwise)
    idle_time      the trip has been running longer than the idle
                   threshold without a single location

Both auto-resolve once locations flow again.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional
import logging

from ..models import AlertSeverity, AlertType, TrackingSettings, Trip, utcnow
from ..store.base import TrackingStore
from .manager import AlertLifecycleManager


logger = logging.getLogger(__name__)

CRITICAL_SILENCE_MINUTES = 120


@dataclass
class HealthOutcome:
    minutes_since_last_location: Optional[float] = None
    tracking_lost: bool = False
    idle: bool = False
    alerts_raised: int = 0
    alerts_resolved: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "minutes_since_last_location": (
                round(self.minutes_since_last_location)
                if self.minutes_since_last_location is not None else None
            ),
            "tracking_lost": self.tracking_lost,
            "idle": self.idle,
            "alerts_raised": self.alerts_raised,
            "alerts_resolved": self.alerts_resolved,
        }


class TrackingHealthMonitor:
    """Raises and resolves tracking_lost and idle_time alerts."""

    def __init__(self, store: TrackingStore, alerts: AlertLifecycleManager):
        self._store = store
        self._alerts = alerts

    async def check(
        self,
        trip: Trip,
        settings: Optional[TrackingSettings] = None,
        now: Optional[datetime] = None,
    ) -> HealthOutcome:
        settings = settings or TrackingSettings()
        now = now or utcnow()
        outcome = HealthOutcome()

        log = await self._store.get_tracking_log(trip.id)
        last_seen = (log.last_updated_at if log else None) or trip.last_ping_at or trip.actual_start_time
        if last_seen is None:
            return outcome

        silence = (now - last_seen).total_seconds() / 60
        outcome.minutes_since_last_location = silence

        if silence > settings.tracking_lost_threshold_minutes:
            outcome.tracking_lost = True
            severity = (
                AlertSeverity.CRITICAL if silence > CRITICAL_SILENCE_MINUTES else AlertSeverity.HIGH
            )
            alert = await self._alerts.create_alert(
                trip,
                AlertType.TRACKING_LOST,
                severity,
                "Tracking Lost",
                description=f"No location received for {round(silence)} minutes",
                threshold_value=settings.tracking_lost_threshold_minutes,
                actual_value=round(silence),
                metadata={"last_location_at": last_seen.isoformat()},
            )
            outcome.alerts_raised += 1 if alert else 0
        else:
            outcome.alerts_resolved += await self._alerts.auto_resolve(
                trip.id, AlertType.TRACKING_LOST, "Tracking resumed",
            )

        if log is None:
            started = trip.actual_start_time
            if started is not None:
                running = (now - started).total_seconds() / 60
                if running > settings.idle_threshold_minutes:
                    outcome.idle = True
                    alert = await self._alerts.create_alert(
                        trip,
                        AlertType.IDLE_TIME,
                        AlertSeverity.HIGH,
                        "No Movement Recorded",
                        description=(
                            f"Trip started {round(running)} minutes ago "
                            f"with no location updates"
                        ),
                        threshold_value=settings.idle_threshold_minutes,
                        actual_value=round(running),
                    )
                    outcome.alerts_raised += 1 if alert else 0
        else:
            outcome.alerts_resolved += await self._alerts.auto_resolve(
                trip.id, AlertType.IDLE_TIME, "Location updates received",
            )

        if outcome.tracking_lost or outcome.idle:
            logger.warning(f"Trip {trip.trip_code} tracking unhealthy: {outcome.to_dict()}")
        return outcome
