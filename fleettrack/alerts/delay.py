"""
Delay monitoring.

Classifies a trip's schedule deviation and keeps a single delay warning
in step with it: raised when the trip falls behind (or past due) and no
active warning exists, auto-resolved once the trip is back on schedule.
An existing active warning is never escalated or re-opened, even if the
delay grows.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional
import logging

from ..core.eta import DelayAssessment, DelayKind, classify_delay
from ..models import AlertStatus, AlertType, TrackingSettings, Trip, utcnow
from ..store.base import TrackingStore
from .manager import AlertLifecycleManager


logger = logging.getLogger(__name__)


class DelayMonitor:
    """Raises and resolves delay warnings."""

    def __init__(self, store: TrackingStore, alerts: AlertLifecycleManager):
        self._store = store
        self._alerts = alerts

    async def check(
        self,
        trip: Trip,
        settings: Optional[TrackingSettings] = None,
        now: Optional[datetime] = None,
    ) -> DelayAssessment:
        settings = settings or TrackingSettings()
        now = now or utcnow()
        assessment = classify_delay(trip, settings.delay_threshold_percent, now)

        if not assessment.evaluated:
            return assessment

        if assessment.is_delayed:
            active = await self._store.list_alerts(
                trip.id, alert_type=AlertType.DELAY_WARNING, statuses=(AlertStatus.ACTIVE,),
            )
            if not active:
                await self._raise(trip, assessment, settings.delay_threshold_percent)
        else:
            await self._alerts.auto_resolve(trip.id, AlertType.DELAY_WARNING, "Back on schedule")

        return assessment

    async def _raise(self, trip: Trip, assessment: DelayAssessment, threshold_percent: float) -> None:
        minutes = round(assessment.delay_minutes)
        if assessment.kind == DelayKind.PAST_DUE:
            title = "Trip Delayed - Past Due"
            description = (
                f"Trip {trip.trip_code} has passed its planned arrival "
                f"and needs about {minutes} more minutes"
            )
        else:
            title = "Delay Warning"
            description = (
                f"Trip {trip.trip_code} is running {assessment.delay_percent:.0f}% behind "
                f"schedule ({minutes} minutes late)"
            )

        await self._alerts.create_alert(
            trip,
            AlertType.DELAY_WARNING,
            assessment.severity,
            title,
            description=description,
            threshold_value=threshold_percent,
            actual_value=round(assessment.delay_percent, 1),
            metadata={
                "planned_eta": assessment.baseline.isoformat() if assessment.baseline else None,
                "current_eta": assessment.current_eta.isoformat() if assessment.current_eta else None,
                "delay_percent": round(assessment.delay_percent, 1),
                "delay_minutes": minutes,
                "delay_kind": assessment.kind.value,
            },
            dedup=False,
        )
