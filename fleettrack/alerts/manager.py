"""
FleetTrack Alert Lifecycle Manager

Creates, deduplicates, auto-resolves and updates alerts, and keeps each
trip's ``active_alert_count`` in step with its open alerts.

Status transitions:

    ACTIVE       -> ACKNOWLEDGED | RESOLVED | DISMISSED
    ACKNOWLEDGED -> RESOLVED | DISMISSED
    RESOLVED, DISMISSED are terminal

Auto-resolution (system driven) only ever moves ACTIVE -> RESOLVED; an
alert an operator has acknowledged stays with the operator.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional
import logging

from ..exceptions import FleetTrackError, InvalidTransitionError, NotFoundError
from ..models import (
    Alert,
    AlertSeverity,
    AlertStatus,
    AlertType,
    GeoPoint,
    Trip,
    utcnow,
)
from ..store.base import TrackingStore


logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS: Dict[AlertStatus, frozenset] = {
    AlertStatus.ACTIVE: frozenset({
        AlertStatus.ACKNOWLEDGED, AlertStatus.RESOLVED, AlertStatus.DISMISSED,
    }),
    AlertStatus.ACKNOWLEDGED: frozenset({AlertStatus.RESOLVED, AlertStatus.DISMISSED}),
    AlertStatus.RESOLVED: frozenset(),
    AlertStatus.DISMISSED: frozenset(),
}

OPEN_STATUSES = (AlertStatus.ACTIVE, AlertStatus.ACKNOWLEDGED)


@dataclass
class BulkUpdateResult:
    """Outcome of a bulk alert status update."""
    updated: List[Alert] = field(default_factory=list)
    failed_ids: List[str] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return not self.failed_ids

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "updated_count": len(self.updated),
            "failed_ids": list(self.failed_ids),
            "errors": dict(self.errors),
        }


class AlertLifecycleManager:
    """
    Owns every alert write.

    Example:
        alerts = AlertLifecycleManager(store)
        alert = await alerts.create_alert(
            trip, AlertType.TRACKING_LOST, AlertSeverity.HIGH, "Tracking Lost",
        )
    """

    def __init__(self, store: TrackingStore):
        self._store = store

    async def open_alerts(self, trip_id: str, alert_type: Optional[AlertType] = None) -> List[Alert]:
        return await self._store.list_alerts(trip_id, alert_type=alert_type, statuses=OPEN_STATUSES)

    async def create_alert(
        self,
        trip: Trip,
        alert_type: AlertType,
        severity: AlertSeverity,
        title: str,
        description: str = "",
        location: Optional[GeoPoint] = None,
        threshold_value: Optional[float] = None,
        actual_value: Optional[float] = None,
        metadata: Optional[Dict[str, Any]] = None,
        dedup: bool = True,
    ) -> Optional[Alert]:
        """
        Raise an alert against a trip.

        Args:
            dedup: Skip creation if an open alert of the same type exists.
                Callers with their own identity rule (stoppages) pass False.

        Returns:
            The new alert, or None if deduplicated
        """
        if dedup and await self.open_alerts(trip.id, alert_type):
            logger.debug(f"Open {alert_type.value} alert already exists for trip {trip.trip_code}")
            return None

        alert = Alert(
            trip_id=trip.id,
            alert_type=alert_type,
            severity=severity,
            title=title,
            description=description,
            location=location,
            threshold_value=threshold_value,
            actual_value=actual_value,
            metadata=dict(metadata or {}),
        )
        await self._store.save_alert(alert)
        logger.info(
            f"Raised {severity.value} {alert_type.value} alert for trip {trip.trip_code}: {title}"
        )
        await self.recount(trip.id)
        return alert

    async def auto_resolve(self, trip_id: str, alert_type: AlertType, reason: str) -> int:
        """
        Resolve every ACTIVE alert of ``alert_type`` on the trip because
        the underlying condition has cleared.

        Returns:
            Number of alerts resolved
        """
        active = await self._store.list_alerts(
            trip_id, alert_type=alert_type, statuses=(AlertStatus.ACTIVE,),
        )
        if not active:
            return 0

        now = utcnow()
        for alert in active:
            alert.status = AlertStatus.RESOLVED
            alert.resolved_at = now
            alert.resolved_by = "system"
            alert.metadata = {
                **alert.metadata,
                "auto_resolved": True,
                "resolution_reason": reason,
            }
            await self._store.save_alert(alert)

        logger.info(f"Auto-resolved {len(active)} {alert_type.value} alert(s) on trip {trip_id}: {reason}")
        await self.recount(trip_id)
        return len(active)

    async def update_status(
        self,
        alert_id: str,
        new_status: AlertStatus,
        user_id: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Alert:
        """
        Operator status change.

        Raises:
            NotFoundError: unknown alert
            InvalidTransitionError: change not allowed from the current status
        """
        alert = await self._store.get_alert(alert_id)
        if alert is None:
            raise NotFoundError("alert", alert_id)

        if new_status not in ALLOWED_TRANSITIONS[alert.status]:
            raise InvalidTransitionError("alert", alert.status.value, new_status.value)

        now = utcnow()
        alert.status = new_status
        if new_status == AlertStatus.ACKNOWLEDGED:
            alert.acknowledged_at = now
            alert.acknowledged_by = user_id
        else:
            alert.resolved_at = now
            alert.resolved_by = user_id

        if notes:
            alert.metadata = {
                **alert.metadata,
                "resolution_notes": notes,
                "action_taken_at": now.isoformat(),
            }

        await self._store.save_alert(alert)
        logger.info(f"Alert {alert_id} moved to {new_status.value} by {user_id or 'unknown'}")
        await self.recount(alert.trip_id)
        return alert

    async def bulk_update_status(
        self,
        alert_ids: Iterable[str],
        new_status: AlertStatus,
        user_id: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> BulkUpdateResult:
        """
        Apply one status change to many alerts. Failures are collected
        per alert; the remaining alerts are still updated.
        """
        result = BulkUpdateResult()
        for alert_id in alert_ids:
            try:
                result.updated.append(await self.update_status(alert_id, new_status, user_id, notes))
            except FleetTrackError as e:
                logger.warning(f"Bulk update skipped alert {alert_id}: {e}")
                result.failed_ids.append(alert_id)
                result.errors[alert_id] = str(e)
        return result

    async def recount(self, trip_id: str) -> int:
        """Recalculate ``active_alert_count`` (active + acknowledged)."""
        count = len(await self._store.list_alerts(trip_id, statuses=OPEN_STATUSES))
        trip = await self._store.get_trip(trip_id)
        if trip is not None and trip.active_alert_count != count:
            trip.active_alert_count = count
            await self._store.save_trip(trip)
        return count

    async def raise_consent_revoked(self, trip: Trip, msisdn: Optional[str] = None) -> Optional[Alert]:
        """Critical alert when a driver withdraws SIM tracking consent mid-trip."""
        return await self.create_alert(
            trip,
            AlertType.CONSENT_REVOKED,
            AlertSeverity.CRITICAL,
            "Tracking Consent Revoked",
            description=f"Driver revoked SIM tracking consent for trip {trip.trip_code}",
            metadata={"msisdn": msisdn} if msisdn else None,
        )
