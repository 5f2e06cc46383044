"""
FleetTrack Trip State Machine

Owns trip status. Every change goes through the transition table below
and writes an immutable TripAuditLog entry.

    created   -> ongoing | cancelled
    ongoing   -> on_hold | completed | cancelled
    on_hold   -> ongoing | completed | cancelled
    completed -> closed
    cancelled -> closed
    closed    (terminal)

Start and complete are never blocked by location. ``validate_for_action``
is the dry run the caller uses to decide whether to proceed; when the
operator proceeds despite a failed check they pass ``skip_validation``
with an override reason, which is recorded in the audit entry. Either
way one position is recorded on a best-effort basis, reusing the fix
from a recent validation of the same action when there is one.

Completion additionally enforces proof of delivery: every shipment on
the trip must have its POD collected unless ``skip_pod_check`` is set.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple
import logging

from ..core.geofence import evaluate
from ..exceptions import (
    FleetTrackError,
    GeofenceMissingCoordinatesError,
    InvalidTransitionError,
    NotFoundError,
    PodNotCollectedError,
    ProviderError,
    TrackingConfigError,
)
from ..models import (
    LocationFix,
    TrackingSettings,
    TrackingType,
    Trip,
    TripAction,
    TripAuditLog,
    TripStatus,
    ValidationResult,
    utcnow,
)
from ..providers.adapter import TelemetryProviderAdapter
from ..store.base import TrackingStore
from ..store.history import LocationHistoryStore
from .shipments import deliver_remaining_shipments


logger = logging.getLogger(__name__)


TRANSITIONS: Dict[TripStatus, frozenset] = {
    TripStatus.CREATED: frozenset({TripStatus.ONGOING, TripStatus.CANCELLED}),
    TripStatus.ONGOING: frozenset({TripStatus.ON_HOLD, TripStatus.COMPLETED, TripStatus.CANCELLED}),
    TripStatus.ON_HOLD: frozenset({TripStatus.ONGOING, TripStatus.COMPLETED, TripStatus.CANCELLED}),
    TripStatus.COMPLETED: frozenset({TripStatus.CLOSED}),
    TripStatus.CANCELLED: frozenset({TripStatus.CLOSED}),
    TripStatus.CLOSED: frozenset(),
}

AUTO_START_OVERRIDE_REASON = "geofence auto-start"

# A validation fix older than this is fetched again at start/complete
VALIDATION_FIX_REUSE = timedelta(minutes=2)


@dataclass
class AutoStartOutcome:
    """Result of an auto-start attempt for one trip."""
    auto_started: bool
    reason: str
    distance_meters: Optional[float] = None
    radius_meters: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "auto_started": self.auto_started,
            "reason": self.reason,
            "distance_meters": round(self.distance_meters) if self.distance_meters is not None else None,
            "radius_meters": self.radius_meters,
        }


class TripStateMachine:
    """
    Trip lifecycle operations.

    Example:
        machine = TripStateMachine(store, adapter, history)
        result = await machine.validate_for_action(trip, TripAction.START)
        if result.valid:
            await machine.start(trip.id)
        else:
            await machine.start(trip.id, skip_validation=True, override_reason="GPS device offline")
    """

    def __init__(
        self,
        store: TrackingStore,
        adapter: TelemetryProviderAdapter,
        history: LocationHistoryStore,
    ):
        self._store = store
        self._adapter = adapter
        self._history = history
        self._validation_fixes: Dict[Tuple[str, TripAction], LocationFix] = {}

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def get_trip(self, trip_id: str) -> Trip:
        trip = await self._store.get_trip(trip_id)
        if trip is None:
            raise NotFoundError("trip", trip_id)
        return trip

    @staticmethod
    def _check_transition(trip: Trip, target: TripStatus) -> None:
        if target not in TRANSITIONS[trip.status]:
            raise InvalidTransitionError("trip", trip.status.value, target.value)

    async def _apply(
        self,
        trip: Trip,
        target: TripStatus,
        reason: str,
        metadata: Optional[Dict[str, Any]] = None,
        changed_by: Optional[str] = None,
    ) -> Trip:
        self._check_transition(trip, target)
        previous = trip.status
        trip.status = target
        await self._store.save_trip(trip)
        await self._store.add_trip_audit(TripAuditLog(
            trip_id=trip.id,
            previous_status=previous,
            new_status=target,
            change_reason=reason,
            changed_by=changed_by,
            metadata=metadata or {},
        ))
        logger.info(f"Trip {trip.trip_code}: {previous.value} -> {target.value} ({reason})")
        return trip

    @staticmethod
    def _require_reason(skip_validation: bool, override_reason: Optional[str]) -> None:
        if skip_validation and not (override_reason and override_reason.strip()):
            raise ValueError("An override reason is required when skipping location validation")

    @staticmethod
    def _target(trip: Trip, action: TripAction):
        return trip.origin if action == TripAction.START else trip.destination

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    async def validate_for_action(
        self,
        trip: Trip,
        action: TripAction,
        settings: Optional[TrackingSettings] = None,
    ) -> ValidationResult:
        """
        Check whether the trip is at its origin (start) or destination
        (complete). Does not change the trip; the fix is kept briefly so a
        following start/complete can record it without a second fetch.

        Raises:
            GeofenceMissingCoordinatesError: target has no coordinates

        Returns:
            ValidationResult; ``valid=False`` with ``error`` set when the
            position could not be determined
        """
        result, fix = await self._validate(trip, action, settings)
        if fix is not None:
            self._validation_fixes[(trip.id, action)] = fix
        return result

    async def _validate(
        self,
        trip: Trip,
        action: TripAction,
        settings: Optional[TrackingSettings],
    ) -> Tuple[ValidationResult, Optional[LocationFix]]:
        target = self._target(trip, action)
        if target is None or not target.has_coordinates:
            side = "Origin" if action == TripAction.START else "Destination"
            raise GeofenceMissingCoordinatesError(f"{side} location coordinates not configured")

        if trip.tracking_type == TrackingType.NONE:
            return ValidationResult(
                valid=False,
                action=action,
                target_location=target,
                tracking_type=trip.tracking_type,
                error="No tracking configured for this trip",
            ), None

        try:
            fix = await self._adapter.fetch_location(trip, settings)
        except (TrackingConfigError, ProviderError) as e:
            logger.warning(f"Location validation for trip {trip.trip_code} could not fetch location: {e}")
            return ValidationResult(
                valid=False,
                action=action,
                target_location=target,
                tracking_type=trip.tracking_type,
                error=str(e),
            ), None

        geofence = evaluate(fix.point, target, trip.tracking_type)
        return ValidationResult(
            valid=geofence.within_geofence,
            action=action,
            distance_meters=round(geofence.distance_meters),
            radius_meters=geofence.radius_meters,
            current_location=fix.point,
            target_location=target,
            tracking_type=trip.tracking_type,
            stale=fix.stale,
            stale_minutes=round(fix.age_minutes) if fix.stale else None,
        ), fix

    def _take_validation_fix(self, trip_id: str, action: TripAction) -> Optional[LocationFix]:
        fix = self._validation_fixes.pop((trip_id, action), None)
        if fix is None or utcnow() - fix.received_at > VALIDATION_FIX_REUSE:
            return None
        return fix

    async def _record_best_effort(
        self,
        trip: Trip,
        fix: Optional[LocationFix],
        settings: Optional[TrackingSettings],
    ) -> Optional[LocationFix]:
        """Store one sample; failures are logged and never block the transition."""
        if trip.tracking_type == TrackingType.NONE:
            return None
        try:
            if fix is None:
                fix = await self._adapter.fetch_location(trip, settings)
            await self._history.append(trip, fix)
            return fix
        except FleetTrackError as e:
            logger.warning(f"Could not record location for trip {trip.trip_code}: {e}")
            return None

    @staticmethod
    def _location_metadata(fix: Optional[LocationFix]) -> Optional[Dict[str, Any]]:
        if fix is None:
            return None
        return {
            "latitude": fix.latitude,
            "longitude": fix.longitude,
            "event_time": fix.event_time.isoformat(),
            "stale": fix.stale,
        }

    # -------------------------------------------------------------------------
    # Start / complete
    # -------------------------------------------------------------------------

    async def start(
        self,
        trip_id: str,
        skip_validation: bool = False,
        override_reason: Optional[str] = None,
        user_id: Optional[str] = None,
        settings: Optional[TrackingSettings] = None,
    ) -> Trip:
        """
        Start (or restart from hold) a trip.

        Location never blocks the start; ``skip_validation`` only marks the
        audit entry as an override of a failed or skipped check.

        Raises:
            InvalidTransitionError: trip already ongoing, completed, or otherwise not startable
            ValueError: ``skip_validation`` without an override reason
        """
        trip = await self.get_trip(trip_id)
        if trip.status == TripStatus.ONGOING:
            raise InvalidTransitionError(
                "trip", trip.status.value, TripStatus.ONGOING.value, "Trip is already in progress",
            )
        if trip.status == TripStatus.COMPLETED:
            raise InvalidTransitionError(
                "trip", trip.status.value, TripStatus.ONGOING.value, "Trip is already completed",
            )
        self._check_transition(trip, TripStatus.ONGOING)
        self._require_reason(skip_validation, override_reason)

        fix = await self._record_best_effort(
            trip, self._take_validation_fix(trip.id, TripAction.START), settings,
        )

        trip.actual_start_time = trip.actual_start_time or utcnow()
        reason = (
            f"Trip started with location override: {override_reason}"
            if skip_validation else "Trip started"
        )
        return await self._apply(
            trip,
            TripStatus.ONGOING,
            reason,
            metadata={
                "initial_location": self._location_metadata(fix),
                "tracking_source": trip.tracking_type.value,
                "validation_overridden": skip_validation,
                "override_reason": override_reason if skip_validation else None,
            },
            changed_by=user_id,
        )

    async def complete(
        self,
        trip_id: str,
        skip_validation: bool = False,
        override_reason: Optional[str] = None,
        skip_pod_check: bool = False,
        user_id: Optional[str] = None,
        settings: Optional[TrackingSettings] = None,
    ) -> Trip:
        """
        Complete an ongoing or on-hold trip.

        Raises:
            InvalidTransitionError: trip is not ongoing or on hold
            PodNotCollectedError: shipments without POD (lists their codes)
            ValueError: ``skip_validation`` without an override reason
        """
        trip = await self.get_trip(trip_id)
        if trip.status not in (TripStatus.ONGOING, TripStatus.ON_HOLD):
            raise InvalidTransitionError(
                "trip", trip.status.value, TripStatus.COMPLETED.value,
                f"Only ongoing or on-hold trips can be completed (trip is {trip.status.value})",
            )
        self._require_reason(skip_validation, override_reason)

        if not skip_pod_check:
            shipments = await self._store.list_shipments(trip.id)
            missing: List[str] = [s.shipment_code for s in shipments if not s.pod_collected]
            if missing:
                raise PodNotCollectedError(missing)

        fix = await self._record_best_effort(
            trip, self._take_validation_fix(trip.id, TripAction.COMPLETE), settings,
        )

        trip.actual_end_time = utcnow()
        reason = (
            f"Trip completed with location override: {override_reason}"
            if skip_validation else "Trip completed"
        )
        trip = await self._apply(
            trip,
            TripStatus.COMPLETED,
            reason,
            metadata={
                "final_location": self._location_metadata(fix),
                "tracking_source": trip.tracking_type.value,
                "validation_overridden": skip_validation,
                "override_reason": override_reason if skip_validation else None,
                "pod_check_skipped": skip_pod_check,
            },
            changed_by=user_id,
        )

        delivered = await deliver_remaining_shipments(self._store, trip)
        if delivered:
            logger.info(f"Trip {trip.trip_code}: marked {len(delivered)} shipment(s) delivered")
        return trip

    # -------------------------------------------------------------------------
    # Hold / resume / cancel / close
    # -------------------------------------------------------------------------

    async def hold(self, trip_id: str, reason: str, user_id: Optional[str] = None) -> Trip:
        trip = await self.get_trip(trip_id)
        return await self._apply(trip, TripStatus.ON_HOLD, f"Trip put on hold: {reason}", changed_by=user_id)

    async def resume(self, trip_id: str, user_id: Optional[str] = None) -> Trip:
        trip = await self.get_trip(trip_id)
        if trip.status != TripStatus.ON_HOLD:
            raise InvalidTransitionError(
                "trip", trip.status.value, TripStatus.ONGOING.value, "Only on-hold trips can be resumed",
            )
        return await self._apply(trip, TripStatus.ONGOING, "Trip resumed", changed_by=user_id)

    async def cancel(self, trip_id: str, reason: str, user_id: Optional[str] = None) -> Trip:
        trip = await self.get_trip(trip_id)
        return await self._apply(trip, TripStatus.CANCELLED, f"Trip cancelled: {reason}", changed_by=user_id)

    async def close(self, trip_id: str, user_id: Optional[str] = None) -> Trip:
        trip = await self.get_trip(trip_id)
        return await self._apply(trip, TripStatus.CLOSED, "Trip closed", changed_by=user_id)

    # -------------------------------------------------------------------------
    # Auto-start
    # -------------------------------------------------------------------------

    async def auto_start_on_geofence_entry(
        self,
        trip: Trip,
        settings: TrackingSettings,
    ) -> AutoStartOutcome:
        """
        Start a created trip once its vehicle is inside the origin geofence.

        Provider errors propagate so the calling scan can record them.
        """
        if not settings.geofence_auto_start_enabled:
            return AutoStartOutcome(False, "Geofence auto-start is disabled")
        if trip.status != TripStatus.CREATED:
            return AutoStartOutcome(False, f"Trip is {trip.status.value}")
        if trip.tracking_type == TrackingType.NONE:
            return AutoStartOutcome(False, "No tracking configured")
        if trip.origin is None or not trip.origin.has_coordinates:
            return AutoStartOutcome(False, "Origin coordinates not configured")

        fix = await self._adapter.fetch_location(trip, settings)
        geofence = evaluate(fix.point, trip.origin, trip.tracking_type)
        if not geofence.within_geofence:
            return AutoStartOutcome(
                False,
                f"Outside origin geofence ({round(geofence.distance_meters)}m > {geofence.radius_meters:.0f}m)",
                geofence.distance_meters,
                geofence.radius_meters,
            )

        await self._history.append(trip, fix)
        trip.actual_start_time = utcnow()
        await self._apply(
            trip,
            TripStatus.ONGOING,
            "Trip auto-started via geofence detection",
            metadata={
                "trigger": "geofence_auto_start",
                "initial_location": self._location_metadata(fix),
                "tracking_source": trip.tracking_type.value,
                "distance_meters": round(geofence.distance_meters),
                "radius_meters": geofence.radius_meters,
                "validation_overridden": False,
                "override_reason": AUTO_START_OVERRIDE_REASON,
            },
        )
        return AutoStartOutcome(
            True, "Vehicle inside origin geofence", geofence.distance_meters, geofence.radius_meters,
        )
