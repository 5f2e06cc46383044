"""
FleetTrack - Trip Tracking Engine

This module ties the components together behind one facade, ``TripTracker``.
It exposes:
    - Interactive operations: validate, start, complete, hold, resume,
      cancel, close, fetch-now, tracking history, alert status changes,
      settings
    - Batch scans, invoked by an external scheduler or on demand:
      location refresh, geofence/shipment status, delays, geofence
      auto-start, stoppages, tracking health
    - Credential maintenance: refresh_tokens, token_status

Every scan loads TrackingSettings once, processes trips independently
under a bounded semaphore, and folds per-trip outcomes into a
``BatchResult``. A failure on one trip never aborts the scan.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional
import logging

from .alerts import AlertLifecycleManager, BulkUpdateResult, DelayMonitor, StoppageDetector, TrackingHealthMonitor
from .config import FleetTrackConfig, get_config
from .core.clustering import DEFAULT_DISPLAY_POINTS, cluster_samples
from .core.eta import compute_eta
from .exceptions import InvalidTransitionError, NoConsentError, NotFoundError, StaleLocationError
from .lifecycle import AutoStartOutcome, ShipmentGeofenceProcessor, TripStateMachine
from .models import (
    Alert,
    AlertStatus,
    ConsentStatus,
    LocationFix,
    LocationSample,
    TrackingSettings,
    TrackingType,
    Trip,
    TripAction,
    TripStatus,
    TokenType,
    ValidationResult,
    utcnow,
)
from .providers import CredentialManager, GpsProviderClient, SimProviderClient, TelemetryProviderAdapter
from .results import BatchResult, TripResult
from .store import InMemoryTrackingStore, LocationHistoryStore, RedisTrackingStore, TrackingStore


logger = logging.getLogger(__name__)


@dataclass
class LocationUpdate:
    """A fix that has been stored for a trip."""
    sample: LocationSample
    stale: bool
    age_minutes: float
    current_eta: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sequence_number": self.sample.sequence_number,
            "latitude": self.sample.latitude,
            "longitude": self.sample.longitude,
            "event_time": self.sample.event_time.isoformat(),
            "source": self.sample.source.value,
            "detailed_address": self.sample.detailed_address,
            "stale": self.stale,
            "age_minutes": round(self.age_minutes),
            "current_eta": self.current_eta.isoformat() if self.current_eta else None,
        }


class TripTracker:
    """
    The FleetTrack engine.

    Example:
        tracker = TripTracker()
        result = await tracker.refresh_all_locations()
        logger.info(f"{result.succeeded}/{result.total} trips refreshed")

        validation = await tracker.validate_for_action(trip_id, TripAction.START)
        if validation.valid:
            await tracker.start_trip(trip_id, user_id="ops-1")
    """

    def __init__(
        self,
        config: Optional[FleetTrackConfig] = None,
        store: Optional[TrackingStore] = None,
        sim_client: Optional[SimProviderClient] = None,
        gps_client: Optional[GpsProviderClient] = None,
    ):
        """
        Initialize the tracker.

        Args:
            config: Deployment configuration (defaults to ``get_config()``)
            store: Persistence backend (defaults to Redis from config)
            sim_client: SIM provider client, e.g. one on a mock transport
            gps_client: GPS provider client
        """
        self._config = config or get_config()
        self._store = store or RedisTrackingStore.from_config(self._config.redis)

        self._sim = sim_client or SimProviderClient(self._config.sim)
        self._gps = gps_client or GpsProviderClient(self._config.gps)
        self._credentials = CredentialManager(
            self._store,
            {
                TokenType.AUTHENTICATION: self._sim.login,
                TokenType.ACCESS: self._sim.oauth_token,
            },
            lease_seconds=self._config.scan.credential_lease_seconds,
        )
        self._adapter = TelemetryProviderAdapter(
            self._store, self._credentials, self._sim, self._gps, self._config.scan,
        )
        self._history = LocationHistoryStore(self._store)
        self._alerts = AlertLifecycleManager(self._store)
        self._trips = TripStateMachine(self._store, self._adapter, self._history)
        self._shipments = ShipmentGeofenceProcessor(self._store, self._alerts)
        self._stoppages = StoppageDetector(self._store, self._alerts)
        self._delays = DelayMonitor(self._store, self._alerts)
        self._health = TrackingHealthMonitor(self._store, self._alerts)

    @classmethod
    def in_memory(cls, config: Optional[FleetTrackConfig] = None, **kwargs) -> "TripTracker":
        """Tracker over an in-memory store, for development and tests."""
        return cls(config=config, store=InMemoryTrackingStore(), **kwargs)

    @property
    def store(self) -> TrackingStore:
        return self._store

    @property
    def alerts(self) -> AlertLifecycleManager:
        return self._alerts

    @property
    def credentials(self) -> CredentialManager:
        return self._credentials

    async def close(self) -> None:
        """Clean up resources."""
        await self._adapter.close()
        await self._store.close()

    # =========================================================================
    # SETTINGS
    # =========================================================================

    async def load_settings(self) -> TrackingSettings:
        """Parse the stored settings table into a TrackingSettings value."""
        return TrackingSettings.from_mapping(await self._store.get_settings())

    async def get_settings(self) -> Dict[str, str]:
        """Every known setting with its default, overlaid with stored values."""
        return {**TrackingSettings.defaults_as_strings(), **await self._store.get_settings()}

    async def update_setting(self, key: str, value: Any) -> Dict[str, str]:
        """
        Store one setting. Values are kept as strings, booleans as
        ``"true"``/``"false"``.

        Raises:
            ValueError: value cannot be parsed for a known numeric key
        """
        text = ("true" if value else "false") if isinstance(value, bool) else str(value).strip()

        field = TrackingSettings.model_fields.get(key)
        if field is not None and field.annotation is not bool:
            try:
                float(text)
            except ValueError:
                raise ValueError(f"Setting {key} expects a number, got {text!r}")

        await self._store.set_setting(key, text)
        logger.info(f"Setting {key} updated to {text}")
        return await self.get_settings()

    # =========================================================================
    # INTERACTIVE OPERATIONS
    # =========================================================================

    async def _get_trip(self, trip_id: str) -> Trip:
        trip = await self._store.get_trip(trip_id)
        if trip is None:
            raise NotFoundError("trip", trip_id)
        return trip

    async def validate_for_action(self, trip_id: str, action: TripAction) -> ValidationResult:
        trip = await self._get_trip(trip_id)
        return await self._trips.validate_for_action(trip, action, await self.load_settings())

    async def start_trip(
        self,
        trip_id: str,
        skip_validation: bool = False,
        override_reason: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> Trip:
        trip = await self._trips.start(
            trip_id,
            skip_validation=skip_validation,
            override_reason=override_reason,
            user_id=user_id,
            settings=await self.load_settings(),
        )
        return await self._refresh_eta(trip)

    async def complete_trip(
        self,
        trip_id: str,
        skip_validation: bool = False,
        override_reason: Optional[str] = None,
        skip_pod_check: bool = False,
        user_id: Optional[str] = None,
    ) -> Trip:
        return await self._trips.complete(
            trip_id,
            skip_validation=skip_validation,
            override_reason=override_reason,
            skip_pod_check=skip_pod_check,
            user_id=user_id,
            settings=await self.load_settings(),
        )

    async def hold_trip(self, trip_id: str, reason: str, user_id: Optional[str] = None) -> Trip:
        return await self._trips.hold(trip_id, reason, user_id)

    async def resume_trip(self, trip_id: str, user_id: Optional[str] = None) -> Trip:
        return await self._trips.resume(trip_id, user_id)

    async def cancel_trip(self, trip_id: str, reason: str, user_id: Optional[str] = None) -> Trip:
        return await self._trips.cancel(trip_id, reason, user_id)

    async def close_trip(self, trip_id: str, user_id: Optional[str] = None) -> Trip:
        return await self._trips.close(trip_id, user_id)

    async def fetch_location_now(
        self,
        trip_id: str,
        max_age_minutes: Optional[float] = None,
    ) -> LocationUpdate:
        """
        Fetch, store and return the current location of an ongoing trip.

        Stale fixes are stored and flagged. With ``max_age_minutes`` the
        caller asks for strict freshness: an older fix is rejected instead.

        Raises:
            InvalidTransitionError: trip is not ongoing
            StaleLocationError: fix older than ``max_age_minutes``
            ProviderError, TrackingConfigError: location could not be fetched
        """
        trip = await self._get_trip(trip_id)
        if trip.status != TripStatus.ONGOING:
            raise InvalidTransitionError(
                "trip", trip.status.value, "fetch_location",
                f"Location can only be fetched for ongoing trips (trip is {trip.status.value})",
            )
        fix = await self._adapter.fetch_location(trip, await self.load_settings())
        if max_age_minutes is not None and fix.age_minutes > max_age_minutes:
            raise StaleLocationError(fix.age_minutes)
        return await self._record_fix(trip, fix)

    async def get_tracking_history(
        self,
        trip_id: str,
        max_points: int = DEFAULT_DISPLAY_POINTS,
    ) -> Dict[str, Any]:
        """
        Tracking summary for display: thinned path, tracking log, and
        stationary clusters computed over the full history.
        """
        trip = await self._get_trip(trip_id)
        settings = await self.load_settings()
        samples = await self._history.history(trip.id)
        display = await self._history.sample_for_display(trip.id, max_points=max_points)
        log = await self._history.tracking_log(trip.id)
        analysis = cluster_samples(
            samples,
            proximity_meters=settings.stoppage_proximity_meters,
            stoppage_minutes=settings.stoppage_threshold_minutes,
        )
        return {
            "trip_id": trip.id,
            "trip_code": trip.trip_code,
            "status": trip.status.value,
            "tracking_type": trip.tracking_type.value,
            "total_points": len(samples),
            "display_points": len(display),
            "last_sequence_number": log.last_sequence_number if log else 0,
            "last_updated_at": log.last_updated_at.isoformat() if log else None,
            "current_eta": trip.current_eta.isoformat() if trip.current_eta else None,
            "samples": [s.model_dump(mode="json", exclude={"raw"}) for s in display],
            "stoppages": [c.to_dict() for c in analysis.stoppages],
        }

    async def update_alert_status(
        self,
        alert_id: str,
        new_status: AlertStatus,
        user_id: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Alert:
        return await self._alerts.update_status(alert_id, new_status, user_id, notes)

    async def bulk_update_alert_status(
        self,
        alert_ids: Iterable[str],
        new_status: AlertStatus,
        user_id: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> BulkUpdateResult:
        return await self._alerts.bulk_update_status(alert_ids, new_status, user_id, notes)

    # =========================================================================
    # CREDENTIALS
    # =========================================================================

    async def refresh_tokens(self) -> Dict[str, Dict[str, Any]]:
        return await self._credentials.refresh_all()

    async def token_status(self) -> List[Dict[str, Any]]:
        return await self._credentials.token_status()

    # =========================================================================
    # SCAN PLUMBING
    # =========================================================================

    async def _run_scan(
        self,
        name: str,
        trips: List[Trip],
        handler: Callable[[Trip], Awaitable[Any]],
    ) -> BatchResult:
        """
        Run ``handler`` for every trip with bounded concurrency.

        Each trip yields its own TripResult; exceptions are logged and
        recorded on that trip's result only.
        """
        batch: BatchResult = BatchResult(scan=name)
        semaphore = asyncio.Semaphore(max(1, self._config.scan.max_concurrent_trips))

        async def process(trip: Trip) -> TripResult:
            async with semaphore:
                try:
                    return TripResult.ok(trip.id, trip.trip_code, await handler(trip))
                except Exception as e:
                    logger.error(f"{name}: trip {trip.trip_code} failed: {type(e).__name__}: {e}")
                    return TripResult.failed(trip.id, trip.trip_code, e)

        for result in await asyncio.gather(*(process(t) for t in trips)):
            batch.add(result)

        batch.finish()
        logger.info(f"{name}: {batch.succeeded}/{batch.total} succeeded, {batch.failed} failed")
        return batch

    async def _trackable(self, statuses: Iterable[TripStatus]) -> List[Trip]:
        trips = await self._store.list_trips(statuses=statuses)
        return [t for t in trips if t.is_trackable and t.tracking_type != TrackingType.NONE]

    async def _record_fix(self, trip: Trip, fix: LocationFix) -> LocationUpdate:
        """Append the fix (which stamps last_ping_at), then store the recomputed ETA."""
        sequence_number = await self._history.append(trip, fix)
        sample = LocationSample.from_fix(trip.id, sequence_number, fix)

        # Reload: alert recounts may have saved the trip since it was read
        current = await self._get_trip(trip.id)
        eta = compute_eta(current, fix.point, utcnow())
        if eta is not None:
            current.current_eta = eta
            await self._store.save_trip(current)

        return LocationUpdate(
            sample=sample,
            stale=fix.stale,
            age_minutes=fix.age_minutes,
            current_eta=current.current_eta,
        )

    async def _refresh_eta(self, trip: Trip) -> Trip:
        latest = await self._history.latest(trip.id)
        if latest is None:
            return trip
        eta = compute_eta(trip, latest.point, utcnow())
        if eta is None:
            return trip
        trip = await self._get_trip(trip.id)
        trip.current_eta = eta
        await self._store.save_trip(trip)
        return trip

    async def _consent_revoked(self, trip: Trip) -> Optional[str]:
        """MSISDN of the trip's bound consent if it exists but is no longer allowed."""
        if trip.tracking_type != TrackingType.SIM or not trip.sim_consent_id:
            return None
        consent = await self._store.get_consent(trip.sim_consent_id)
        if consent is None or consent.consent_status == ConsentStatus.ALLOWED:
            return None
        return consent.msisdn

    # =========================================================================
    # SCANS
    # =========================================================================

    async def refresh_all_locations(self, settings: Optional[TrackingSettings] = None) -> BatchResult:
        """
        Fetch and store the current location of every ongoing trackable trip.

        A SIM trip whose bound consent has been withdrawn gets a critical
        consent_revoked alert and a failed result.
        """
        settings = settings or await self.load_settings()
        trips = await self._trackable((TripStatus.ONGOING,))

        async def refresh(trip: Trip) -> LocationUpdate:
            try:
                fix = await self._adapter.fetch_location(trip, settings)
            except NoConsentError:
                msisdn = await self._consent_revoked(trip)
                if msisdn is not None:
                    await self._alerts.raise_consent_revoked(trip, msisdn)
                raise
            return await self._record_fix(trip, fix)

        return await self._run_scan("refresh_all_locations", trips, refresh)

    async def check_geofence(
        self,
        settings: Optional[TrackingSettings] = None,
        now: Optional[datetime] = None,
    ) -> BatchResult:
        """
        Apply shipment geofence transitions from each ongoing trip's latest
        sample. Samples older than ``geofence_location_max_age_minutes`` are
        not used.
        """
        settings = settings or await self.load_settings()
        now = now or utcnow()
        max_age = timedelta(minutes=settings.geofence_location_max_age_minutes)
        trips = await self._store.list_trips(statuses=(TripStatus.ONGOING,))

        async def check(trip: Trip) -> Dict[str, Any]:
            sample = await self._history.latest(trip.id)
            if sample is None:
                return {"skipped": "No location recorded", "transitions": []}
            if now - sample.event_time > max_age:
                return {"skipped": "Latest location is too old", "transitions": []}
            transitions = await self._shipments.process(trip, sample)
            return {"skipped": None, "transitions": [t.to_dict() for t in transitions]}

        return await self._run_scan("check_geofence", trips, check)

    async def check_delays(
        self,
        settings: Optional[TrackingSettings] = None,
        now: Optional[datetime] = None,
    ) -> BatchResult:
        settings = settings or await self.load_settings()
        now = now or utcnow()
        trips = await self._store.list_trips(statuses=(TripStatus.ONGOING,))
        return await self._run_scan(
            "check_delays", trips, lambda trip: self._delays.check(trip, settings, now),
        )

    async def check_geofence_auto_start(self, settings: Optional[TrackingSettings] = None) -> BatchResult:
        """Auto-start created trips whose vehicle is inside the origin geofence."""
        settings = settings or await self.load_settings()
        if not settings.geofence_auto_start_enabled:
            batch: BatchResult[AutoStartOutcome] = BatchResult(
                scan="check_geofence_auto_start",
                skipped_reason="Geofence auto-start is disabled",
            )
            return batch.finish()

        trips = await self._trackable((TripStatus.CREATED,))

        async def auto_start(trip: Trip) -> AutoStartOutcome:
            outcome = await self._trips.auto_start_on_geofence_entry(trip, settings)
            if outcome.auto_started:
                await self._refresh_eta(trip)
            return outcome

        return await self._run_scan("check_geofence_auto_start", trips, auto_start)

    async def check_stoppages(self, settings: Optional[TrackingSettings] = None) -> BatchResult:
        settings = settings or await self.load_settings()
        trips = await self._store.list_trips(statuses=(TripStatus.ONGOING,))

        async def detect(trip: Trip) -> Dict[str, Any]:
            created = await self._stoppages.detect(trip, settings)
            return {"alerts_created": len(created), "alert_ids": [a.id for a in created]}

        return await self._run_scan("check_stoppages", trips, detect)

    async def check_tracking_health(
        self,
        settings: Optional[TrackingSettings] = None,
        now: Optional[datetime] = None,
    ) -> BatchResult:
        settings = settings or await self.load_settings()
        now = now or utcnow()
        trips = await self._trackable((TripStatus.ONGOING,))
        return await self._run_scan(
            "check_tracking_health", trips, lambda trip: self._health.check(trip, settings, now),
        )
