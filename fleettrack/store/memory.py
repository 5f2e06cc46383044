"""
In-memory TrackingStore.

Used in development and tests. Documents are copied on the way in and
out so that callers cannot mutate stored state without saving it, which
keeps behaviour close to the Redis store.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections import defaultdict
from typing import Dict, Iterable, List, Optional, Tuple

from ..models import (
    Alert,
    AlertStatus,
    AlertType,
    ConsentStatus,
    Credential,
    DriverConsent,
    LocationFix,
    LocationSample,
    Shipment,
    ShipmentStatus,
    ShipmentStatusHistory,
    TokenType,
    TrackingLog,
    Trip,
    TripAuditLog,
    TripStatus,
    utcnow,
)
from .base import TrackingStore


class InMemoryTrackingStore(TrackingStore):
    """
    Dictionary-backed store.

    Sample appends take a per-trip ``asyncio.Lock`` around the
    count-then-insert so sequence numbers stay gap-free when many
    coroutines append to the same trip.

    Example:
        store = InMemoryTrackingStore()
        store.add_trip(Trip(trip_code="TRP-1", tracking_type=TrackingType.GPS))
    """

    def __init__(self) -> None:
        self._trips: Dict[str, Trip] = {}
        self._shipments: Dict[str, Shipment] = {}
        self._consents: Dict[str, DriverConsent] = {}
        self._samples: Dict[str, List[LocationSample]] = defaultdict(list)
        self._tracking_logs: Dict[str, TrackingLog] = {}
        self._alerts: Dict[str, Alert] = {}
        self._credentials: Dict[TokenType, Credential] = {}
        self._leases: Dict[str, Tuple[str, float]] = {}
        self._settings: Dict[str, str] = {}
        self._trip_audit: List[TripAuditLog] = []
        self._shipment_history: List[ShipmentStatusHistory] = []

        self._trip_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    # -------------------------------------------------------------------------
    # Seeding helpers (sync, for tests and fixtures)
    # -------------------------------------------------------------------------

    def add_trip(self, trip: Trip) -> Trip:
        self._trips[trip.id] = trip.model_copy(deep=True)
        return trip

    def add_shipment(self, shipment: Shipment) -> Shipment:
        self._shipments[shipment.id] = shipment.model_copy(deep=True)
        return shipment

    def add_consent(self, consent: DriverConsent) -> DriverConsent:
        self._consents[consent.id] = consent
        return consent

    # -------------------------------------------------------------------------
    # Trips
    # -------------------------------------------------------------------------

    async def get_trip(self, trip_id: str) -> Optional[Trip]:
        trip = self._trips.get(trip_id)
        return trip.model_copy(deep=True) if trip else None

    async def save_trip(self, trip: Trip) -> None:
        trip.updated_at = utcnow()
        self._trips[trip.id] = trip.model_copy(deep=True)

    async def list_trips(self, statuses: Optional[Iterable[TripStatus]] = None) -> List[Trip]:
        wanted = set(statuses) if statuses is not None else None
        trips = [
            t.model_copy(deep=True)
            for t in self._trips.values()
            if wanted is None or t.status in wanted
        ]
        return sorted(trips, key=lambda t: t.created_at)

    # -------------------------------------------------------------------------
    # Shipments
    # -------------------------------------------------------------------------

    async def list_shipments(
        self,
        trip_id: str,
        statuses: Optional[Iterable[ShipmentStatus]] = None,
    ) -> List[Shipment]:
        wanted = set(statuses) if statuses is not None else None
        return [
            s.model_copy(deep=True)
            for s in self._shipments.values()
            if s.trip_id == trip_id and (wanted is None or s.status in wanted)
        ]

    async def save_shipment(self, shipment: Shipment) -> None:
        shipment.updated_at = utcnow()
        self._shipments[shipment.id] = shipment.model_copy(deep=True)

    # -------------------------------------------------------------------------
    # Consents
    # -------------------------------------------------------------------------

    async def get_consent(self, consent_id: str) -> Optional[DriverConsent]:
        return self._consents.get(consent_id)

    async def latest_allowed_consent(self, driver_id: str) -> Optional[DriverConsent]:
        allowed = [
            c for c in self._consents.values()
            if c.driver_id == driver_id and c.consent_status == ConsentStatus.ALLOWED
        ]
        if not allowed:
            return None
        return max(allowed, key=lambda c: c.created_at)

    # -------------------------------------------------------------------------
    # Location samples
    # -------------------------------------------------------------------------

    async def append_sample(self, trip_id: str, fix: LocationFix) -> LocationSample:
        async with self._trip_locks[trip_id]:
            existing = len(self._samples[trip_id])
            # Yield inside the critical section; the lock keeps other
            # appenders out until the insert lands.
            await asyncio.sleep(0)
            sample = LocationSample.from_fix(trip_id, existing + 1, fix)
            self._samples[trip_id].append(sample)

            log = self._tracking_logs.get(trip_id)
            if log is None or sample.sequence_number > log.last_sequence_number:
                self._tracking_logs[trip_id] = TrackingLog(
                    trip_id=trip_id,
                    source=sample.source,
                    last_sequence_number=sample.sequence_number,
                    last_updated_at=utcnow(),
                )
        return sample

    async def list_samples(self, trip_id: str, limit: Optional[int] = None) -> List[LocationSample]:
        samples = sorted(self._samples.get(trip_id, []), key=lambda s: s.sequence_number)
        if limit is not None:
            samples = samples[-limit:] if limit > 0 else []
        return samples

    async def latest_sample(self, trip_id: str) -> Optional[LocationSample]:
        samples = self._samples.get(trip_id)
        if not samples:
            return None
        return max(samples, key=lambda s: s.sequence_number)

    async def get_tracking_log(self, trip_id: str) -> Optional[TrackingLog]:
        log = self._tracking_logs.get(trip_id)
        return log.model_copy() if log else None

    # -------------------------------------------------------------------------
    # Alerts
    # -------------------------------------------------------------------------

    async def get_alert(self, alert_id: str) -> Optional[Alert]:
        alert = self._alerts.get(alert_id)
        return alert.model_copy(deep=True) if alert else None

    async def save_alert(self, alert: Alert) -> None:
        self._alerts[alert.id] = alert.model_copy(deep=True)

    async def list_alerts(
        self,
        trip_id: str,
        alert_type: Optional[AlertType] = None,
        statuses: Optional[Iterable[AlertStatus]] = None,
    ) -> List[Alert]:
        wanted = set(statuses) if statuses is not None else None
        alerts = [
            a.model_copy(deep=True)
            for a in self._alerts.values()
            if a.trip_id == trip_id
            and (alert_type is None or a.alert_type == alert_type)
            and (wanted is None or a.status in wanted)
        ]
        return sorted(alerts, key=lambda a: a.triggered_at)

    # -------------------------------------------------------------------------
    # Credentials
    # -------------------------------------------------------------------------

    async def get_credential(self, token_type: TokenType) -> Optional[Credential]:
        credential = self._credentials.get(token_type)
        return credential.model_copy() if credential else None

    async def save_credential(self, credential: Credential) -> None:
        self._credentials[credential.token_type] = credential.model_copy()

    async def list_credentials(self) -> List[Credential]:
        return [c.model_copy() for c in self._credentials.values()]

    async def acquire_lease(self, name: str, ttl_seconds: float) -> Optional[str]:
        now = time.monotonic()
        held = self._leases.get(name)
        if held is not None and held[1] > now:
            return None
        token = uuid.uuid4().hex
        self._leases[name] = (token, now + ttl_seconds)
        return token

    async def release_lease(self, name: str, token: str) -> None:
        held = self._leases.get(name)
        if held is not None and held[0] == token:
            del self._leases[name]

    # -------------------------------------------------------------------------
    # Settings
    # -------------------------------------------------------------------------

    async def get_settings(self) -> Dict[str, str]:
        return dict(self._settings)

    async def set_setting(self, key: str, value: str) -> None:
        self._settings[key] = value

    # -------------------------------------------------------------------------
    # Audit trail
    # -------------------------------------------------------------------------

    async def add_trip_audit(self, entry: TripAuditLog) -> None:
        self._trip_audit.append(entry)

    async def list_trip_audit(self, trip_id: str) -> List[TripAuditLog]:
        return [e for e in self._trip_audit if e.trip_id == trip_id]

    async def add_shipment_history(self, entry: ShipmentStatusHistory) -> None:
        self._shipment_history.append(entry)

    async def list_shipment_history(self, shipment_id: str) -> List[ShipmentStatusHistory]:
        return [e for e in self._shipment_history if e.shipment_id == shipment_id]
