"""
FleetTrack Persistence Contract

All components read and write through ``TrackingStore``. Two
implementations ship with the package:

    - InMemoryTrackingStore: development and tests
    - RedisTrackingStore: production, over redis.asyncio

Only ``append_sample`` and the lease methods carry concurrency
guarantees; everything else is plain last-writer-wins document storage.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional

from ..models import (
    Alert,
    AlertStatus,
    AlertType,
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
)


class TrackingStore(ABC):
    """
    Abstract base class for FleetTrack persistence.
    """

    # -------------------------------------------------------------------------
    # Trips
    # -------------------------------------------------------------------------

    @abstractmethod
    async def get_trip(self, trip_id: str) -> Optional[Trip]:
        pass

    @abstractmethod
    async def save_trip(self, trip: Trip) -> None:
        pass

    @abstractmethod
    async def list_trips(self, statuses: Optional[Iterable[TripStatus]] = None) -> List[Trip]:
        """
        List trips, optionally filtered by status.

        Returns:
            Trips ordered by creation time
        """
        pass

    # -------------------------------------------------------------------------
    # Shipments
    # -------------------------------------------------------------------------

    @abstractmethod
    async def list_shipments(
        self,
        trip_id: str,
        statuses: Optional[Iterable[ShipmentStatus]] = None,
    ) -> List[Shipment]:
        pass

    @abstractmethod
    async def save_shipment(self, shipment: Shipment) -> None:
        pass

    # -------------------------------------------------------------------------
    # Consents
    # -------------------------------------------------------------------------

    @abstractmethod
    async def get_consent(self, consent_id: str) -> Optional[DriverConsent]:
        pass

    @abstractmethod
    async def latest_allowed_consent(self, driver_id: str) -> Optional[DriverConsent]:
        """Most recently created consent of the driver with status ``allowed``."""
        pass

    # -------------------------------------------------------------------------
    # Location samples
    # -------------------------------------------------------------------------

    @abstractmethod
    async def append_sample(self, trip_id: str, fix: LocationFix) -> LocationSample:
        """
        Append a sample to the trip's history.

        The sequence number is the count of existing samples plus one,
        computed and written atomically per trip so that concurrent
        appends never produce gaps or duplicates. The trip's tracking
        log is upserted in the same step.

        Returns:
            The stored sample with its sequence number
        """
        pass

    @abstractmethod
    async def list_samples(self, trip_id: str, limit: Optional[int] = None) -> List[LocationSample]:
        """
        Samples in sequence order. With ``limit``, only the most recent
        ``limit`` samples (still in ascending order).
        """
        pass

    @abstractmethod
    async def latest_sample(self, trip_id: str) -> Optional[LocationSample]:
        pass

    @abstractmethod
    async def get_tracking_log(self, trip_id: str) -> Optional[TrackingLog]:
        pass

    # -------------------------------------------------------------------------
    # Alerts
    # -------------------------------------------------------------------------

    @abstractmethod
    async def get_alert(self, alert_id: str) -> Optional[Alert]:
        pass

    @abstractmethod
    async def save_alert(self, alert: Alert) -> None:
        pass

    @abstractmethod
    async def list_alerts(
        self,
        trip_id: str,
        alert_type: Optional[AlertType] = None,
        statuses: Optional[Iterable[AlertStatus]] = None,
    ) -> List[Alert]:
        """Alerts of a trip ordered by trigger time."""
        pass

    # -------------------------------------------------------------------------
    # Credentials
    # -------------------------------------------------------------------------

    @abstractmethod
    async def get_credential(self, token_type: TokenType) -> Optional[Credential]:
        pass

    @abstractmethod
    async def save_credential(self, credential: Credential) -> None:
        """Upsert keyed by token type."""
        pass

    @abstractmethod
    async def list_credentials(self) -> List[Credential]:
        pass

    @abstractmethod
    async def acquire_lease(self, name: str, ttl_seconds: float) -> Optional[str]:
        """
        Try to take a named, expiring lease.

        Returns:
            An owner token if acquired, None if someone else holds it
        """
        pass

    @abstractmethod
    async def release_lease(self, name: str, token: str) -> None:
        """Release the lease only if ``token`` still owns it."""
        pass

    # -------------------------------------------------------------------------
    # Settings
    # -------------------------------------------------------------------------

    @abstractmethod
    async def get_settings(self) -> Dict[str, str]:
        pass

    @abstractmethod
    async def set_setting(self, key: str, value: str) -> None:
        pass

    # -------------------------------------------------------------------------
    # Audit trail
    # -------------------------------------------------------------------------

    @abstractmethod
    async def add_trip_audit(self, entry: TripAuditLog) -> None:
        pass

    @abstractmethod
    async def list_trip_audit(self, trip_id: str) -> List[TripAuditLog]:
        pass

    @abstractmethod
    async def add_shipment_history(self, entry: ShipmentStatusHistory) -> None:
        pass

    @abstractmethod
    async def list_shipment_history(self, shipment_id: str) -> List[ShipmentStatusHistory]:
        pass

    async def close(self) -> None:
        """Release any connections held by the store."""
        return None
