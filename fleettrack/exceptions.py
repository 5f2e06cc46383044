"""
FleetTrack Error Hierarchy

Interactive operations raise these so callers can offer the override
path (e.g. complete without POD). Batch scans catch them per trip and
fold them into the scan result instead of aborting.
"""

from __future__ import annotations

from typing import Iterable, List, Optional


class FleetTrackError(Exception):
    """Base class for all FleetTrack errors."""


# =============================================================================
# PROVIDER ERRORS
# =============================================================================

class ProviderError(FleetTrackError):
    """A location or credential provider call failed."""

    def __init__(self, message: str, provider: Optional[str] = None):
        super().__init__(message)
        self.provider = provider


class ProviderAuthError(ProviderError):
    """Credentials are missing, rejected, or cannot be refreshed."""


class ProviderUnavailableError(ProviderError):
    """Network failure, timeout, or the provider could not locate the target."""


class ProviderResponseError(ProviderError):
    """The provider answered, but the payload could not be interpreted."""


class ProviderDisabledError(ProviderError):
    """Tracking through this provider is switched off in settings."""


# =============================================================================
# TRACKING CONFIGURATION ERRORS
# =============================================================================

class TrackingConfigError(FleetTrackError):
    """The trip is not set up in a way that allows tracking."""


class NoConsentError(TrackingConfigError):
    """SIM tracking requested but no allowed consent exists for the driver."""


class NoVehicleIdentifierError(TrackingConfigError):
    """GPS tracking requested but the trip has no vehicle registration."""


class UnsupportedTrackingTypeError(TrackingConfigError):
    """The trip's tracking type has no provider (e.g. ``none``)."""


class GeofenceMissingCoordinatesError(TrackingConfigError):
    """The geofence target has no latitude/longitude."""


# =============================================================================
# DOMAIN ERRORS
# =============================================================================

class StaleLocationError(FleetTrackError):
    """A location fix is older than the caller is willing to accept."""

    def __init__(self, age_minutes: float):
        super().__init__(f"Location is {age_minutes:.0f} minutes old")
        self.age_minutes = age_minutes


class PodNotCollectedError(FleetTrackError):
    """One or more shipments are missing proof of delivery."""

    def __init__(self, shipment_codes: Iterable[str]):
        self.shipment_codes: List[str] = list(shipment_codes)
        super().__init__(
            f"POD not collected for {len(self.shipment_codes)} shipment(s): "
            f"{', '.join(self.shipment_codes)}"
        )


class InvalidTransitionError(FleetTrackError):
    """A status change not allowed by the entity's transition table."""

    def __init__(self, entity: str, current: str, target: str, message: Optional[str] = None):
        self.entity = entity
        self.current = current
        self.target = target
        super().__init__(message or f"Cannot move {entity} from {current} to {target}")


class NotFoundError(FleetTrackError):
    """A referenced trip, shipment, or alert does not exist."""

    def __init__(self, entity: str, entity_id: str):
        super().__init__(f"{entity} {entity_id} not found")
        self.entity = entity
        self.entity_id = entity_id


class StoreError(FleetTrackError):
    """The persistence layer failed."""
