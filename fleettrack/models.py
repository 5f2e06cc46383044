"""
FleetTrack Core Data Models

This module defines the data structures shared by every FleetTrack layer:
trips and their geofence targets, shipments, location samples, alerts,
provider credentials, audit records, and the operator-tunable tracking
settings.

Design Philosophy:
    - Immutable records (samples, audit logs, status history) are frozen
    - Mutable entities (trip, shipment, alert) are changed only by their
      owning component and then saved back through the store
    - All timestamps are timezone-aware UTC
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, ClassVar, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, ConfigDict


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


# =============================================================================
# ENUMS - Clear State Definitions
# =============================================================================

class TripStatus(str, Enum):
    """
    Trip lifecycle status.

    CREATED -> ONGOING <-> ON_HOLD -> COMPLETED -> CLOSED
    CREATED/ONGOING/ON_HOLD -> CANCELLED -> CLOSED
    """
    CREATED = "created"
    ONGOING = "ongoing"
    ON_HOLD = "on_hold"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    CLOSED = "closed"


class TrackingType(str, Enum):
    """How a trip is located: vehicle GPS device, driver SIM, or not at all."""
    GPS = "gps"
    SIM = "sim"
    NONE = "none"


class LocationSource(str, Enum):
    """Origin of a stored location sample."""
    SIM = "sim"
    GPS = "gps"
    MANUAL = "manual"


class TripAction(str, Enum):
    """Actions checked by geofence validation."""
    START = "start"
    COMPLETE = "complete"


class ShipmentStatus(str, Enum):
    CREATED = "created"
    MAPPED = "mapped"
    IN_PICKUP = "in_pickup"
    IN_TRANSIT = "in_transit"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    NDR = "ndr"
    RETURNED = "returned"
    CANCELLED = "cancelled"


TERMINAL_SHIPMENT_STATUSES = frozenset({
    ShipmentStatus.DELIVERED,
    ShipmentStatus.RETURNED,
    ShipmentStatus.CANCELLED,
})


class ChangeSource(str, Enum):
    """What caused a shipment status change."""
    GEOFENCE = "geofence"
    TRIP_COMPLETION = "trip_completion"
    SYSTEM = "system"
    MANUAL = "manual"


class ConsentStatus(str, Enum):
    ALLOWED = "allowed"
    NOT_ALLOWED = "not_allowed"
    PENDING = "pending"
    EXPIRED = "expired"


class AlertType(str, Enum):
    ROUTE_DEVIATION = "route_deviation"
    STOPPAGE = "stoppage"
    TRACKING_LOST = "tracking_lost"
    DELAY_WARNING = "delay_warning"
    IDLE_TIME = "idle_time"
    CONSENT_REVOKED = "consent_revoked"
    GEOFENCE_ENTRY = "geofence_entry"
    GEOFENCE_EXIT = "geofence_exit"
    SPEED_EXCEEDED = "speed_exceeded"


class AlertSeverity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class AlertStatus(str, Enum):
    """
    Alert lifecycle status.

    ACTIVE: Raised, nobody has looked at it yet.
    ACKNOWLEDGED: An operator has seen it and is handling it.
    RESOLVED: Closed by an operator or automatically by the system.
    DISMISSED: Closed by an operator as not actionable.
    """
    ACTIVE = "active"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"
    DISMISSED = "dismissed"

    @property
    def is_open(self) -> bool:
        return self in (AlertStatus.ACTIVE, AlertStatus.ACKNOWLEDGED)


class TokenType(str, Enum):
    """SIM provider credentials: login (authentication) and OAuth (access)."""
    AUTHENTICATION = "authentication"
    ACCESS = "access"


# =============================================================================
# CORE DATA MODELS
# =============================================================================

class GeoPoint(BaseModel):
    """WGS84 coordinates."""
    model_config = ConfigDict(frozen=True)

    latitude: float = Field(..., ge=-90, le=90, description="WGS84 latitude")
    longitude: float = Field(..., ge=-180, le=180, description="WGS84 longitude")

    def __str__(self) -> str:
        return f"({self.latitude:.6f}, {self.longitude:.6f})"


class Location(BaseModel):
    """
    A geofence target (trip origin/destination, shipment pickup/drop).

    Attributes:
        latitude, longitude: Nullable. Without them, geofence checks
            against this location are disabled.
        gps_radius_meters: Radius used when the trip is GPS tracked
        sim_radius_meters: Radius used when the trip is SIM tracked
    """
    id: str = Field(default_factory=new_id)
    name: str = ""
    address: Optional[str] = None
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)
    gps_radius_meters: Optional[float] = Field(None, gt=0)
    sim_radius_meters: Optional[float] = Field(None, gt=0)

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None


class Trip(BaseModel):
    """
    A planned movement of a vehicle from origin to destination.

    Status is changed only by the trip state machine; ``current_eta`` by
    the ETA writer; ``active_alert_count`` by the alert manager.
    """
    id: str = Field(default_factory=new_id)
    trip_code: str
    status: TripStatus = TripStatus.CREATED
    tracking_type: TrackingType = TrackingType.NONE
    is_trackable: bool = True

    origin: Optional[Location] = None
    destination: Optional[Location] = None

    driver_id: Optional[str] = None
    vehicle_id: Optional[str] = None
    vehicle_number: Optional[str] = None
    sim_consent_id: Optional[str] = None

    planned_start_time: Optional[datetime] = None
    planned_end_time: Optional[datetime] = None
    planned_eta: Optional[datetime] = None
    actual_start_time: Optional[datetime] = None
    actual_end_time: Optional[datetime] = None
    current_eta: Optional[datetime] = None
    last_ping_at: Optional[datetime] = None

    total_distance_km: Optional[float] = Field(None, ge=0)
    active_alert_count: int = Field(default=0, ge=0)

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Shipment(BaseModel):
    """A consignment carried on a trip, with its own pickup/drop geofences."""
    id: str = Field(default_factory=new_id)
    shipment_code: str
    trip_id: Optional[str] = None
    status: ShipmentStatus = ShipmentStatus.MAPPED
    sub_status: Optional[str] = None
    pod_collected: bool = False

    pickup_location: Optional[Location] = None
    drop_location: Optional[Location] = None

    in_pickup_at: Optional[datetime] = None
    in_transit_at: Optional[datetime] = None
    out_for_delivery_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utcnow)


class DriverConsent(BaseModel):
    """A driver's consent to be located through their SIM."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    driver_id: str
    msisdn: str
    trip_id: Optional[str] = None
    consent_status: ConsentStatus = ConsentStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)


class LocationFix(BaseModel):
    """
    A provider location normalised at the adapter boundary.

    Not yet stored: the history store turns it into a ``LocationSample``
    by assigning the trip and sequence number.
    """
    model_config = ConfigDict(frozen=True)

    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    event_time: datetime
    source: LocationSource
    received_at: datetime = Field(default_factory=utcnow)

    speed_kmph: Optional[float] = None
    heading: Optional[float] = None
    accuracy_meters: Optional[float] = Field(None, ge=0)
    detailed_address: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict)

    # Fixes older than this at receipt are flagged, not rejected
    STALE_AFTER_MINUTES: ClassVar[float] = 5.0

    @property
    def point(self) -> GeoPoint:
        return GeoPoint(latitude=self.latitude, longitude=self.longitude)

    @property
    def age_minutes(self) -> float:
        return max(0.0, (self.received_at - self.event_time).total_seconds() / 60)

    @property
    def stale(self) -> bool:
        return self.age_minutes > self.STALE_AFTER_MINUTES


class LocationSample(BaseModel):
    """
    One stored observation of a trip's position.

    ``sequence_number`` is strictly increasing and gap-free per trip,
    assigned atomically by the store at insert time.
    """
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    trip_id: str
    sequence_number: int = Field(..., ge=1)
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    event_time: datetime
    source: LocationSource
    received_at: datetime = Field(default_factory=utcnow)

    speed_kmph: Optional[float] = None
    heading: Optional[float] = None
    accuracy_meters: Optional[float] = None
    detailed_address: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_fix(cls, trip_id: str, sequence_number: int, fix: LocationFix) -> "LocationSample":
        return cls(
            trip_id=trip_id,
            sequence_number=sequence_number,
            latitude=fix.latitude,
            longitude=fix.longitude,
            event_time=fix.event_time,
            source=fix.source,
            received_at=fix.received_at,
            speed_kmph=fix.speed_kmph,
            heading=fix.heading,
            accuracy_meters=fix.accuracy_meters,
            detailed_address=fix.detailed_address,
            raw=fix.raw,
        )

    @property
    def point(self) -> GeoPoint:
        return GeoPoint(latitude=self.latitude, longitude=self.longitude)


class TrackingLog(BaseModel):
    """Per-trip tracking summary, upserted on every append."""
    trip_id: str
    source: LocationSource
    last_sequence_number: int = Field(default=0, ge=0)
    last_updated_at: datetime = Field(default_factory=utcnow)


class Alert(BaseModel):
    """
    An operational alert raised against a trip.

    Operators move it active -> acknowledged -> resolved, or dismiss it;
    the system may auto-resolve an open alert when its condition clears.
    """
    id: str = Field(default_factory=new_id)
    trip_id: str
    alert_type: AlertType
    severity: AlertSeverity
    status: AlertStatus = AlertStatus.ACTIVE
    title: str
    description: str = ""

    triggered_at: datetime = Field(default_factory=utcnow)
    acknowledged_at: Optional[datetime] = None
    acknowledged_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None

    location: Optional[GeoPoint] = None
    threshold_value: Optional[float] = None
    actual_value: Optional[float] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class Credential(BaseModel):
    """A cached provider credential."""
    token_type: TokenType
    value: str
    expires_at: datetime
    updated_at: datetime = Field(default_factory=utcnow)

    def is_valid(self, at: Optional[datetime] = None) -> bool:
        return self.expires_at > (at or utcnow())


class TripAuditLog(BaseModel):
    """Immutable record of a trip status change."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    trip_id: str
    previous_status: Optional[TripStatus] = None
    new_status: TripStatus
    change_reason: str
    changed_by: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class ShipmentStatusHistory(BaseModel):
    """Immutable record of a shipment status change."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    shipment_id: str
    previous_status: Optional[ShipmentStatus] = None
    new_status: ShipmentStatus
    previous_sub_status: Optional[str] = None
    new_sub_status: Optional[str] = None
    change_source: ChangeSource
    notes: str = ""
    metadata: Dict[str, Any] = Field(default_factory=dict)
    changed_at: datetime = Field(default_factory=utcnow)


class ValidationResult(BaseModel):
    """
    Outcome of a geofence validation for start/complete.

    ``valid=False`` with ``error`` set means the check itself could not be
    performed (no tracking, provider down); the caller may override.
    """
    valid: bool
    action: TripAction
    distance_meters: Optional[float] = None
    radius_meters: Optional[float] = None
    current_location: Optional[GeoPoint] = None
    target_location: Optional[Location] = None
    tracking_type: Optional[TrackingType] = None
    stale: bool = False
    stale_minutes: Optional[int] = None
    error: Optional[str] = None


# =============================================================================
# PROVIDER PAYLOADS
# =============================================================================

class SimLocationResponse(BaseModel):
    """Parsed SIM provider answer for one MSISDN."""
    provider: Literal["sim"] = "sim"
    msisdn: str
    retrieved: bool
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    timestamp: Optional[datetime] = None
    detailed_address: Optional[str] = None
    errors: List[str] = Field(default_factory=list)
    raw: Dict[str, Any] = Field(default_factory=dict)


class GpsLocationResponse(BaseModel):
    """Parsed GPS provider answer for one vehicle."""
    provider: Literal["gps"] = "gps"
    vehicle_number: str
    latitude: float
    longitude: float
    timestamp: Optional[datetime] = None
    speed_kmph: Optional[float] = None
    heading: Optional[float] = None
    accuracy_meters: Optional[float] = None
    address: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict)


ProviderResponse = Annotated[
    Union[SimLocationResponse, GpsLocationResponse],
    Field(discriminator="provider"),
]


# =============================================================================
# CONFIGURATION MODELS
# =============================================================================

class TrackingSettings(BaseModel):
    """
    Operator-tunable settings, parsed once per scan from the flat
    key -> string settings table.
    """
    model_config = ConfigDict(frozen=True)

    tracking_frequency_seconds: int = 900
    delay_threshold_percent: float = 15.0
    origin_geofence_radius_km: float = 0.5
    destination_geofence_radius_km: float = 0.5
    geofence_auto_start_enabled: bool = False
    enable_sim_tracking: bool = True
    enable_gps_tracking: bool = True
    stoppage_threshold_minutes: float = 30.0
    stoppage_proximity_meters: float = 100.0
    tracking_lost_threshold_minutes: float = 30.0
    idle_threshold_minutes: float = 120.0
    geofence_location_max_age_minutes: float = 30.0

    @classmethod
    def defaults_as_strings(cls) -> Dict[str, str]:
        """Default values in the stored (string) representation."""
        return {
            name: _to_setting_string(field.default)
            for name, field in cls.model_fields.items()
        }

    @classmethod
    def from_mapping(cls, raw: Dict[str, str]) -> "TrackingSettings":
        """
        Parse a stored settings map. Unknown keys are ignored; known keys
        with unparseable values keep their default.
        """
        values: Dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            if name not in raw or raw[name] is None:
                continue
            text = str(raw[name]).strip()
            try:
                if field.annotation is bool:
                    values[name] = text.lower() in ("true", "1", "yes", "on")
                elif field.annotation is int:
                    values[name] = int(float(text))
                else:
                    values[name] = float(text)
            except ValueError:
                continue
        return cls(**values)


def _to_setting_string(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)
