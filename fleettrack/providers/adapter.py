"""
FleetTrack Telemetry Provider Adapter

One interface over the SIM and GPS location providers:

    fix = await adapter.fetch_location(trip, settings)

Dispatch is on ``trip.tracking_type``. Each provider payload is parsed
into its own response model (``SimLocationResponse`` or
``GpsLocationResponse``) and normalised here into a single
``LocationFix``; nothing past this module sees a raw provider shape.

Every provider call runs under:
    - a per-provider concurrency limit (``asyncio.Semaphore``)
    - a per-provider minimum spacing between calls
    - a hard timeout (``asyncio.wait_for``) on top of the HTTP timeout

so a slow or rate-limited provider degrades only the trips that use it.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Awaitable, Callable, Dict, Optional, TypeVar
import logging

from pydantic import ValidationError

from ..config import ScanConfig
from ..exceptions import (
    NoConsentError,
    NoVehicleIdentifierError,
    ProviderDisabledError,
    ProviderResponseError,
    ProviderUnavailableError,
    UnsupportedTrackingTypeError,
)
from ..models import (
    ConsentStatus,
    LocationFix,
    LocationSource,
    ProviderResponse,
    SimLocationResponse,
    TokenType,
    TrackingSettings,
    TrackingType,
    Trip,
    utcnow,
)
from ..store.base import TrackingStore
from .credentials import CredentialManager
from .gps import GpsProviderClient
from .sim import SimProviderClient


logger = logging.getLogger(__name__)

T = TypeVar("T")


class ProviderThrottle:
    """Concurrency limit plus minimum spacing for one provider."""

    def __init__(self, name: str, max_concurrency: int, min_interval_seconds: float, timeout_seconds: float):
        self.name = name
        self._semaphore = asyncio.Semaphore(max(1, max_concurrency))
        self._spacing_lock = asyncio.Lock()
        self._min_interval = min_interval_seconds
        self._timeout = timeout_seconds
        self._last_call: Optional[float] = None

    async def run(self, call: Callable[[], Awaitable[T]]) -> T:
        async with self._semaphore:
            if self._min_interval > 0:
                async with self._spacing_lock:
                    loop = asyncio.get_running_loop()
                    if self._last_call is not None:
                        wait = self._last_call + self._min_interval - loop.time()
                        if wait > 0:
                            await asyncio.sleep(wait)
                    self._last_call = loop.time()
            try:
                return await asyncio.wait_for(call(), timeout=self._timeout)
            except asyncio.TimeoutError as e:
                raise ProviderUnavailableError(
                    f"{self.name} provider call exceeded {self._timeout}s", provider=self.name,
                ) from e


def normalize_response(
    response: ProviderResponse,
    received_at: Optional[datetime] = None,
) -> LocationFix:
    """
    Convert a parsed provider response into a ``LocationFix``.

    Fixes without a provider timestamp are treated as taken at receipt.

    Raises:
        ProviderUnavailableError: SIM lookup that did not retrieve a location
        ProviderResponseError: coordinates outside WGS84 bounds
    """
    received_at = received_at or utcnow()

    try:
        if response.provider == "sim":
            if not response.retrieved:
                detail = "; ".join(response.errors) or "location not retrieved"
                raise ProviderUnavailableError(
                    f"SIM location unavailable for {response.msisdn}: {detail}", provider="sim",
                )
            return LocationFix(
                latitude=response.latitude,
                longitude=response.longitude,
                event_time=response.timestamp or received_at,
                received_at=received_at,
                source=LocationSource.SIM,
                detailed_address=response.detailed_address,
                raw=response.raw,
            )

        return LocationFix(
            latitude=response.latitude,
            longitude=response.longitude,
            event_time=response.timestamp or received_at,
            received_at=received_at,
            source=LocationSource.GPS,
            speed_kmph=response.speed_kmph,
            heading=response.heading,
            accuracy_meters=response.accuracy_meters,
            detailed_address=response.address,
            raw=response.raw,
        )
    except ValidationError as e:
        raise ProviderResponseError(
            f"{response.provider} provider returned invalid coordinates", provider=response.provider,
        ) from e


class TelemetryProviderAdapter:
    """
    Fetches the current location of a trip from its provider.

    Example:
        adapter = TelemetryProviderAdapter(store, credentials, sim_client, gps_client)
        fix = await adapter.fetch_location(trip, settings)
        if fix.stale:
            ...
    """

    def __init__(
        self,
        store: TrackingStore,
        credentials: CredentialManager,
        sim_client: SimProviderClient,
        gps_client: GpsProviderClient,
        scan_config: Optional[ScanConfig] = None,
    ):
        self._store = store
        self._credentials = credentials
        self._sim = sim_client
        self._gps = gps_client
        scan_config = scan_config or ScanConfig()

        sim_cfg = sim_client.config
        gps_cfg = gps_client.config
        self._throttles: Dict[TrackingType, ProviderThrottle] = {
            TrackingType.SIM: ProviderThrottle(
                "sim",
                sim_cfg.max_concurrency,
                sim_cfg.min_interval_seconds,
                scan_config.provider_call_timeout_seconds,
            ),
            TrackingType.GPS: ProviderThrottle(
                "gps",
                gps_cfg.max_concurrency,
                gps_cfg.min_interval_seconds,
                scan_config.provider_call_timeout_seconds,
            ),
        }

    async def resolve_msisdn(self, trip: Trip) -> str:
        """
        MSISDN to locate for a SIM-tracked trip.

        The consent bound to the trip wins if it is allowed; otherwise the
        driver's most recent allowed consent is used.

        Raises:
            NoConsentError: no allowed consent found
        """
        if trip.sim_consent_id:
            consent = await self._store.get_consent(trip.sim_consent_id)
            if consent is not None and consent.consent_status == ConsentStatus.ALLOWED:
                return consent.msisdn

        if trip.driver_id:
            consent = await self._store.latest_allowed_consent(trip.driver_id)
            if consent is not None:
                return consent.msisdn

        raise NoConsentError(f"No allowed SIM consent for trip {trip.trip_code}")

    async def fetch_location(
        self,
        trip: Trip,
        settings: Optional[TrackingSettings] = None,
    ) -> LocationFix:
        """
        Fetch and normalise the trip's current location.

        Raises:
            UnsupportedTrackingTypeError: tracking type ``none``
            ProviderDisabledError: the provider is switched off in settings
            NoConsentError, NoVehicleIdentifierError: trip not trackable
            ProviderError: any provider failure
        """
        settings = settings or TrackingSettings()

        if trip.tracking_type == TrackingType.SIM:
            if not settings.enable_sim_tracking:
                raise ProviderDisabledError("SIM tracking is disabled", provider="sim")
            msisdn = await self.resolve_msisdn(trip)
            response = await self._throttles[TrackingType.SIM].run(lambda: self._locate_sim(msisdn))

        elif trip.tracking_type == TrackingType.GPS:
            if not settings.enable_gps_tracking:
                raise ProviderDisabledError("GPS tracking is disabled", provider="gps")
            if not trip.vehicle_number:
                raise NoVehicleIdentifierError(
                    f"Trip {trip.trip_code} has no vehicle registration number"
                )
            vehicle_number = trip.vehicle_number
            response = await self._throttles[TrackingType.GPS].run(
                lambda: self._gps.locate(vehicle_number)
            )

        else:
            raise UnsupportedTrackingTypeError(
                f"Trip {trip.trip_code} has tracking type {trip.tracking_type.value}"
            )

        fix = normalize_response(response)
        if fix.stale:
            logger.warning(
                f"Stale {fix.source.value} fix for trip {trip.trip_code}: "
                f"{fix.age_minutes:.0f} minutes old"
            )
        return fix

    async def _locate_sim(self, msisdn: str) -> SimLocationResponse:
        token = await self._credentials.get_token(TokenType.AUTHENTICATION)
        return await self._sim.locate(msisdn, token)

    async def close(self) -> None:
        await self._sim.close()
        await self._gps.close()
