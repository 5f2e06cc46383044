"""
FleetTrack GPS Location Provider Client

Reads the current position of a vehicle-mounted GPS device, identified by
the vehicle's registration number. Authenticates with a static access
token passed as a query parameter; there is no refresh flow.

The response shape varies between device models: the position may be
wrapped in ``data``, coordinates may be keyed ``latitude``/``longitude``
or ``lat``/``lng``/``lon``, and the fix time ``timestamp`` or ``gpsTime``.
"""

from __future__ import annotations

from typing import Any, Dict, Optional
import logging

import httpx

from ..config import GpsProviderConfig
from ..exceptions import (
    ProviderAuthError,
    ProviderResponseError,
    ProviderUnavailableError,
)
from ..models import GpsLocationResponse
from .parsing import first_present, provider_timestamp, to_float
from .sim import raise_for_provider_status


logger = logging.getLogger(__name__)

PROVIDER = "gps"


class GpsProviderClient:
    """
    HTTP client for the GPS location provider.
    """

    def __init__(
        self,
        config: Optional[GpsProviderConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._config = config or GpsProviderConfig.from_env()
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def config(self) -> GpsProviderConfig:
        return self._config

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._config.base_url,
                timeout=self._config.timeout_seconds,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def locate(self, vehicle_number: str) -> GpsLocationResponse:
        """
        Fetch the current location of a vehicle.

        Raises:
            ProviderAuthError: no access token configured, or token rejected
            ProviderUnavailableError: network failure or provider-reported error
            ProviderResponseError: payload without usable coordinates
        """
        if not self._config.access_token:
            raise ProviderAuthError("GPS provider access token not configured", provider=PROVIDER)

        client = await self._get_client()
        try:
            response = await client.get(
                "/currentLoc",
                params={"accessToken": self._config.access_token, "vehicleNo": vehicle_number},
            )
        except httpx.TimeoutException as e:
            raise ProviderUnavailableError(f"GPS provider timed out: {e}", provider=PROVIDER) from e
        except httpx.TransportError as e:
            raise ProviderUnavailableError(f"GPS provider unreachable: {e}", provider=PROVIDER) from e

        raise_for_provider_status(response, PROVIDER)
        try:
            body = response.json()
        except ValueError as e:
            raise ProviderResponseError("GPS provider returned invalid JSON", provider=PROVIDER) from e

        location = self.parse_location(vehicle_number, body)
        logger.debug(f"GPS fix for {vehicle_number}: ({location.latitude}, {location.longitude})")
        return location

    @staticmethod
    def parse_location(vehicle_number: str, body: Any) -> GpsLocationResponse:
        """Parse a current-location body."""
        if not isinstance(body, dict):
            raise ProviderResponseError("GPS provider returned unexpected payload", provider=PROVIDER)

        if body.get("status") == "error" or body.get("error"):
            message = body.get("message") or body.get("error") or "unknown error"
            raise ProviderUnavailableError(f"GPS provider error: {message}", provider=PROVIDER)

        data: Any = body.get("data") or body
        if isinstance(data, list):
            data = data[0] if data else {}
        if not isinstance(data, dict):
            raise ProviderResponseError("GPS provider returned unexpected payload", provider=PROVIDER)

        latitude = to_float(first_present(data, ("latitude", "lat")))
        longitude = to_float(first_present(data, ("longitude", "lng", "lon")))
        if latitude is None or longitude is None:
            raise ProviderResponseError(
                f"GPS location for {vehicle_number} has no usable coordinates", provider=PROVIDER,
            )

        address = first_present(data, ("address", "location"))
        raw: Dict[str, Any] = body
        return GpsLocationResponse(
            vehicle_number=vehicle_number,
            latitude=latitude,
            longitude=longitude,
            timestamp=provider_timestamp(first_present(data, ("timestamp", "gpsTime")), PROVIDER),
            speed_kmph=to_float(data.get("speed")),
            heading=to_float(first_present(data, ("heading", "angle"))),
            accuracy_meters=to_float(data.get("accuracy")),
            address=str(address) if address is not None else None,
            raw=raw,
        )
