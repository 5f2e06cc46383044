"""
FleetTrack SIM Location Provider Client

Locates a driver's handset through the telecom operator's network
location service, identified by MSISDN.

Credentials:
    authentication  GET {base}/login with Basic credentials. Used as the
                    Bearer token on location lookups. Valid for 6 hours.
    access          POST {oauth_url} with grant_type=client_credentials
                    and Basic credentials. Used by the consent service.
                    Valid for 30 minutes.

Both are cached by the ``CredentialManager``; this client only performs
the raw HTTP exchanges.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Any, Dict, List, Optional
import logging

import httpx

from ..config import SimProviderConfig
from ..exceptions import (
    ProviderAuthError,
    ProviderResponseError,
    ProviderUnavailableError,
)
from ..models import Credential, SimLocationResponse, TokenType, utcnow
from .parsing import provider_timestamp, to_float


logger = logging.getLogger(__name__)

PROVIDER = "sim"


def normalize_msisdn(msisdn: str, country_prefix: str = "91") -> str:
    """Strip formatting and make sure the number carries the country prefix."""
    digits = "".join(ch for ch in msisdn if ch.isdigit())
    if not digits.startswith(country_prefix):
        digits = country_prefix + digits
    return digits


def raise_for_provider_status(response: httpx.Response, provider: str) -> None:
    """Map an HTTP error status to the matching provider error."""
    if response.status_code in (401, 403):
        raise ProviderAuthError(
            f"{provider} provider rejected credentials ({response.status_code})", provider=provider,
        )
    try:
        response.raise_for_status()
    except httpx.HTTPStatusError as e:
        raise ProviderUnavailableError(
            f"{provider} provider returned {response.status_code}", provider=provider,
        ) from e


class SimProviderClient:
    """
    HTTP client for the SIM location provider.

    Example:
        client = SimProviderClient(SimProviderConfig.from_env())
        credential = await client.login()
        response = await client.locate("9876543210", credential.value)
    """

    def __init__(
        self,
        config: Optional[SimProviderConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the SIM provider client.

        Args:
            config: Provider configuration (defaults from environment)
            transport: Optional httpx transport, e.g. ``httpx.MockTransport``
        """
        self._config = config or SimProviderConfig.from_env()
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def config(self) -> SimProviderConfig:
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

    async def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        client = await self._get_client()
        try:
            response = await client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise ProviderUnavailableError(f"SIM provider timed out: {e}", provider=PROVIDER) from e
        except httpx.TransportError as e:
            raise ProviderUnavailableError(f"SIM provider unreachable: {e}", provider=PROVIDER) from e
        raise_for_provider_status(response, PROVIDER)
        return response

    @staticmethod
    def _json(response: httpx.Response) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError as e:
            raise ProviderResponseError("SIM provider returned invalid JSON", provider=PROVIDER) from e
        if not isinstance(data, dict):
            raise ProviderResponseError("SIM provider returned unexpected payload", provider=PROVIDER)
        return data

    # -------------------------------------------------------------------------
    # Credential exchanges
    # -------------------------------------------------------------------------

    async def login(self) -> Credential:
        """Obtain a fresh authentication token."""
        if not self._config.login_basic_token:
            raise ProviderAuthError("SIM provider login credentials not configured", provider=PROVIDER)

        response = await self._send(
            "GET",
            "/login",
            headers={"Authorization": f"Basic {self._config.login_basic_token}"},
        )
        data = self._json(response)
        token = data.get("token")
        if not token:
            raise ProviderAuthError("SIM provider login returned no token", provider=PROVIDER)

        logger.info(f"Obtained SIM authentication token for {data.get('username', 'unknown user')}")
        return Credential(
            token_type=TokenType.AUTHENTICATION,
            value=token,
            expires_at=utcnow() + timedelta(seconds=self._config.auth_token_ttl_seconds),
        )

    async def oauth_token(self) -> Credential:
        """Obtain a fresh OAuth access token."""
        if not self._config.oauth_basic_token:
            raise ProviderAuthError("SIM provider OAuth credentials not configured", provider=PROVIDER)

        response = await self._send(
            "POST",
            self._config.oauth_url,
            data={"grant_type": "client_credentials"},
            headers={"Authorization": f"Basic {self._config.oauth_basic_token}"},
        )
        data = self._json(response)
        token = data.get("access_token")
        if not token:
            raise ProviderAuthError("SIM provider OAuth returned no access_token", provider=PROVIDER)

        logger.info("Obtained SIM access token")
        return Credential(
            token_type=TokenType.ACCESS,
            value=token,
            expires_at=utcnow() + timedelta(seconds=self._config.access_token_ttl_seconds),
        )

    # -------------------------------------------------------------------------
    # Location
    # -------------------------------------------------------------------------

    async def locate(self, msisdn: str, auth_token: str) -> SimLocationResponse:
        """
        Look up the last known location of an MSISDN.

        Args:
            msisdn: Subscriber number (country prefix added if missing)
            auth_token: Current authentication token

        Returns:
            Parsed response; ``retrieved`` is False when the network could
            not locate the handset.
        """
        number = normalize_msisdn(msisdn, self._config.msisdn_country_prefix)
        response = await self._send(
            "GET",
            f"/location/msisdnList/{number}",
            params={"lastResult": "true"},
            headers={"Authorization": f"Bearer {auth_token}"},
        )
        return self.parse_location(number, self._json(response))

    @staticmethod
    def parse_location(msisdn: str, data: Dict[str, Any]) -> SimLocationResponse:
        """Parse a location lookup body."""
        errors: List[str] = [
            str(item.get("errorMessage") or item) if isinstance(item, dict) else str(item)
            for item in data.get("errorMessageList") or []
        ]

        terminals = data.get("terminalLocation")
        if not isinstance(terminals, list) or not terminals:
            return SimLocationResponse(msisdn=msisdn, retrieved=False, errors=errors, raw=data)

        terminal = terminals[0] or {}
        status = terminal.get("locationRetrievalStatus")
        result_status = terminal.get("locationResultStatus")
        retrieved = status == "Retrieved" and str(result_status) == "0"
        if not retrieved:
            if status and status != "Retrieved":
                errors.append(f"Location retrieval status: {status}")
            elif result_status is not None:
                errors.append(f"Location result status: {result_status}")
            return SimLocationResponse(msisdn=msisdn, retrieved=False, errors=errors, raw=data)

        current = terminal.get("currentLocation") or {}
        latitude = to_float(current.get("latitude"))
        longitude = to_float(current.get("longitude"))
        if latitude is None or longitude is None:
            raise ProviderResponseError(
                f"SIM location for {msisdn} has no usable coordinates", provider=PROVIDER,
            )

        return SimLocationResponse(
            msisdn=msisdn,
            retrieved=True,
            latitude=latitude,
            longitude=longitude,
            timestamp=provider_timestamp(current.get("timestamp"), PROVIDER),
            detailed_address=current.get("detailedAddress"),
            errors=errors,
            raw=data,
        )
