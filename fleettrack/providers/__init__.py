"""
FleetTrack location providers: HTTP clients, credentials, adapter.
"""

from .adapter import TelemetryProviderAdapter, normalize_response
from .credentials import CredentialManager
from .gps import GpsProviderClient
from .sim import SimProviderClient, normalize_msisdn

__all__ = [
    "TelemetryProviderAdapter",
    "normalize_response",
    "CredentialManager",
    "GpsProviderClient",
    "SimProviderClient",
    "normalize_msisdn",
]
