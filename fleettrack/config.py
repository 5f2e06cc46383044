"""
FleetTrack Configuration Module

Central configuration management with environment variable support.

Deployment-level settings (endpoints, credentials, pool sizes) live here.
Operator-tunable thresholds (delay percent, geofence auto-start, ...) are
stored in the tracking settings table and parsed per scan, see
``models.TrackingSettings``.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Optional, Dict, Any
from enum import Enum


class Environment(Enum):
    """Deployment environment."""
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


@dataclass
class RedisConfig:
    """Redis connection configuration."""
    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    ssl: bool = False
    key_prefix: str = "fleettrack:"

    # Pool settings
    max_connections: int = 100
    socket_timeout: float = 5.0
    socket_connect_timeout: float = 5.0

    @property
    def url(self) -> str:
        """Build Redis URL."""
        protocol = "rediss" if self.ssl else "redis"
        auth = f":{self.password}@" if self.password else ""
        return f"{protocol}://{auth}{self.host}:{self.port}/{self.db}"

    @classmethod
    def from_env(cls) -> "RedisConfig":
        """Load configuration from environment variables."""
        return cls(
            host=os.getenv("REDIS_HOST", "localhost"),
            port=int(os.getenv("REDIS_PORT", "6379")),
            db=int(os.getenv("REDIS_DB", "0")),
            password=os.getenv("REDIS_PASSWORD"),
            ssl=os.getenv("REDIS_SSL", "false").lower() == "true",
            key_prefix=os.getenv("REDIS_KEY_PREFIX", "fleettrack:"),
            max_connections=int(os.getenv("REDIS_MAX_CONNECTIONS", "100")),
            socket_timeout=float(os.getenv("REDIS_SOCKET_TIMEOUT", "5")),
            socket_connect_timeout=float(os.getenv("REDIS_SOCKET_CONNECT_TIMEOUT", "5")),
        )


@dataclass
class SimProviderConfig:
    """SIM (telecom network) location provider configuration."""
    base_url: str = "https://smarttrail.telenity.com/trail-rest"
    oauth_url: str = "https://india-agw.telenity.com/oauth/token"

    # Basic credentials for the login (authentication token) flow
    login_basic_token: str = ""
    # Basic credentials for the OAuth client-credentials (access token) flow
    oauth_basic_token: str = ""

    msisdn_country_prefix: str = "91"

    # Token validity as granted by the provider
    auth_token_ttl_seconds: int = 6 * 60 * 60
    access_token_ttl_seconds: int = 30 * 60

    # Call guards
    timeout_seconds: float = 10.0
    max_concurrency: int = 5
    min_interval_seconds: float = 0.2

    @classmethod
    def from_env(cls) -> "SimProviderConfig":
        """Load configuration from environment variables."""
        return cls(
            base_url=os.getenv("SIM_PROVIDER_BASE_URL", "https://smarttrail.telenity.com/trail-rest"),
            oauth_url=os.getenv("SIM_PROVIDER_OAUTH_URL", "https://india-agw.telenity.com/oauth/token"),
            login_basic_token=os.getenv("TELENITY_AUTH_TOKEN", ""),
            oauth_basic_token=os.getenv("TELENITY_CONSENT_AUTH_TOKEN", ""),
            msisdn_country_prefix=os.getenv("SIM_MSISDN_COUNTRY_PREFIX", "91"),
            timeout_seconds=float(os.getenv("SIM_PROVIDER_TIMEOUT_SECONDS", "10")),
            max_concurrency=int(os.getenv("SIM_PROVIDER_MAX_CONCURRENCY", "5")),
            min_interval_seconds=float(os.getenv("SIM_PROVIDER_MIN_INTERVAL_SECONDS", "0.2")),
        )


@dataclass
class GpsProviderConfig:
    """GPS (vehicle-mounted device) location provider configuration."""
    base_url: str = "https://api.wheelseye.com"
    access_token: str = ""

    timeout_seconds: float = 10.0
    max_concurrency: int = 10
    min_interval_seconds: float = 0.0

    @classmethod
    def from_env(cls) -> "GpsProviderConfig":
        """Load configuration from environment variables."""
        return cls(
            base_url=os.getenv("GPS_PROVIDER_BASE_URL", "https://api.wheelseye.com"),
            access_token=os.getenv("WHEELSEYE_ACCESS_TOKEN", ""),
            timeout_seconds=float(os.getenv("GPS_PROVIDER_TIMEOUT_SECONDS", "10")),
            max_concurrency=int(os.getenv("GPS_PROVIDER_MAX_CONCURRENCY", "10")),
            min_interval_seconds=float(os.getenv("GPS_PROVIDER_MIN_INTERVAL_SECONDS", "0")),
        )


@dataclass
class ScanConfig:
    """Batch scan configuration."""
    # Trips processed concurrently within one scan
    max_concurrent_trips: int = 10

    # Hard ceiling on a single provider call, on top of the HTTP timeout
    provider_call_timeout_seconds: float = 15.0

    # How long a credential refresh lease is held in the store
    credential_lease_seconds: float = 30.0

    @classmethod
    def from_env(cls) -> "ScanConfig":
        """Load configuration from environment variables."""
        return cls(
            max_concurrent_trips=int(os.getenv("SCAN_MAX_CONCURRENT_TRIPS", "10")),
            provider_call_timeout_seconds=float(os.getenv("SCAN_PROVIDER_CALL_TIMEOUT_SECONDS", "15")),
            credential_lease_seconds=float(os.getenv("CREDENTIAL_LEASE_SECONDS", "30")),
        )


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    # Log destinations
    console: bool = True
    file_path: Optional[str] = None

    @classmethod
    def from_env(cls) -> "LoggingConfig":
        """Load configuration from environment variables."""
        return cls(
            level=os.getenv("LOG_LEVEL", "INFO"),
            console=os.getenv("LOG_CONSOLE", "true").lower() == "true",
            file_path=os.getenv("LOG_FILE_PATH"),
        )


def configure_logging(config: LoggingConfig) -> None:
    """Install handlers on the ``fleettrack`` logger."""
    root = logging.getLogger("fleettrack")
    for handler in list(root.handlers):
        root.removeHandler(handler)
    root.setLevel(config.level.upper())
    formatter = logging.Formatter(config.format)

    if config.console:
        handler = logging.StreamHandler()
        handler.setFormatter(formatter)
        root.addHandler(handler)
    if config.file_path:
        file_handler = logging.FileHandler(config.file_path)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)


@dataclass
class FleetTrackConfig:
    """Master configuration for FleetTrack."""
    environment: Environment = Environment.DEVELOPMENT

    # Sub-configurations
    redis: RedisConfig = field(default_factory=RedisConfig)
    sim: SimProviderConfig = field(default_factory=SimProviderConfig)
    gps: GpsProviderConfig = field(default_factory=GpsProviderConfig)
    scan: ScanConfig = field(default_factory=ScanConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_env(cls) -> "FleetTrackConfig":
        """Load all configuration from environment variables."""
        env_str = os.getenv("ENVIRONMENT", "development").lower()
        try:
            environment = Environment(env_str)
        except ValueError:
            environment = Environment.DEVELOPMENT

        return cls(
            environment=environment,
            redis=RedisConfig.from_env(),
            sim=SimProviderConfig.from_env(),
            gps=GpsProviderConfig.from_env(),
            scan=ScanConfig.from_env(),
            logging=LoggingConfig.from_env(),
        )

    def validate(self) -> Dict[str, Any]:
        """
        Validate configuration and return any warnings/errors.

        Returns:
            Dictionary with 'valid' boolean and 'messages' list
        """
        messages = []
        valid = True

        if not self.redis.host:
            messages.append("WARNING: Redis host not configured")

        if not self.sim.login_basic_token:
            messages.append("WARNING: SIM provider login credentials not configured")
        if not self.gps.access_token:
            messages.append("WARNING: GPS provider access token not configured")

        if self.environment == Environment.PRODUCTION:
            if not self.sim.login_basic_token or not self.gps.access_token:
                messages.append("ERROR: Provider credentials required in production")
                valid = False
            if self.redis.host == "localhost":
                messages.append("WARNING: Using localhost Redis in production")

        if self.scan.max_concurrent_trips < 1:
            messages.append("ERROR: SCAN_MAX_CONCURRENT_TRIPS must be at least 1")
            valid = False

        return {"valid": valid, "messages": messages}


# Global configuration instance
_config: Optional[FleetTrackConfig] = None


def get_config() -> FleetTrackConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = FleetTrackConfig.from_env()
    return _config


def set_config(config: FleetTrackConfig) -> None:
    """Set the global configuration instance (for testing)."""
    global _config
    _config = config


def reset_config() -> None:
    """Reset the global configuration (for testing)."""
    global _config
    _config = None
