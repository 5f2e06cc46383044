"""
FleetTrack - pytest Configuration

Shared fixtures and configuration for all tests.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import httpx
import pytest
import pytest_asyncio

from fleettrack.config import (
    FleetTrackConfig,
    Environment,
    GpsProviderConfig,
    ScanConfig,
    SimProviderConfig,
    reset_config,
)
from fleettrack.models import (
    Location,
    LocationFix,
    LocationSource,
    TrackingType,
    Trip,
    TripStatus,
)
from fleettrack.providers import GpsProviderClient
from fleettrack.store import InMemoryTrackingStore
from fleettrack.tracker import TripTracker


# =============================================================================
# PYTEST CONFIGURATION
# =============================================================================

def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line(
        "markers", "integration: mark test as integration test (requires external services)"
    )
    config.addinivalue_line(
        "markers", "slow: mark test as slow running"
    )


def pytest_collection_modifyitems(config, items):
    """Modify test collection based on markers."""
    # Skip integration tests by default unless explicitly requested
    if not config.getoption("--run-integration", default=False):
        skip_integration = pytest.mark.skip(reason="need --run-integration option to run")
        for item in items:
            if "integration" in item.keywords:
                item.add_marker(skip_integration)


def pytest_addoption(parser):
    """Add custom command line options."""
    parser.addoption(
        "--run-integration",
        action="store_true",
        default=False,
        help="run integration tests that require external services"
    )


# =============================================================================
# LOCATIONS
# =============================================================================

# Warehouse in Bengaluru, customer DC in Mysuru
ORIGIN = Location(
    id="loc-origin",
    name="Bengaluru Warehouse",
    latitude=12.9716,
    longitude=77.5946,
)
DESTINATION = Location(
    id="loc-destination",
    name="Mysuru DC",
    latitude=12.2958,
    longitude=76.6394,
)


@pytest.fixture
def origin() -> Location:
    return ORIGIN.model_copy()


@pytest.fixture
def destination() -> Location:
    return DESTINATION.model_copy()


# =============================================================================
# STORE AND FACTORIES
# =============================================================================

@pytest.fixture
def store() -> InMemoryTrackingStore:
    """Fresh in-memory store."""
    return InMemoryTrackingStore()


@pytest.fixture
def make_trip(store: InMemoryTrackingStore) -> Callable[..., Trip]:
    """
    Factory that seeds a trip into ``store``.

    Defaults to a GPS-tracked trip from Bengaluru to Mysuru.
    """
    counter = {"n": 0}

    def factory(
        status: TripStatus = TripStatus.CREATED,
        tracking_type: TrackingType = TrackingType.GPS,
        vehicle_number: Optional[str] = None,
        **overrides,
    ) -> Trip:
        counter["n"] += 1
        n = counter["n"]
        trip = Trip(
            id=overrides.pop("id", f"trip-{n}"),
            trip_code=overrides.pop("trip_code", f"TRP-{n:04d}"),
            status=status,
            tracking_type=tracking_type,
            vehicle_number=vehicle_number if vehicle_number is not None else f"KA01AB{n:04d}",
            origin=overrides.pop("origin", ORIGIN.model_copy()),
            destination=overrides.pop("destination", DESTINATION.model_copy()),
            **overrides,
        )
        return store.add_trip(trip)

    return factory


def make_fix(
    latitude: float,
    longitude: float,
    minutes_ago: float = 0.0,
    source: LocationSource = LocationSource.GPS,
    received_at: Optional[datetime] = None,
) -> LocationFix:
    """Location fix taken ``minutes_ago`` before ``received_at`` (default now)."""
    received_at = received_at or datetime.now(timezone.utc)
    return LocationFix(
        latitude=latitude,
        longitude=longitude,
        event_time=received_at - timedelta(minutes=minutes_ago),
        received_at=received_at,
        source=source,
    )


@pytest.fixture
def fix_factory() -> Callable[..., LocationFix]:
    return make_fix


# =============================================================================
# CONFIGURATION FIXTURES
# =============================================================================

@pytest.fixture
def test_config() -> FleetTrackConfig:
    """Configuration with test credentials and no provider spacing."""
    return FleetTrackConfig(
        environment=Environment.DEVELOPMENT,
        sim=SimProviderConfig(
            base_url="https://sim.test/trail-rest",
            oauth_url="https://sim.test/oauth/token",
            login_basic_token="bG9naW46c2VjcmV0",
            oauth_basic_token="Y2xpZW50OnNlY3JldA==",
            min_interval_seconds=0.0,
        ),
        gps=GpsProviderConfig(
            base_url="https://gps.test",
            access_token="gps-test-token",
        ),
        scan=ScanConfig(max_concurrent_trips=4, provider_call_timeout_seconds=2.0),
    )


# =============================================================================
# PROVIDER DOUBLES
# =============================================================================

class FakeGpsProvider:
    """
    ``httpx.MockTransport`` handler for the GPS current-location endpoint.

    Positions are set per vehicle number; vehicles listed in ``failing``
    answer 503, unknown vehicles answer with a provider error body.
    ``raw_timestamps`` replaces the reported fix time verbatim.
    """

    def __init__(self):
        self.positions: Dict[str, Tuple[float, float, datetime]] = {}
        self.failing: Set[str] = set()
        self.raw_timestamps: Dict[str, Any] = {}
        self.calls: List[str] = []

    def place(self, vehicle_number: str, latitude: float, longitude: float,
              minutes_ago: float = 0.0) -> None:
        taken = datetime.now(timezone.utc) - timedelta(minutes=minutes_ago)
        self.positions[vehicle_number] = (latitude, longitude, taken)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        vehicle = request.url.params.get("vehicleNo", "")
        self.calls.append(vehicle)
        if vehicle in self.failing:
            return httpx.Response(503, json={"status": "error", "message": "upstream down"})
        if vehicle not in self.positions:
            return httpx.Response(200, json={"status": "error", "message": "vehicle not found"})
        latitude, longitude, taken = self.positions[vehicle]
        return httpx.Response(200, json={"data": {
            "lat": latitude,
            "lng": longitude,
            "timestamp": self.raw_timestamps.get(vehicle, taken.isoformat()),
            "speed": 0,
        }})


@pytest.fixture
def gps_provider() -> FakeGpsProvider:
    return FakeGpsProvider()


@pytest_asyncio.fixture
async def tracker(test_config, store, gps_provider):
    """TripTracker over the shared store with a mocked GPS provider."""
    instance = TripTracker(
        config=test_config,
        store=store,
        gps_client=GpsProviderClient(test_config.gps, transport=httpx.MockTransport(gps_provider)),
    )
    yield instance
    await instance.close()


@pytest.fixture(autouse=True)
def reset_config_fixture():
    """Reset global configuration before each test."""
    reset_config()
    yield
    reset_config()
