"""
FleetTrack - Trip Telemetry, Geofence & Alert Engine

Turns raw location fixes from SIM and GPS providers into trip lifecycle
events: start/complete validation, pickup and delivery geofence crossings,
stoppage detection, delay detection and alert management.
"""

from .tracker import TripTracker

__version__ = "0.1.0"
__all__ = ["TripTracker"]
