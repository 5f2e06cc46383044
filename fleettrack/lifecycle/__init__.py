"""
FleetTrack lifecycle: trip state machine and shipment geofence transitions.
"""

from .trips import TripStateMachine, AutoStartOutcome, TRANSITIONS
from .shipments import ShipmentGeofenceProcessor, ShipmentTransition, deliver_remaining_shipments

__all__ = [
    "TripStateMachine",
    "AutoStartOutcome",
    "TRANSITIONS",
    "ShipmentGeofenceProcessor",
    "ShipmentTransition",
    "deliver_remaining_shipments",
]
