"""
FleetTrack alerting: lifecycle manager and detectors.
"""

from .manager import AlertLifecycleManager, BulkUpdateResult
from .stoppage import StoppageDetector
from .delay import DelayMonitor
from .health import TrackingHealthMonitor, HealthOutcome

__all__ = [
    "AlertLifecycleManager",
    "BulkUpdateResult",
    "StoppageDetector",
    "DelayMonitor",
    "TrackingHealthMonitor",
    "HealthOutcome",
]
