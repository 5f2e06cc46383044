"""
FleetTrack Core - pure geometry and schedule computations.
"""

from .geofence import GeofenceResult, evaluate, haversine_distance, radius_for
from .clustering import StoppageCluster, ClusterAnalysis, cluster_samples, format_duration
from .eta import DelayAssessment, DelayKind, classify_delay, compute_eta

__all__ = [
    "GeofenceResult",
    "evaluate",
    "haversine_distance",
    "radius_for",
    "StoppageCluster",
    "ClusterAnalysis",
    "cluster_samples",
    "format_duration",
    "DelayAssessment",
    "DelayKind",
    "classify_delay",
    "compute_eta",
]
