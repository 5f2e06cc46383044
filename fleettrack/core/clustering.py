"""
FleetTrack Stoppage Clustering Module

Groups a trip's location samples into stationary clusters and decides
which of them are stoppages.

Algorithm:
    Samples are walked in sequence order. Each sample is compared with
    the running centroid of the current cluster; if it lies within the
    proximity tolerance it joins the cluster, otherwise the cluster is
    closed and a new one starts at this sample. Clusters with at least
    two samples are stationary periods; single samples are movement.

    A stationary cluster whose time span (last event time minus first
    event time) reaches the stoppage threshold is a stoppage.

This module also provides the evenly-spaced display subsample used to
bound map rendering cost. It never alters stored history.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional, Sequence, Dict, Any

import numpy as np

from ..models import GeoPoint, LocationSample
from .geofence import haversine_distance


DEFAULT_PROXIMITY_METERS = 100.0
DEFAULT_STOPPAGE_MINUTES = 30.0
DEFAULT_DISPLAY_POINTS = 500


@dataclass
class StoppageCluster:
    """
    A run of consecutive samples that stayed within the proximity tolerance.

    Attributes:
        samples: Member samples in sequence order
        centroid: Mean position of the members
        is_stoppage: Duration reached the stoppage threshold
    """
    samples: List[LocationSample]
    centroid: GeoPoint
    is_stoppage: bool = False

    @property
    def start_time(self) -> datetime:
        return self.samples[0].event_time

    @property
    def end_time(self) -> datetime:
        return self.samples[-1].event_time

    @property
    def duration_minutes(self) -> float:
        return (self.end_time - self.start_time).total_seconds() / 60

    @property
    def point_count(self) -> int:
        return len(self.samples)

    @property
    def address(self) -> Optional[str]:
        """Best available address, first sample preferred."""
        return self.samples[0].detailed_address or self.samples[-1].detailed_address

    @property
    def dedup_key(self) -> str:
        """
        Identity of this stoppage across repeated scans: start time
        rounded to the minute plus the centroid rounded to 4 decimals.
        """
        start = (self.start_time + timedelta(seconds=30)).replace(second=0, microsecond=0)
        return (
            f"{start.strftime('%Y-%m-%dT%H:%M')}"
            f"|{self.centroid.latitude:.4f}|{self.centroid.longitude:.4f}"
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "center_lat": self.centroid.latitude,
            "center_lng": self.centroid.longitude,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
            "duration_minutes": round(self.duration_minutes),
            "point_count": self.point_count,
            "first_sequence": self.samples[0].sequence_number,
            "last_sequence": self.samples[-1].sequence_number,
            "address": self.address,
            "is_stoppage": self.is_stoppage,
            "dedup_key": self.dedup_key,
        }


@dataclass
class ClusterAnalysis:
    """Clusters and moving points for one trip."""
    clusters: List[StoppageCluster] = field(default_factory=list)
    moving_samples: List[LocationSample] = field(default_factory=list)

    @property
    def stoppages(self) -> List[StoppageCluster]:
        return [c for c in self.clusters if c.is_stoppage]


def _centroid(samples: Sequence[LocationSample]) -> GeoPoint:
    coords = np.array([(s.latitude, s.longitude) for s in samples], dtype=float)
    lat, lon = coords.mean(axis=0)
    return GeoPoint(latitude=float(lat), longitude=float(lon))


def cluster_samples(
    samples: Sequence[LocationSample],
    proximity_meters: float = DEFAULT_PROXIMITY_METERS,
    stoppage_minutes: float = DEFAULT_STOPPAGE_MINUTES,
) -> ClusterAnalysis:
    """
    Cluster samples into stationary periods.

    Args:
        samples: Location samples of one trip (any order)
        proximity_meters: Max distance from the running centroid to join
        stoppage_minutes: Minimum cluster duration to count as a stoppage

    Returns:
        ClusterAnalysis with stationary clusters and moving samples
    """
    analysis = ClusterAnalysis()
    ordered = sorted(samples, key=lambda s: s.sequence_number)
    if not ordered:
        return analysis

    def close(run: List[LocationSample]) -> None:
        if len(run) < 2:
            analysis.moving_samples.extend(run)
            return
        cluster = StoppageCluster(samples=list(run), centroid=_centroid(run))
        cluster.is_stoppage = cluster.duration_minutes >= stoppage_minutes
        analysis.clusters.append(cluster)

    current: List[LocationSample] = [ordered[0]]
    center_lat, center_lon = ordered[0].latitude, ordered[0].longitude

    for sample in ordered[1:]:
        distance = haversine_distance(center_lat, center_lon, sample.latitude, sample.longitude)
        if distance <= proximity_meters:
            current.append(sample)
            # Running mean of the cluster
            n = len(current)
            center_lat += (sample.latitude - center_lat) / n
            center_lon += (sample.longitude - center_lon) / n
        else:
            close(current)
            current = [sample]
            center_lat, center_lon = sample.latitude, sample.longitude

    close(current)
    return analysis


def format_duration(minutes: float) -> str:
    """Human-readable duration: '45 min', '2h', '1h 15m'."""
    total = int(round(minutes))
    if total < 60:
        return f"{total} min"
    hours, mins = divmod(total, 60)
    return f"{hours}h {mins}m" if mins else f"{hours}h"


def sample_for_display(
    samples: Sequence[LocationSample],
    max_points: int = DEFAULT_DISPLAY_POINTS,
) -> List[LocationSample]:
    """
    Evenly spaced subsequence of at most ``max_points`` samples that
    always contains the first and the last sample.
    """
    ordered = sorted(samples, key=lambda s: s.sequence_number)
    if len(ordered) <= max_points:
        return ordered
    if max_points < 2:
        return [ordered[-1]] if max_points == 1 else []

    indices = np.unique(np.linspace(0, len(ordered) - 1, num=max_points).round().astype(int))
    return [ordered[i] for i in indices]
