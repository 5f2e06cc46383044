"""
FleetTrack ETA & Delay Detector

ETA is a straight-line projection: great-circle distance to the
destination at an assumed average speed of 40 km/h, rounded to whole
minutes.

Delay classification compares time remaining under the plan
(planned_eta, else planned_end_time) with time remaining under the
current ETA:

    PAST_DUE         planned time has passed but the trip still has time
                     to go. delay_percent = 100.
    BEHIND_SCHEDULE  the current ETA needs more time than the plan, and
                     the excess is at least the threshold percent of the
                     planned remaining time.
    ON_TIME          everything else, including trips that cannot be
                     evaluated (no baseline or no current ETA).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional, Dict, Any

from ..models import AlertSeverity, GeoPoint, Trip
from .geofence import haversine_distance


AVERAGE_SPEED_KMPH = 40.0


class DelayKind(str, Enum):
    ON_TIME = "on_time"
    BEHIND_SCHEDULE = "behind_schedule"
    PAST_DUE = "past_due"


@dataclass(frozen=True)
class DelayAssessment:
    """Result of a delay classification for one trip."""
    kind: DelayKind
    delay_percent: float = 0.0
    delay_minutes: float = 0.0
    severity: Optional[AlertSeverity] = None
    baseline: Optional[datetime] = None
    current_eta: Optional[datetime] = None
    # False when the trip lacks a baseline or current ETA
    evaluated: bool = True

    @property
    def is_delayed(self) -> bool:
        return self.kind != DelayKind.ON_TIME

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "delay_percent": round(self.delay_percent, 1),
            "delay_minutes": round(self.delay_minutes),
            "severity": self.severity.value if self.severity else None,
            "planned_eta": self.baseline.isoformat() if self.baseline else None,
            "current_eta": self.current_eta.isoformat() if self.current_eta else None,
            "evaluated": self.evaluated,
        }


def compute_eta(
    trip: Trip,
    point: GeoPoint,
    now: datetime,
    average_speed_kmph: float = AVERAGE_SPEED_KMPH,
) -> Optional[datetime]:
    """
    Project arrival time from ``point`` to the trip's destination.

    Returns None if the destination has no coordinates.
    """
    destination = trip.destination
    if destination is None or not destination.has_coordinates:
        return None

    distance_km = haversine_distance(
        point.latitude, point.longitude, destination.latitude, destination.longitude,
    ) / 1000
    minutes = round(distance_km / average_speed_kmph * 60)
    return now + timedelta(minutes=minutes)


def severity_for_delay(delay_percent: float) -> AlertSeverity:
    """> 50% high, > 30% medium, otherwise low."""
    if delay_percent > 50:
        return AlertSeverity.HIGH
    if delay_percent > 30:
        return AlertSeverity.MEDIUM
    return AlertSeverity.LOW


def classify_delay(trip: Trip, threshold_percent: float, now: datetime) -> DelayAssessment:
    """
    Classify a trip's schedule deviation.

    Args:
        trip: Trip with planned_eta/planned_end_time and current_eta
        threshold_percent: Minimum delay percent counted as behind schedule
        now: Evaluation time
    """
    baseline = trip.planned_eta or trip.planned_end_time
    current = trip.current_eta
    if baseline is None or current is None:
        return DelayAssessment(
            kind=DelayKind.ON_TIME, baseline=baseline, current_eta=current, evaluated=False,
        )

    baseline_remaining = (baseline - now).total_seconds() / 60
    current_remaining = (current - now).total_seconds() / 60

    if baseline_remaining <= 0:
        if current_remaining > 0:
            return DelayAssessment(
                kind=DelayKind.PAST_DUE,
                delay_percent=100.0,
                delay_minutes=current_remaining,
                severity=severity_for_delay(100.0),
                baseline=baseline,
                current_eta=current,
            )
        return DelayAssessment(kind=DelayKind.ON_TIME, baseline=baseline, current_eta=current)

    if current_remaining > baseline_remaining:
        delay_percent = (current_remaining - baseline_remaining) / baseline_remaining * 100
        if delay_percent >= threshold_percent:
            return DelayAssessment(
                kind=DelayKind.BEHIND_SCHEDULE,
                delay_percent=delay_percent,
                delay_minutes=current_remaining - baseline_remaining,
                severity=severity_for_delay(delay_percent),
                baseline=baseline,
                current_eta=current,
            )

    return DelayAssessment(kind=DelayKind.ON_TIME, baseline=baseline, current_eta=current)
