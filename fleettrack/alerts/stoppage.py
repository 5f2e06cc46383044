"""
Stoppage detection.

Clusters a trip's samples and raises one stoppage alert per stationary
period that reached the threshold. A stoppage already represented by a
stoppage alert of the trip (any status) is not raised again; identity is
the cluster's dedup key (start minute + centroid to 4 decimals).
"""

from __future__ import annotations

from typing import List, Optional
import logging

from ..core.clustering import StoppageCluster, cluster_samples, format_duration
from ..models import Alert, AlertSeverity, AlertType, TrackingSettings, Trip
from ..store.base import TrackingStore
from .manager import AlertLifecycleManager


logger = logging.getLogger(__name__)

HIGH_SEVERITY_MINUTES = 60


class StoppageDetector:
    """Raises stoppage alerts from location history."""

    def __init__(self, store: TrackingStore, alerts: AlertLifecycleManager):
        self._store = store
        self._alerts = alerts

    async def detect(self, trip: Trip, settings: Optional[TrackingSettings] = None) -> List[Alert]:
        """
        Run stoppage detection for one trip.

        Returns:
            Alerts created by this run (empty if nothing new)
        """
        settings = settings or TrackingSettings()
        samples = await self._store.list_samples(trip.id)
        analysis = cluster_samples(
            samples,
            proximity_meters=settings.stoppage_proximity_meters,
            stoppage_minutes=settings.stoppage_threshold_minutes,
        )
        if not analysis.stoppages:
            return []

        existing = await self._store.list_alerts(trip.id, alert_type=AlertType.STOPPAGE)
        seen = {a.metadata.get("dedup_key") for a in existing}

        created: List[Alert] = []
        for cluster in analysis.stoppages:
            if cluster.dedup_key in seen:
                continue
            alert = await self._raise(trip, cluster, settings.stoppage_threshold_minutes)
            if alert is not None:
                created.append(alert)
                seen.add(cluster.dedup_key)

        if created:
            logger.info(f"Trip {trip.trip_code}: {len(created)} new stoppage(s)")
        return created

    async def _raise(self, trip: Trip, cluster: StoppageCluster, threshold_minutes: float) -> Optional[Alert]:
        duration = cluster.duration_minutes
        severity = AlertSeverity.HIGH if duration >= HIGH_SEVERITY_MINUTES else AlertSeverity.MEDIUM
        where = cluster.address or str(cluster.centroid)

        return await self._alerts.create_alert(
            trip,
            AlertType.STOPPAGE,
            severity,
            "Vehicle Stopped",
            description=f"Vehicle stationary for {format_duration(duration)} near {where}",
            location=cluster.centroid,
            threshold_value=threshold_minutes,
            actual_value=round(duration),
            metadata=cluster.to_dict(),
            dedup=False,
        )
