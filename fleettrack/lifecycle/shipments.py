"""
Geofence-driven shipment status transitions.

Each active shipment of an ongoing trip is checked against its own
pickup and drop locations, using its own status as the guard:

    mapped      + inside pickup                      -> in_pickup (vehicle_placed)
    in_pickup   + outside pickup + loading completed -> in_transit (on_time)
    in_transit  + inside drop                        -> out_for_delivery

Every transition writes a ShipmentStatusHistory record with the measured
distance and radius, and raises a low-severity geofence entry/exit alert.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional
import logging

from ..alerts.manager import AlertLifecycleManager
from ..core.geofence import GeofenceResult, evaluate
from ..models import (
    AlertSeverity,
    AlertType,
    ChangeSource,
    LocationSample,
    Shipment,
    ShipmentStatus,
    ShipmentStatusHistory,
    TERMINAL_SHIPMENT_STATUSES,
    Trip,
    utcnow,
)
from ..store.base import TrackingStore


logger = logging.getLogger(__name__)


GEOFENCE_STATUSES = (
    ShipmentStatus.MAPPED,
    ShipmentStatus.IN_PICKUP,
    ShipmentStatus.IN_TRANSIT,
)

# Sub-statuses meaning loading at the pickup is done
LOADING_COMPLETED_SUB_STATUSES = frozenset({"loading_completed", "ready_for_dispatch"})


@dataclass
class ShipmentTransition:
    """One applied shipment status change."""
    shipment_id: str
    shipment_code: str
    previous_status: ShipmentStatus
    new_status: ShipmentStatus
    event: str
    distance_meters: float
    radius_meters: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "shipment_id": self.shipment_id,
            "shipment_code": self.shipment_code,
            "previous_status": self.previous_status.value,
            "new_status": self.new_status.value,
            "event": self.event,
            "distance_meters": round(self.distance_meters),
            "radius_meters": self.radius_meters,
        }


class ShipmentGeofenceProcessor:
    """Applies geofence transitions to a trip's shipments."""

    def __init__(self, store: TrackingStore, alerts: AlertLifecycleManager):
        self._store = store
        self._alerts = alerts

    async def process(self, trip: Trip, sample: LocationSample) -> List[ShipmentTransition]:
        """
        Evaluate every geofence-eligible shipment of ``trip`` at ``sample``.

        Shipments whose relevant location has no coordinates are skipped.
        """
        transitions: List[ShipmentTransition] = []
        shipments = await self._store.list_shipments(trip.id, statuses=GEOFENCE_STATUSES)

        for shipment in shipments:
            transition = await self._evaluate_shipment(trip, shipment, sample)
            if transition is not None:
                transitions.append(transition)

        return transitions

    async def _evaluate_shipment(
        self,
        trip: Trip,
        shipment: Shipment,
        sample: LocationSample,
    ) -> Optional[ShipmentTransition]:
        point = sample.point
        status = shipment.status

        if status in (ShipmentStatus.MAPPED, ShipmentStatus.IN_PICKUP):
            pickup = shipment.pickup_location
            if pickup is None or not pickup.has_coordinates:
                return None
            result = evaluate(point, pickup, trip.tracking_type)

            if status == ShipmentStatus.MAPPED and result.within_geofence:
                return await self._apply(
                    trip, shipment, ShipmentStatus.IN_PICKUP, "vehicle_placed",
                    "pickup_entry", result, pickup.name, sample,
                )
            if (
                status == ShipmentStatus.IN_PICKUP
                and not result.within_geofence
                and shipment.sub_status in LOADING_COMPLETED_SUB_STATUSES
            ):
                return await self._apply(
                    trip, shipment, ShipmentStatus.IN_TRANSIT, "on_time",
                    "pickup_exit", result, pickup.name, sample,
                )
            return None

        if status == ShipmentStatus.IN_TRANSIT:
            drop = shipment.drop_location
            if drop is None or not drop.has_coordinates:
                return None
            result = evaluate(point, drop, trip.tracking_type)
            if result.within_geofence:
                return await self._apply(
                    trip, shipment, ShipmentStatus.OUT_FOR_DELIVERY, shipment.sub_status,
                    "delivery_entry", result, drop.name, sample,
                )
        return None

    async def _apply(
        self,
        trip: Trip,
        shipment: Shipment,
        new_status: ShipmentStatus,
        new_sub_status: Optional[str],
        event: str,
        result: GeofenceResult,
        location_name: str,
        sample: LocationSample,
    ) -> ShipmentTransition:
        previous_status = shipment.status
        previous_sub_status = shipment.sub_status
        now = utcnow()

        shipment.status = new_status
        shipment.sub_status = new_sub_status
        if new_status == ShipmentStatus.IN_PICKUP:
            shipment.in_pickup_at = now
        elif new_status == ShipmentStatus.IN_TRANSIT:
            shipment.in_transit_at = now
        elif new_status == ShipmentStatus.OUT_FOR_DELIVERY:
            shipment.out_for_delivery_at = now
        await self._store.save_shipment(shipment)

        distance = round(result.distance_meters)
        await self._store.add_shipment_history(ShipmentStatusHistory(
            shipment_id=shipment.id,
            previous_status=previous_status,
            new_status=new_status,
            previous_sub_status=previous_sub_status,
            new_sub_status=new_sub_status,
            change_source=ChangeSource.GEOFENCE,
            notes=f"Auto-transitioned on {event.replace('_', ' ')} ({distance}m from {location_name or 'location'})",
            metadata={
                "distance_meters": distance,
                "radius_meters": result.radius_meters,
                "location_name": location_name,
                "event": event,
                "sample_sequence_number": sample.sequence_number,
            },
        ))

        alert_type = AlertType.GEOFENCE_EXIT if event.endswith("_exit") else AlertType.GEOFENCE_ENTRY
        await self._alerts.create_alert(
            trip,
            alert_type,
            AlertSeverity.LOW,
            f"Shipment {shipment.shipment_code}: {event.replace('_', ' ')}",
            description=f"{location_name or 'Location'} geofence {event.split('_')[1]} at {distance}m",
            location=sample.point,
            threshold_value=result.radius_meters,
            actual_value=distance,
            metadata={"shipment_id": shipment.id, "event": event},
            dedup=False,
        )

        logger.info(
            f"Shipment {shipment.shipment_code} {previous_status.value} -> {new_status.value} "
            f"({event}, {distance}m)"
        )
        return ShipmentTransition(
            shipment_id=shipment.id,
            shipment_code=shipment.shipment_code,
            previous_status=previous_status,
            new_status=new_status,
            event=event,
            distance_meters=result.distance_meters,
            radius_meters=result.radius_meters,
        )


async def deliver_remaining_shipments(store: TrackingStore, trip: Trip) -> List[Shipment]:
    """Move every non-terminal shipment of a completed trip to delivered."""
    delivered: List[Shipment] = []
    now = utcnow()
    for shipment in await store.list_shipments(trip.id):
        if shipment.status in TERMINAL_SHIPMENT_STATUSES:
            continue
        previous_status = shipment.status
        previous_sub_status = shipment.sub_status
        shipment.status = ShipmentStatus.DELIVERED
        shipment.delivered_at = now
        await store.save_shipment(shipment)
        await store.add_shipment_history(ShipmentStatusHistory(
            shipment_id=shipment.id,
            previous_status=previous_status,
            new_status=ShipmentStatus.DELIVERED,
            previous_sub_status=previous_sub_status,
            new_sub_status=shipment.sub_status,
            change_source=ChangeSource.TRIP_COMPLETION,
            notes=f"Delivered on completion of trip {trip.trip_code}",
            metadata={"trip_id": trip.id},
        ))
        delivered.append(shipment)
    return delivered
