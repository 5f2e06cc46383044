"""
FleetTrack Test - Batch Scans and Tracker Facade

Validates the scheduled scans (location refresh, shipment geofence,
stoppages, tracking health), per-trip failure isolation, consent
revocation, settings and the tracking history view.
"""

from datetime import timedelta

import pytest

from fleettrack.exceptions import InvalidTransitionError, StaleLocationError
from fleettrack.models import (
    AlertSeverity,
    AlertType,
    ChangeSource,
    ConsentStatus,
    DriverConsent,
    Location,
    Shipment,
    ShipmentStatus,
    TrackingSettings,
    TrackingType,
    TripStatus,
    utcnow,
)


ORIGIN_LAT, ORIGIN_LNG = 12.9716, 77.5946


class TestRefreshAllLocations:

    @pytest.mark.asyncio
    async def test_one_failing_trip_does_not_abort_scan(self, tracker, gps_provider, make_trip):
        """
        Scenario:
            Ten ongoing GPS trips; the provider answers 503 for the fourth.

        Expected:
            Nine trips refreshed, one failure recorded with its error type.
        """
        # Arrange
        trips = [make_trip(status=TripStatus.ONGOING) for _ in range(10)]
        for trip in trips:
            gps_provider.place(trip.vehicle_number, ORIGIN_LAT, ORIGIN_LNG)
        gps_provider.failing.add(trips[3].vehicle_number)

        # Act
        result = await tracker.refresh_all_locations()

        # Assert
        assert result.total == 10
        assert result.succeeded == 9
        assert result.failed == 1
        [failure] = result.failures
        assert failure.trip_id == trips[3].id
        assert failure.error_type == "ProviderUnavailableError"
        assert result.finished_at is not None
        assert result.to_dict()["failed"] == 1

    @pytest.mark.asyncio
    async def test_refresh_updates_trip(self, tracker, gps_provider, make_trip, store):
        trip = make_trip(status=TripStatus.ONGOING)
        gps_provider.place(trip.vehicle_number, ORIGIN_LAT + 0.1, ORIGIN_LNG - 0.1, minutes_ago=2)

        result = await tracker.refresh_all_locations()

        update = result.results[0].value
        assert update.sample.sequence_number == 1
        assert update.stale is False
        stored = await store.get_trip(trip.id)
        assert stored.last_ping_at is not None
        assert stored.current_eta is not None
        assert stored.current_eta == update.current_eta
        assert len(await store.list_samples(trip.id)) == 1

    @pytest.mark.asyncio
    async def test_only_ongoing_tracked_trips_are_polled(self, tracker, gps_provider, make_trip):
        make_trip(status=TripStatus.CREATED)
        make_trip(status=TripStatus.ON_HOLD)
        make_trip(status=TripStatus.ONGOING, tracking_type=TrackingType.NONE)
        make_trip(status=TripStatus.ONGOING, is_trackable=False)
        polled = make_trip(status=TripStatus.ONGOING)
        gps_provider.place(polled.vehicle_number, ORIGIN_LAT, ORIGIN_LNG)

        result = await tracker.refresh_all_locations()

        assert [r.trip_id for r in result.results] == [polled.id]
        assert gps_provider.calls == [polled.vehicle_number]

    @pytest.mark.asyncio
    async def test_revoked_consent_raises_critical_alert(self, tracker, make_trip, store):
        consent = store.add_consent(DriverConsent(
            driver_id="drv-7",
            msisdn="919876543210",
            consent_status=ConsentStatus.NOT_ALLOWED,
        ))
        trip = make_trip(
            status=TripStatus.ONGOING,
            tracking_type=TrackingType.SIM,
            driver_id="drv-7",
            sim_consent_id=consent.id,
        )

        result = await tracker.refresh_all_locations()

        assert result.failures[0].error_type == "NoConsentError"
        [alert] = await store.list_alerts(trip.id, alert_type=AlertType.CONSENT_REVOKED)
        assert alert.severity == AlertSeverity.CRITICAL
        assert alert.metadata["msisdn"] == "919876543210"

    @pytest.mark.asyncio
    async def test_missing_consent_is_not_a_revocation(self, tracker, make_trip, store):
        trip = make_trip(status=TripStatus.ONGOING, tracking_type=TrackingType.SIM, driver_id="drv-8")

        result = await tracker.refresh_all_locations()

        assert result.failed == 1
        assert await store.list_alerts(trip.id) == []


class TestFetchLocationNow:

    @pytest.mark.asyncio
    async def test_ongoing_trip(self, tracker, gps_provider, make_trip, store):
        trip = make_trip(status=TripStatus.ONGOING)
        gps_provider.place(trip.vehicle_number, ORIGIN_LAT, ORIGIN_LNG, minutes_ago=20)

        update = await tracker.fetch_location_now(trip.id)

        assert update.stale is True
        assert update.to_dict()["age_minutes"] == 20
        assert (await store.get_trip(trip.id)).last_ping_at is not None

    @pytest.mark.asyncio
    async def test_strict_freshness_rejects_old_fix(self, tracker, gps_provider, make_trip, store):
        trip = make_trip(status=TripStatus.ONGOING)
        gps_provider.place(trip.vehicle_number, ORIGIN_LAT, ORIGIN_LNG, minutes_ago=20)

        with pytest.raises(StaleLocationError) as exc_info:
            await tracker.fetch_location_now(trip.id, max_age_minutes=10)

        assert round(exc_info.value.age_minutes) == 20
        assert await store.list_samples(trip.id) == []

    @pytest.mark.asyncio
    async def test_rejects_trip_not_in_progress(self, tracker, make_trip):
        trip = make_trip(status=TripStatus.CREATED)

        with pytest.raises(InvalidTransitionError, match="only be fetched for ongoing"):
            await tracker.fetch_location_now(trip.id)


class TestCheckGeofence:

    @pytest.mark.asyncio
    async def test_shipment_transitions(self, tracker, make_trip, store, fix_factory):
        """
        Scenario:
            Vehicle reports from the origin warehouse. Three shipments:
            one mapped with pickup here, one loaded at a pickup 1 km away,
            one in transit with its drop here.

        Expected:
            mapped -> in_pickup, in_pickup -> in_transit,
            in_transit -> out_for_delivery, each with history and a
            low-severity geofence alert.
        """
        # Arrange
        here = Location(name="Bengaluru Warehouse", latitude=ORIGIN_LAT, longitude=ORIGIN_LNG)
        elsewhere = Location(name="Hosur Road Yard", latitude=ORIGIN_LAT + 0.01, longitude=ORIGIN_LNG)
        trip = make_trip(status=TripStatus.ONGOING)
        mapped = store.add_shipment(Shipment(
            shipment_code="SHP-100", trip_id=trip.id, status=ShipmentStatus.MAPPED,
            pickup_location=here,
        ))
        loaded = store.add_shipment(Shipment(
            shipment_code="SHP-101", trip_id=trip.id, status=ShipmentStatus.IN_PICKUP,
            sub_status="loading_completed", pickup_location=elsewhere,
        ))
        arriving = store.add_shipment(Shipment(
            shipment_code="SHP-102", trip_id=trip.id, status=ShipmentStatus.IN_TRANSIT,
            drop_location=here,
        ))
        still_loading = store.add_shipment(Shipment(
            shipment_code="SHP-103", trip_id=trip.id, status=ShipmentStatus.IN_PICKUP,
            sub_status="loading", pickup_location=elsewhere,
        ))
        await store.append_sample(trip.id, fix_factory(ORIGIN_LAT, ORIGIN_LNG, minutes_ago=3))

        # Act
        result = await tracker.check_geofence()

        # Assert
        value = result.results[0].value
        assert value["skipped"] is None
        moves = {t["shipment_code"]: (t["previous_status"], t["new_status"]) for t in value["transitions"]}
        assert moves == {
            "SHP-100": ("mapped", "in_pickup"),
            "SHP-101": ("in_pickup", "in_transit"),
            "SHP-102": ("in_transit", "out_for_delivery"),
        }

        shipments = {s.shipment_code: s for s in await store.list_shipments(trip.id)}
        assert shipments["SHP-100"].sub_status == "vehicle_placed"
        assert shipments["SHP-100"].in_pickup_at is not None
        assert shipments["SHP-101"].sub_status == "on_time"
        assert shipments["SHP-102"].out_for_delivery_at is not None
        assert shipments["SHP-103"].status == ShipmentStatus.IN_PICKUP

        for shipment in (mapped, loaded, arriving):
            [entry] = await store.list_shipment_history(shipment.id)
            assert entry.change_source == ChangeSource.GEOFENCE
            assert entry.metadata["sample_sequence_number"] == 1
        assert await store.list_shipment_history(still_loading.id) == []

        entries = await store.list_alerts(trip.id, alert_type=AlertType.GEOFENCE_ENTRY)
        exits = await store.list_alerts(trip.id, alert_type=AlertType.GEOFENCE_EXIT)
        assert len(entries) == 2
        assert len(exits) == 1
        assert {a.severity for a in entries + exits} == {AlertSeverity.LOW}

    @pytest.mark.asyncio
    async def test_second_pass_is_idempotent(self, tracker, make_trip, store, fix_factory):
        here = Location(name="Warehouse", latitude=ORIGIN_LAT, longitude=ORIGIN_LNG)
        trip = make_trip(status=TripStatus.ONGOING)
        store.add_shipment(Shipment(
            shipment_code="SHP-200", trip_id=trip.id, status=ShipmentStatus.MAPPED, pickup_location=here,
        ))
        await store.append_sample(trip.id, fix_factory(ORIGIN_LAT, ORIGIN_LNG))

        await tracker.check_geofence()
        second = await tracker.check_geofence()

        assert second.results[0].value["transitions"] == []

    @pytest.mark.asyncio
    async def test_old_location_is_not_used(self, tracker, make_trip, store, fix_factory):
        trip = make_trip(status=TripStatus.ONGOING)
        store.add_shipment(Shipment(
            shipment_code="SHP-300", trip_id=trip.id, status=ShipmentStatus.MAPPED,
            pickup_location=Location(latitude=ORIGIN_LAT, longitude=ORIGIN_LNG),
        ))
        await store.append_sample(trip.id, fix_factory(ORIGIN_LAT, ORIGIN_LNG, minutes_ago=45))

        result = await tracker.check_geofence()

        assert result.results[0].value == {"skipped": "Latest location is too old", "transitions": []}
        [shipment] = await store.list_shipments(trip.id)
        assert shipment.status == ShipmentStatus.MAPPED

    @pytest.mark.asyncio
    async def test_trip_without_location(self, tracker, make_trip):
        make_trip(status=TripStatus.ONGOING)

        result = await tracker.check_geofence()

        assert result.results[0].value["skipped"] == "No location recorded"


class TestDetectorScans:

    @pytest.mark.asyncio
    async def test_stoppage_scan(self, tracker, make_trip, store, fix_factory):
        trip = make_trip(status=TripStatus.ONGOING)
        for minutes_ago in range(40, -1, -5):
            await store.append_sample(trip.id, fix_factory(ORIGIN_LAT, ORIGIN_LNG, minutes_ago=minutes_ago))

        first = await tracker.check_stoppages()
        second = await tracker.check_stoppages()

        assert first.results[0].value["alerts_created"] == 1
        assert second.results[0].value["alerts_created"] == 0
        assert (await store.get_trip(trip.id)).active_alert_count == 1

    @pytest.mark.asyncio
    async def test_tracking_health_scan(self, tracker, make_trip, store):
        now = utcnow()
        silent = make_trip(status=TripStatus.ONGOING, last_ping_at=now - timedelta(minutes=50))
        healthy = make_trip(status=TripStatus.ONGOING, last_ping_at=now - timedelta(minutes=2))

        result = await tracker.check_tracking_health(now=now)

        outcomes = {r.trip_id: r.value for r in result.results}
        assert outcomes[silent.id].tracking_lost is True
        assert outcomes[healthy.id].tracking_lost is False
        assert len(await store.list_alerts(silent.id, alert_type=AlertType.TRACKING_LOST)) == 1

    @pytest.mark.asyncio
    async def test_scan_uses_passed_settings(self, tracker, make_trip, store):
        now = utcnow()
        trip = make_trip(status=TripStatus.ONGOING, last_ping_at=now - timedelta(minutes=50))

        await tracker.check_tracking_health(TrackingSettings(tracking_lost_threshold_minutes=60), now)

        assert await store.list_alerts(trip.id) == []


class TestSettings:

    @pytest.mark.asyncio
    async def test_defaults(self, tracker):
        settings = await tracker.get_settings()

        assert settings["tracking_frequency_seconds"] == "900"
        assert settings["delay_threshold_percent"] == "15"
        assert settings["geofence_auto_start_enabled"] == "false"

    @pytest.mark.asyncio
    async def test_update_numeric(self, tracker):
        settings = await tracker.update_setting("stoppage_threshold_minutes", 45)

        assert settings["stoppage_threshold_minutes"] == "45"
        assert (await tracker.load_settings()).stoppage_threshold_minutes == 45.0

    @pytest.mark.asyncio
    async def test_update_boolean(self, tracker):
        await tracker.update_setting("enable_sim_tracking", False)

        assert (await tracker.get_settings())["enable_sim_tracking"] == "false"
        assert (await tracker.load_settings()).enable_sim_tracking is False

    @pytest.mark.asyncio
    async def test_rejects_non_numeric(self, tracker):
        with pytest.raises(ValueError):
            await tracker.update_setting("delay_threshold_percent", "lots")

    @pytest.mark.asyncio
    async def test_unparseable_stored_value_keeps_default(self, tracker, store):
        await store.set_setting("idle_threshold_minutes", "soon")

        assert (await tracker.load_settings()).idle_threshold_minutes == 120.0


class TestTrackingHistory:

    @pytest.mark.asyncio
    async def test_history_summary(self, tracker, make_trip, store, fix_factory):
        trip = make_trip(status=TripStatus.ONGOING)
        for i in range(3):
            await store.append_sample(
                trip.id, fix_factory(ORIGIN_LAT + 0.01 * i, ORIGIN_LNG, minutes_ago=30 - 10 * i),
            )

        history = await tracker.get_tracking_history(trip.id, max_points=2)

        assert history["trip_code"] == trip.trip_code
        assert history["total_points"] == 3
        assert history["display_points"] == 2
        assert history["last_sequence_number"] == 3
        assert history["samples"][0]["sequence_number"] == 1
        assert "raw" not in history["samples"][0]
        assert history["stoppages"] == []

    @pytest.mark.asyncio
    async def test_empty_history(self, tracker, make_trip):
        trip = make_trip(status=TripStatus.CREATED)

        history = await tracker.get_tracking_history(trip.id)

        assert history["total_points"] == 0
        assert history["last_sequence_number"] == 0
        assert history["last_updated_at"] is None
