"""
FleetTrack Test - ETA and Delay Detection
"""

from datetime import datetime, timedelta, timezone

import pytest

from fleettrack.alerts import AlertLifecycleManager, DelayMonitor
from fleettrack.core.eta import (
    AVERAGE_SPEED_KMPH,
    DelayKind,
    classify_delay,
    compute_eta,
    severity_for_delay,
)
from fleettrack.models import (
    AlertSeverity,
    AlertStatus,
    AlertType,
    GeoPoint,
    Location,
    TrackingSettings,
    TripStatus,
)


NOW = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)


class TestComputeEta:

    def test_forty_kmph_over_haversine(self, make_trip):
        """~127 km from Bengaluru to Mysuru at 40 km/h is a bit over 3 hours."""
        trip = make_trip()
        eta = compute_eta(trip, GeoPoint(latitude=12.9716, longitude=77.5946), NOW)

        minutes = (eta - NOW).total_seconds() / 60
        assert AVERAGE_SPEED_KMPH == 40.0
        assert 185 < minutes < 195, f"Unexpected ETA {minutes} minutes"
        assert minutes == int(minutes), "ETA is rounded to whole minutes"

    def test_at_destination_is_now(self, make_trip, destination):
        trip = make_trip()
        eta = compute_eta(trip, GeoPoint(latitude=destination.latitude, longitude=destination.longitude), NOW)
        assert eta == NOW

    def test_no_destination_coordinates(self, make_trip):
        trip = make_trip(destination=Location(name="Unmapped"))
        assert compute_eta(trip, GeoPoint(latitude=12.9, longitude=77.5), NOW) is None


class TestClassifyDelay:

    def test_thirty_three_percent_is_medium(self, make_trip):
        """
        Scenario:
            Baseline remaining 60 min, current remaining 80 min, threshold 15%.

        Expected:
            33% overage: behind schedule, medium severity.
        """
        trip = make_trip(
            status=TripStatus.ONGOING,
            planned_eta=NOW + timedelta(minutes=60),
            current_eta=NOW + timedelta(minutes=80),
        )

        assessment = classify_delay(trip, 15.0, NOW)

        assert assessment.kind == DelayKind.BEHIND_SCHEDULE
        assert assessment.delay_percent == pytest.approx(33.33, abs=0.01)
        assert assessment.delay_minutes == pytest.approx(20)
        assert assessment.severity == AlertSeverity.MEDIUM

    def test_below_threshold_is_on_time(self, make_trip):
        trip = make_trip(
            planned_eta=NOW + timedelta(minutes=60),
            current_eta=NOW + timedelta(minutes=65),
        )
        assessment = classify_delay(trip, 15.0, NOW)

        assert assessment.kind == DelayKind.ON_TIME
        assert assessment.evaluated
        assert not assessment.is_delayed

    def test_past_due(self, make_trip):
        trip = make_trip(
            planned_eta=NOW - timedelta(minutes=10),
            current_eta=NOW + timedelta(minutes=25),
        )
        assessment = classify_delay(trip, 15.0, NOW)

        assert assessment.kind == DelayKind.PAST_DUE
        assert assessment.delay_percent == 100.0
        assert assessment.delay_minutes == pytest.approx(25)
        assert assessment.severity == AlertSeverity.HIGH

    def test_planned_end_time_is_fallback_baseline(self, make_trip):
        trip = make_trip(
            planned_end_time=NOW + timedelta(minutes=100),
            current_eta=NOW + timedelta(minutes=200),
        )
        assessment = classify_delay(trip, 15.0, NOW)

        assert assessment.kind == DelayKind.BEHIND_SCHEDULE
        assert assessment.baseline == trip.planned_end_time
        assert assessment.severity == AlertSeverity.HIGH

    def test_missing_current_eta_not_evaluated(self, make_trip):
        trip = make_trip(planned_eta=NOW + timedelta(minutes=60))
        assessment = classify_delay(trip, 15.0, NOW)

        assert not assessment.evaluated
        assert assessment.kind == DelayKind.ON_TIME

    @pytest.mark.parametrize("percent,severity", [
        (20, AlertSeverity.LOW),
        (30, AlertSeverity.LOW),
        (31, AlertSeverity.MEDIUM),
        (50, AlertSeverity.MEDIUM),
        (51, AlertSeverity.HIGH),
    ])
    def test_severity_bands(self, percent, severity):
        assert severity_for_delay(percent) == severity


class TestDelayMonitor:

    @pytest.mark.asyncio
    async def test_creates_one_alert_and_leaves_it_untouched(self, store, make_trip):
        trip = make_trip(
            status=TripStatus.ONGOING,
            planned_eta=NOW + timedelta(minutes=60),
            current_eta=NOW + timedelta(minutes=80),
        )
        monitor = DelayMonitor(store, AlertLifecycleManager(store))

        await monitor.check(trip, TrackingSettings(), NOW)

        # Worse on the next scan: still one alert, severity not escalated
        trip = await store.get_trip(trip.id)
        trip.current_eta = NOW + timedelta(minutes=150)
        await store.save_trip(trip)
        await monitor.check(trip, TrackingSettings(), NOW)

        alerts = await store.list_alerts(trip.id, alert_type=AlertType.DELAY_WARNING)
        assert len(alerts) == 1
        assert alerts[0].severity == AlertSeverity.MEDIUM
        assert alerts[0].title == "Delay Warning"
        assert alerts[0].metadata["delay_minutes"] == 20
        assert alerts[0].metadata["delay_kind"] == "behind_schedule"

    @pytest.mark.asyncio
    async def test_back_on_schedule_resolves(self, store, make_trip):
        trip = make_trip(
            status=TripStatus.ONGOING,
            planned_eta=NOW + timedelta(minutes=60),
            current_eta=NOW + timedelta(minutes=80),
        )
        monitor = DelayMonitor(store, AlertLifecycleManager(store))
        await monitor.check(trip, TrackingSettings(), NOW)

        trip = await store.get_trip(trip.id)
        trip.current_eta = NOW + timedelta(minutes=55)
        await store.save_trip(trip)
        await monitor.check(trip, TrackingSettings(), NOW)

        alerts = await store.list_alerts(trip.id, alert_type=AlertType.DELAY_WARNING)
        assert alerts[0].status == AlertStatus.RESOLVED
        assert alerts[0].resolved_by == "system"
        assert alerts[0].metadata["auto_resolved"] is True
        assert alerts[0].metadata["resolution_reason"] == "Back on schedule"
        assert (await store.get_trip(trip.id)).active_alert_count == 0

    @pytest.mark.asyncio
    async def test_past_due_title(self, store, make_trip):
        trip = make_trip(
            status=TripStatus.ONGOING,
            planned_eta=NOW - timedelta(minutes=5),
            current_eta=NOW + timedelta(minutes=40),
        )
        await DelayMonitor(store, AlertLifecycleManager(store)).check(trip, TrackingSettings(), NOW)

        alerts = await store.list_alerts(trip.id, alert_type=AlertType.DELAY_WARNING)
        assert alerts[0].title == "Trip Delayed - Past Due"
        assert alerts[0].severity == AlertSeverity.HIGH

    @pytest.mark.asyncio
    async def test_acknowledged_alert_does_not_block_new_one(self, store, make_trip):
        """Dedup looks at active alerts only."""
        trip = make_trip(
            status=TripStatus.ONGOING,
            planned_eta=NOW + timedelta(minutes=60),
            current_eta=NOW + timedelta(minutes=80),
        )
        manager = AlertLifecycleManager(store)
        monitor = DelayMonitor(store, manager)
        await monitor.check(trip, TrackingSettings(), NOW)
        first = (await store.list_alerts(trip.id))[0]
        await manager.update_status(first.id, AlertStatus.ACKNOWLEDGED, user_id="ops-1")

        await monitor.check(await store.get_trip(trip.id), TrackingSettings(), NOW)

        alerts = await store.list_alerts(trip.id, alert_type=AlertType.DELAY_WARNING)
        assert len(alerts) == 2
