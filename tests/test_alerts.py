"""
FleetTrack Test - Alert Lifecycle

Validates operator status changes, bulk updates with partial failure,
deduplication, auto-resolution, the trip's active alert count, and the
tracking health detector built on top of them.
"""

from datetime import timedelta

import pytest

from fleettrack.alerts import AlertLifecycleManager, TrackingHealthMonitor
from fleettrack.alerts.manager import ALLOWED_TRANSITIONS
from fleettrack.exceptions import InvalidTransitionError, NotFoundError
from fleettrack.models import (
    AlertSeverity,
    AlertStatus,
    AlertType,
    TrackingSettings,
    TripStatus,
    utcnow,
)


@pytest.fixture
def alerts(store) -> AlertLifecycleManager:
    return AlertLifecycleManager(store)


async def raise_alert(alerts, trip, alert_type=AlertType.TRACKING_LOST, dedup=True):
    return await alerts.create_alert(
        trip, alert_type, AlertSeverity.HIGH, "Tracking Lost", dedup=dedup,
    )


class TestTransitions:

    def test_terminal_statuses(self):
        assert ALLOWED_TRANSITIONS[AlertStatus.RESOLVED] == frozenset()
        assert ALLOWED_TRANSITIONS[AlertStatus.DISMISSED] == frozenset()

    def test_acknowledged_cannot_go_back(self):
        assert AlertStatus.ACTIVE not in ALLOWED_TRANSITIONS[AlertStatus.ACKNOWLEDGED]

    @pytest.mark.asyncio
    async def test_acknowledge_then_resolve(self, alerts, make_trip, store):
        trip = make_trip(status=TripStatus.ONGOING)
        alert = await raise_alert(alerts, trip)

        acked = await alerts.update_status(alert.id, AlertStatus.ACKNOWLEDGED, user_id="ops-1")
        assert acked.acknowledged_by == "ops-1"
        assert acked.acknowledged_at is not None
        assert acked.resolved_at is None
        # Acknowledged alerts still count as open
        assert (await store.get_trip(trip.id)).active_alert_count == 1

        resolved = await alerts.update_status(
            alert.id, AlertStatus.RESOLVED, user_id="ops-2", notes="Driver called back",
        )
        assert resolved.resolved_by == "ops-2"
        assert resolved.resolved_at >= resolved.acknowledged_at
        assert resolved.metadata["resolution_notes"] == "Driver called back"
        assert "action_taken_at" in resolved.metadata
        assert (await store.get_trip(trip.id)).active_alert_count == 0

    @pytest.mark.asyncio
    async def test_dismiss_active_alert(self, alerts, make_trip):
        trip = make_trip(status=TripStatus.ONGOING)
        alert = await raise_alert(alerts, trip)

        dismissed = await alerts.update_status(alert.id, AlertStatus.DISMISSED, user_id="ops-1")

        assert dismissed.status == AlertStatus.DISMISSED
        assert dismissed.resolved_by == "ops-1"

    @pytest.mark.asyncio
    async def test_resolved_alert_cannot_reopen(self, alerts, make_trip):
        trip = make_trip(status=TripStatus.ONGOING)
        alert = await raise_alert(alerts, trip)
        await alerts.update_status(alert.id, AlertStatus.RESOLVED)

        with pytest.raises(InvalidTransitionError):
            await alerts.update_status(alert.id, AlertStatus.ACKNOWLEDGED)

    @pytest.mark.asyncio
    async def test_unknown_alert(self, alerts):
        with pytest.raises(NotFoundError):
            await alerts.update_status("missing", AlertStatus.RESOLVED)


class TestBulkUpdate:

    @pytest.mark.asyncio
    async def test_partial_failure(self, tracker, make_trip, store):
        """
        Scenario:
            Operator resolves three alerts in one go: one open, one
            already resolved, one id that does not exist.

        Expected:
            The open alert is resolved; the other two are reported
            individually without stopping the batch.
        """
        trip = make_trip(status=TripStatus.ONGOING)
        open_alert = await raise_alert(tracker.alerts, trip, AlertType.TRACKING_LOST)
        done = await raise_alert(tracker.alerts, trip, AlertType.IDLE_TIME)
        await tracker.update_alert_status(done.id, AlertStatus.RESOLVED)

        result = await tracker.bulk_update_alert_status(
            [open_alert.id, done.id, "ghost"], AlertStatus.RESOLVED, user_id="ops-1",
        )

        assert result.success is False
        assert [a.id for a in result.updated] == [open_alert.id]
        assert result.failed_ids == [done.id, "ghost"]
        assert "not found" in result.errors["ghost"]
        assert result.to_dict()["updated_count"] == 1
        assert (await store.get_trip(trip.id)).active_alert_count == 0

    @pytest.mark.asyncio
    async def test_all_succeed(self, alerts, make_trip):
        trip = make_trip(status=TripStatus.ONGOING)
        ids = [
            (await raise_alert(alerts, trip, alert_type)).id
            for alert_type in (AlertType.TRACKING_LOST, AlertType.DELAY_WARNING)
        ]

        result = await alerts.bulk_update_status(ids, AlertStatus.ACKNOWLEDGED, user_id="ops-1")

        assert result.success is True
        assert len(result.updated) == 2


class TestCreateAndResolve:

    @pytest.mark.asyncio
    async def test_open_alert_of_same_type_is_not_duplicated(self, alerts, make_trip, store):
        trip = make_trip(status=TripStatus.ONGOING)

        first = await raise_alert(alerts, trip)
        second = await raise_alert(alerts, trip)

        assert first is not None
        assert second is None
        assert len(await store.list_alerts(trip.id)) == 1

    @pytest.mark.asyncio
    async def test_dedup_can_be_disabled(self, alerts, make_trip):
        trip = make_trip(status=TripStatus.ONGOING)

        await raise_alert(alerts, trip, AlertType.STOPPAGE, dedup=False)
        await raise_alert(alerts, trip, AlertType.STOPPAGE, dedup=False)

        assert await alerts.recount(trip.id) == 2

    @pytest.mark.asyncio
    async def test_auto_resolve_skips_acknowledged(self, alerts, make_trip, store):
        trip = make_trip(status=TripStatus.ONGOING)
        acked = await raise_alert(alerts, trip, AlertType.STOPPAGE, dedup=False)
        active = await raise_alert(alerts, trip, AlertType.STOPPAGE, dedup=False)
        await alerts.update_status(acked.id, AlertStatus.ACKNOWLEDGED, user_id="ops-1")

        resolved = await alerts.auto_resolve(trip.id, AlertType.STOPPAGE, "Vehicle moving")

        assert resolved == 1
        stored = await store.get_alert(active.id)
        assert stored.status == AlertStatus.RESOLVED
        assert stored.resolved_by == "system"
        assert stored.metadata["auto_resolved"] is True
        assert stored.metadata["resolution_reason"] == "Vehicle moving"
        assert (await store.get_alert(acked.id)).status == AlertStatus.ACKNOWLEDGED
        assert (await store.get_trip(trip.id)).active_alert_count == 1

    @pytest.mark.asyncio
    async def test_recount_repairs_drift(self, alerts, make_trip, store):
        trip = make_trip(status=TripStatus.ONGOING, active_alert_count=7)
        await raise_alert(alerts, trip)

        assert await alerts.recount(trip.id) == 1
        assert (await store.get_trip(trip.id)).active_alert_count == 1

    @pytest.mark.asyncio
    async def test_consent_revoked_is_critical(self, alerts, make_trip):
        trip = make_trip(status=TripStatus.ONGOING)

        alert = await alerts.raise_consent_revoked(trip, "919876543210")

        assert alert.severity == AlertSeverity.CRITICAL
        assert alert.alert_type == AlertType.CONSENT_REVOKED
        assert alert.metadata == {"msisdn": "919876543210"}


class TestTrackingHealth:

    @pytest.fixture
    def monitor(self, store, alerts) -> TrackingHealthMonitor:
        return TrackingHealthMonitor(store, alerts)

    @pytest.mark.asyncio
    async def test_silence_past_threshold_is_high(self, monitor, make_trip, store):
        now = utcnow()
        trip = make_trip(status=TripStatus.ONGOING, last_ping_at=now - timedelta(minutes=45))

        outcome = await monitor.check(trip, TrackingSettings(), now)

        assert outcome.tracking_lost is True
        assert round(outcome.minutes_since_last_location) == 45
        [alert] = await store.list_alerts(trip.id, alert_type=AlertType.TRACKING_LOST)
        assert alert.severity == AlertSeverity.HIGH
        assert alert.actual_value == 45

    @pytest.mark.asyncio
    async def test_long_silence_is_critical(self, monitor, make_trip, store):
        now = utcnow()
        trip = make_trip(status=TripStatus.ONGOING, last_ping_at=now - timedelta(hours=3))

        await monitor.check(trip, TrackingSettings(), now)

        [alert] = await store.list_alerts(trip.id, alert_type=AlertType.TRACKING_LOST)
        assert alert.severity == AlertSeverity.CRITICAL

    @pytest.mark.asyncio
    async def test_repeated_checks_do_not_duplicate(self, monitor, make_trip, store):
        now = utcnow()
        trip = make_trip(status=TripStatus.ONGOING, last_ping_at=now - timedelta(minutes=45))

        await monitor.check(trip, TrackingSettings(), now)
        outcome = await monitor.check(trip, TrackingSettings(), now + timedelta(minutes=15))

        assert outcome.alerts_raised == 0
        assert len(await store.list_alerts(trip.id)) == 1

    @pytest.mark.asyncio
    async def test_resolves_when_locations_resume(self, monitor, make_trip, store, fix_factory):
        now = utcnow()
        trip = make_trip(status=TripStatus.ONGOING, last_ping_at=now - timedelta(minutes=45))
        await monitor.check(trip, TrackingSettings(), now)

        await store.append_sample(trip.id, fix_factory(12.9716, 77.5946))
        outcome = await monitor.check(trip, TrackingSettings(), utcnow())

        assert outcome.tracking_lost is False
        assert outcome.alerts_resolved == 1
        assert (await store.get_trip(trip.id)).active_alert_count == 0

    @pytest.mark.asyncio
    async def test_started_trip_without_locations_is_idle(self, monitor, make_trip, store):
        now = utcnow()
        trip = make_trip(status=TripStatus.ONGOING, actual_start_time=now - timedelta(hours=3))

        outcome = await monitor.check(trip, TrackingSettings(), now)

        assert outcome.idle is True
        [idle] = await store.list_alerts(trip.id, alert_type=AlertType.IDLE_TIME)
        assert idle.severity == AlertSeverity.HIGH
        assert idle.threshold_value == 120

    @pytest.mark.asyncio
    async def test_healthy_trip(self, monitor, make_trip, store):
        now = utcnow()
        trip = make_trip(status=TripStatus.ONGOING, last_ping_at=now - timedelta(minutes=5))

        outcome = await monitor.check(trip, TrackingSettings(), now)

        assert outcome.tracking_lost is False
        assert outcome.idle is False
        assert await store.list_alerts(trip.id) == []

    @pytest.mark.asyncio
    async def test_never_started_trip_is_skipped(self, monitor, make_trip):
        trip = make_trip(status=TripStatus.ONGOING)

        outcome = await monitor.check(trip, TrackingSettings(), utcnow())

        assert outcome.minutes_since_last_location is None
