"""Tests for the geofence engine state machines."""

import math
import pytest
from datetime import datetime, timedelta

from neuranote.config import GeofenceConfig
from neuranote.errors import NotFoundError, ValidationError
from neuranote.geofence.engine import GeofenceEngine
from neuranote.models.geo import EARTH_RADIUS_M, GeoLocation
from neuranote.models.geofence import GeofenceRegion, GeofenceStatus, TriggerType

T0 = datetime(2026, 3, 10, 12, 0)
ORIGIN = GeoLocation(0.0, 0.0)


def north(meters: float) -> GeoLocation:
    """A point ``meters`` due north of the origin."""
    return GeoLocation(math.degrees(meters / EARTH_RADIUS_M), 0.0)


def region(
    region_id: str = "g1",
    trigger: TriggerType = TriggerType.ENTER,
    radius: float = 200,
    **kwargs,
) -> GeofenceRegion:
    return GeofenceRegion(
        id=region_id,
        name="Office",
        center=ORIGIN,
        radius_in_meters=radius,
        trigger_type=trigger,
        payload="r1",
        **kwargs,
    )


@pytest.fixture
def engine() -> GeofenceEngine:
    return GeofenceEngine(GeofenceConfig(), clock=lambda: T0)


class TestRegistration:
    def test_radius_bounds(self, engine: GeofenceEngine):
        with pytest.raises(ValidationError):
            engine.register(region(radius=10), user_id="u1")
        with pytest.raises(ValidationError):
            engine.register(region(radius=6000), user_id="u1")
        assert engine.register(region(radius=50), user_id="u1").status is GeofenceStatus.ACTIVE

    def test_dwell_needs_duration(self, engine: GeofenceEngine):
        with pytest.raises(ValidationError):
            engine.register(region(trigger=TriggerType.DWELL), user_id="u1")

    def test_already_expired(self, engine: GeofenceEngine):
        with pytest.raises(ValidationError):
            engine.register(region(expires_at=T0 - timedelta(minutes=1)), user_id="u1")

    def test_unregister(self, engine: GeofenceEngine):
        registered = engine.register(region(), user_id="u1")
        assert engine.unregister("g1") is True
        assert registered.status is GeofenceStatus.INACTIVE
        assert engine.unregister("g1") is False
        with pytest.raises(NotFoundError):
            engine.get("g1")
        assert engine.evaluate("u1", north(10), T0) == []

    def test_regions_are_per_user(self, engine: GeofenceEngine):
        engine.register(region("g1"), user_id="u1")
        engine.register(region("g2"), user_id="u2")
        assert [r.id for r in engine.regions_for("u1")] == ["g1"]
        assert engine.evaluate("u2", north(10), T0)[0].region_id == "g2"


class TestEnterExit:
    def test_enter_inside_radius(self, engine: GeofenceEngine):
        engine.register(region(), user_id="u1")
        events = engine.evaluate("u1", north(150), T0)
        assert len(events) == 1
        event = events[0]
        assert event.trigger_type is TriggerType.ENTER
        assert event.payload == "r1"
        assert event.distance == pytest.approx(150, abs=1)
        assert engine.get("g1").status is GeofenceStatus.TRIGGERED

    def test_outside_radius_is_silent(self, engine: GeofenceEngine):
        engine.register(region(), user_id="u1")
        assert engine.evaluate("u1", north(300), T0) == []

    def test_enter_fires_once_until_exit(self, engine: GeofenceEngine):
        engine.register(region(), user_id="u1")
        assert len(engine.evaluate("u1", north(100), T0)) == 1
        assert engine.evaluate("u1", north(120), T0 + timedelta(minutes=1)) == []
        assert engine.evaluate("u1", north(500), T0 + timedelta(minutes=2)) == []
        # Leaving re-arms the region
        assert len(engine.evaluate("u1", north(100), T0 + timedelta(minutes=3))) == 1

    def test_duplicate_update_does_not_double_fire(self, engine: GeofenceEngine):
        engine.register(region(), user_id="u1")
        assert len(engine.evaluate("u1", north(100), T0)) == 1
        assert engine.evaluate("u1", north(100), T0) == []

    def test_exit(self, engine: GeofenceEngine):
        engine.register(region(trigger=TriggerType.EXIT), user_id="u1")
        assert engine.evaluate("u1", north(100), T0) == []
        events = engine.evaluate("u1", north(400), T0 + timedelta(minutes=1))
        assert [e.trigger_type for e in events] == [TriggerType.EXIT]

    def test_exit_without_entering_is_silent(self, engine: GeofenceEngine):
        engine.register(region(trigger=TriggerType.EXIT), user_id="u1")
        assert engine.evaluate("u1", north(400), T0) == []

    def test_stale_update_ignored(self, engine: GeofenceEngine):
        engine.register(region(), user_id="u1")
        assert engine.evaluate("u1", north(500), T0 + timedelta(minutes=5)) == []
        assert engine.evaluate("u1", north(100), T0) == []
        assert not engine.get("g1").is_inside


class TestDwell:
    def test_dwell_fires_once_after_duration(self, engine: GeofenceEngine):
        engine.register(
            region(trigger=TriggerType.DWELL, dwell_duration=timedelta(minutes=5)), user_id="u1"
        )
        inside = north(50)
        assert engine.evaluate("u1", inside, T0) == []
        assert engine.evaluate("u1", inside, T0 + timedelta(minutes=3)) == []
        events = engine.evaluate("u1", inside, T0 + timedelta(minutes=6))
        assert [e.trigger_type for e in events] == [TriggerType.DWELL]
        assert engine.evaluate("u1", inside, T0 + timedelta(minutes=7)) == []

    def test_leaving_resets_dwell(self, engine: GeofenceEngine):
        engine.register(
            region(trigger=TriggerType.DWELL, dwell_duration=timedelta(minutes=5)), user_id="u1"
        )
        assert engine.evaluate("u1", north(50), T0) == []
        assert engine.evaluate("u1", north(900), T0 + timedelta(minutes=4)) == []
        assert engine.evaluate("u1", north(50), T0 + timedelta(minutes=5)) == []
        assert engine.evaluate("u1", north(50), T0 + timedelta(minutes=9)) == []
        assert len(engine.evaluate("u1", north(50), T0 + timedelta(minutes=10))) == 1


class TestExpiry:
    def test_expired_region_stops_firing(self, engine: GeofenceEngine):
        engine.register(region(expires_at=T0 + timedelta(hours=1)), user_id="u1")
        assert engine.evaluate("u1", north(100), T0 + timedelta(hours=2)) == []
        assert engine.get("g1").status is GeofenceStatus.EXPIRED

    def test_sweep_expired(self, engine: GeofenceEngine):
        engine.register(region("g1", expires_at=T0 + timedelta(hours=1)), user_id="u1")
        engine.register(region("g2"), user_id="u1")
        assert engine.sweep_expired(T0 + timedelta(hours=2)) == ["g1"]
        assert [r.id for r in engine.regions_for("u1")] == ["g2"]

    def test_regions_containing(self, engine: GeofenceEngine):
        engine.register(region("g1"), user_id="u1")
        engine.register(region("g2", radius=1000), user_id="u1")
        assert [r.id for r in engine.regions_containing("u1", north(500))] == ["g2"]
        # Read-only
        assert not engine.get("g2").is_inside


class TestListeners:
    @pytest.mark.asyncio
    async def test_process_update_delivers_events(self, engine: GeofenceEngine):
        received = []

        async def listener(event):
            received.append(event.region_id)

        unsubscribe = engine.subscribe(listener)
        engine.register(region(), user_id="u1")
        events = await engine.process_update("u1", north(100), T0)
        assert received == ["g1"]
        assert len(events) == 1

        unsubscribe()
        engine.register(region("g2"), user_id="u1")
        await engine.process_update("u1", north(100), T0 + timedelta(minutes=1))
        assert received == ["g1"]

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_block_others(self, engine: GeofenceEngine):
        received = []

        async def broken(event):
            raise RuntimeError("boom")

        async def listener(event):
            received.append(event.region_id)

        engine.subscribe(broken)
        engine.subscribe(listener)
        engine.register(region(), user_id="u1")
        await engine.process_update("u1", north(100), T0)
        assert received == ["g1"]
