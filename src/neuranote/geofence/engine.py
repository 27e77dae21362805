"""Geofence engine: per-region enter/exit/dwell state machines.

Each region is evaluated independently under its own lock, so duplicate or
rapid location updates for the same region cannot double-emit a one-shot
event. Updates older than the region's last evaluation are ignored.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Awaitable, Callable
from datetime import datetime

from neuranote.config import GeofenceConfig
from neuranote.errors import NotFoundError, ValidationError
from neuranote.models.geo import GeoLocation
from neuranote.models.geofence import GeofenceEvent, GeofenceRegion, GeofenceStatus, TriggerType

logger = logging.getLogger(__name__)

GeofenceListener = Callable[[GeofenceEvent], Awaitable[None]]


class GeofenceEngine:
    """Owns every user's regions and turns location updates into events."""

    def __init__(
        self,
        config: GeofenceConfig | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._config = config or GeofenceConfig()
        self._clock = clock
        self._regions: dict[str, GeofenceRegion] = {}
        self._owners: dict[str, str] = {}  # region_id → user_id
        self._region_locks: dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()
        self._listeners: list[GeofenceListener] = []

    # ── Registration ─────────────────────────────────────────

    def register(self, region: GeofenceRegion, *, user_id: str) -> GeofenceRegion:
        """Validate and start monitoring a region; replaces one with the same id."""
        cfg = self._config
        if not cfg.min_radius <= region.radius_in_meters <= cfg.max_radius:
            raise ValidationError(
                f"Radius {region.radius_in_meters}m outside [{cfg.min_radius}, {cfg.max_radius}]"
            )
        if region.trigger_type is TriggerType.DWELL and (
            region.dwell_duration is None or region.dwell_duration.total_seconds() <= 0
        ):
            raise ValidationError("Dwell regions need a positive dwell duration")
        if region.is_expired(self._clock()):
            raise ValidationError(f"Region {region.id} has already expired")

        region.status = GeofenceStatus.ACTIVE
        region.is_inside = False
        region.entered_at = None
        region.dwell_emitted = False
        region.last_evaluated_at = None

        with self._registry_lock:
            self._regions[region.id] = region
            self._owners[region.id] = user_id
            self._region_locks[region.id] = threading.Lock()
        logger.info(
            "Registered geofence %s for %s (%s, %.0fm)",
            region.id,
            user_id,
            region.trigger_type.value,
            region.radius_in_meters,
        )
        return region

    def unregister(self, region_id: str) -> bool:
        with self._registry_lock:
            region = self._regions.pop(region_id, None)
            self._owners.pop(region_id, None)
            self._region_locks.pop(region_id, None)
        if region is None:
            return False
        region.status = GeofenceStatus.INACTIVE
        logger.info("Unregistered geofence %s", region_id)
        return True

    def get(self, region_id: str) -> GeofenceRegion:
        region = self._regions.get(region_id)
        if region is None:
            raise NotFoundError(f"Geofence region {region_id} not registered")
        return region

    def regions_for(self, user_id: str) -> list[GeofenceRegion]:
        with self._registry_lock:
            return [r for rid, r in self._regions.items() if self._owners.get(rid) == user_id]

    # ── Evaluation ───────────────────────────────────────────

    def evaluate(
        self, user_id: str, position: GeoLocation, timestamp: datetime | None = None
    ) -> list[GeofenceEvent]:
        now = timestamp or self._clock()
        events = []
        for region in self.regions_for(user_id):
            lock = self._region_locks.get(region.id)
            if lock is None:  # unregistered meanwhile
                continue
            with lock:
                event = self._transition(region, user_id, position, now)
            if event is not None:
                events.append(event)
        return events

    def _transition(
        self, region: GeofenceRegion, user_id: str, position: GeoLocation, now: datetime
    ) -> GeofenceEvent | None:
        if region.status is GeofenceStatus.EXPIRED:
            return None
        if region.is_expired(now):
            region.status = GeofenceStatus.EXPIRED
            logger.info("Geofence %s expired", region.id)
            return None
        if region.last_evaluated_at is not None and now < region.last_evaluated_at:
            logger.debug("Ignoring stale update for %s (%s < %s)", region.id, now, region.last_evaluated_at)
            return None
        region.last_evaluated_at = now

        distance = region.center.distance_to(position)
        inside = distance <= region.radius_in_meters
        trigger = region.trigger_type
        fired: TriggerType | None = None

        if inside and not region.is_inside:
            region.is_inside = True
            region.entered_at = now
            region.dwell_emitted = False
            if trigger is TriggerType.ENTER:
                fired = TriggerType.ENTER
        elif region.is_inside and not inside:
            region.is_inside = False
            region.entered_at = None
            region.dwell_emitted = False
            if trigger is TriggerType.EXIT:
                fired = TriggerType.EXIT
        elif inside and trigger is TriggerType.DWELL:
            if not region.dwell_emitted and region.has_dwelt(now):
                region.dwell_emitted = True
                fired = TriggerType.DWELL

        if fired is None:
            return None
        region.status = GeofenceStatus.TRIGGERED
        logger.info("Geofence %s: %s at %.0fm", region.id, fired.value, distance)
        return GeofenceEvent(
            region_id=region.id,
            user_id=user_id,
            trigger_type=fired,
            position=position,
            timestamp=now,
            distance=distance,
            payload=region.payload,
        )

    def regions_containing(self, user_id: str, position: GeoLocation) -> list[GeofenceRegion]:
        """Live regions whose circle contains ``position``. Does not change state."""
        now = self._clock()
        return [
            r
            for r in self.regions_for(user_id)
            if r.status is not GeofenceStatus.EXPIRED and not r.is_expired(now) and r.contains(position)
        ]

    def sweep_expired(self, now: datetime | None = None) -> list[str]:
        """Drop regions past their expiry; returns their ids."""
        now = now or self._clock()
        with self._registry_lock:
            expired = [
                rid
                for rid, r in self._regions.items()
                if r.status is GeofenceStatus.EXPIRED or r.is_expired(now)
            ]
        for rid in expired:
            region = self._regions.get(rid)
            if region is not None:
                region.status = GeofenceStatus.EXPIRED
            with self._registry_lock:
                self._regions.pop(rid, None)
                self._owners.pop(rid, None)
                self._region_locks.pop(rid, None)
        if expired:
            logger.info("Swept %d expired geofences", len(expired))
        return expired

    # ── Event delivery ───────────────────────────────────────

    def subscribe(self, listener: GeofenceListener) -> Callable[[], None]:
        """Add an async listener; returns a function that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def process_update(
        self, user_id: str, position: GeoLocation, timestamp: datetime | None = None
    ) -> list[GeofenceEvent]:
        """Evaluate an update and deliver the resulting events to listeners in order."""
        events = self.evaluate(user_id, position, timestamp)
        for event in events:
            for listener in list(self._listeners):
                try:
                    await listener(event)
                except Exception as e:
                    logger.error("Geofence listener failed for %s: %s", event.region_id, e)
        return events
