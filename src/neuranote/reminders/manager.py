"""Reminder creation, status transitions and their side effects.

The reminder record is always persisted first. Calendar sync and geofence
registration run afterwards; their failures are reported in the
CreateReminderResult and never roll the record back.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any

from neuranote.config import GeofenceConfig
from neuranote.errors import (
    GeocodeUnresolved,
    NetworkError,
    NeuraNoteError,
    NotFoundError,
    ProviderError,
    ValidationError,
)
from neuranote.geofence.engine import GeofenceEngine
from neuranote.models.base import iso
from neuranote.models.geo import GeoLocation
from neuranote.models.geofence import GeofenceEvent, GeofenceRegion, TriggerType
from neuranote.models.reminder import (
    CalendarSchedule,
    LocationTrigger,
    Reminder,
    ReminderKind,
    ReminderStatus,
)
from neuranote.models.summary import DateTimeEntity, DateTimeKind, Entity, LocationEntity, Summary
from neuranote.providers.base import CalendarProvider, Geocoder
from neuranote.store.documents import DocumentStore, Subscription

logger = logging.getLogger(__name__)

REMINDERS = "reminders"
SUMMARIES = "summaries"

_LIVE_STATUSES = [ReminderStatus.PENDING.value, ReminderStatus.TRIGGERED.value]


def region_id_for(reminder_id: str) -> str:
    return f"reminder_{reminder_id}"


def _as_sync_error(error: Exception) -> NeuraNoteError:
    """The reminder is already saved, so side-effect failures land in the result."""
    if isinstance(error, NeuraNoteError):
        return error
    return ProviderError(f"{type(error).__name__}: {error}", reason="unexpected")


@dataclass
class CreateReminderResult:
    reminder: Reminder
    calendar_event_created: bool = False
    calendar_event_id: str | None = None
    geofence_registered: bool = False
    geofence_id: str | None = None
    error: NeuraNoteError | None = None

    @property
    def is_fully_configured(self) -> bool:
        return self.reminder.is_fully_configured

    @property
    def success(self) -> bool:
        return self.error is None


class ReminderManager:
    """Creates reminders from summary entities and keeps side effects in step."""

    def __init__(
        self,
        store: DocumentStore,
        engine: GeofenceEngine,
        *,
        calendar: CalendarProvider | None = None,
        geocoder: Geocoder | None = None,
        config: GeofenceConfig | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.store = store
        self.engine = engine
        self.calendar = calendar
        self.geocoder = geocoder
        self.config = config or GeofenceConfig()
        self._clock = clock
        self._lane_locks: dict[str, asyncio.Lock] = {}  # reminder/summary id → lock
        self._unsubscribe = engine.subscribe(self.handle_geofence_event)

    def _get_lane_lock(self, key: str) -> asyncio.Lock:
        if key not in self._lane_locks:
            self._lane_locks[key] = asyncio.Lock()
        return self._lane_locks[key]

    def close(self) -> None:
        self._unsubscribe()

    # ── Creation ─────────────────────────────────────────────

    async def create_for_entity(
        self, summary: Summary, entity: Entity, **options: Any
    ) -> CreateReminderResult:
        """Create the reminder matching an extracted entity's kind."""
        if isinstance(entity, DateTimeEntity):
            return await self.create_calendar_reminder(
                user_id=summary.user_id,
                summary_id=summary.id,
                title=options.pop("title", summary.display_title),
                description=options.pop("description", summary.summarized_text),
                scheduled=entity.parsed_datetime,
                all_day=options.pop("all_day", entity.kind is DateTimeKind.DATE_ONLY),
                **options,
            )
        if isinstance(entity, LocationEntity):
            return await self.create_location_reminder(
                user_id=summary.user_id,
                summary_id=summary.id,
                title=options.pop("title", summary.display_title),
                description=options.pop("description", summary.summarized_text),
                location=entity,
                **options,
            )
        raise ValidationError(f"Unsupported entity type: {type(entity).__name__}")

    async def create_calendar_reminder(
        self,
        *,
        user_id: str,
        summary_id: str,
        title: str,
        scheduled: datetime,
        description: str = "",
        end: datetime | None = None,
        all_day: bool = False,
        notification_minutes_before: int | None = None,
    ) -> CreateReminderResult:
        if end is not None and end < scheduled:
            raise ValidationError("Reminder end must not precede its start")
        now = self._clock()
        schedule = CalendarSchedule(
            scheduled_datetime=scheduled,
            end_datetime=end,
            all_day_event=all_day,
            notification_minutes_before=notification_minutes_before,
        )
        reminder = Reminder(
            id=uuid.uuid4().hex,
            summary_id=summary_id,
            user_id=user_id,
            kind=ReminderKind.CALENDAR,
            title=title,
            description=description,
            created_at=now,
            calendar=schedule,
        )
        await self._save(reminder)
        result = CreateReminderResult(reminder=reminder)

        if self.calendar is None:
            result.error = ProviderError("No calendar provider configured", reason="not_configured")
            return result
        try:
            event_id = await self.calendar.create_event(
                title, description, scheduled, end, all_day=all_day
            )
        except Exception as e:
            logger.warning("Calendar sync failed for reminder %s: %s", reminder.id, e)
            result.error = _as_sync_error(e)
            return result

        reminder = replace(
            reminder,
            calendar=replace(schedule, calendar_event_id=event_id),
            updated_at=self._clock(),
        )
        await self._save(reminder)
        await self._sync_summary(summary_id)
        result.reminder = reminder
        result.calendar_event_created = True
        result.calendar_event_id = event_id
        logger.info("Created calendar reminder %s (event %s)", reminder.id, event_id)
        return result

    async def create_location_reminder(
        self,
        *,
        user_id: str,
        summary_id: str,
        title: str,
        location: GeoLocation | LocationEntity,
        description: str = "",
        radius: float | None = None,
        trigger_type: TriggerType = TriggerType.ENTER,
        dwell_duration: timedelta | None = None,
    ) -> CreateReminderResult:
        radius = self.config.default_radius if radius is None else radius
        if not self.config.min_radius <= radius <= self.config.max_radius:
            raise ValidationError(
                f"Radius {radius}m outside [{self.config.min_radius}, {self.config.max_radius}]"
            )
        if trigger_type is TriggerType.DWELL and (
            dwell_duration is None or dwell_duration.total_seconds() <= 0
        ):
            raise ValidationError("Dwell reminders need a positive dwell duration")
        target = await self._target_for(location)

        trigger = LocationTrigger(
            target_location=target,
            radius_in_meters=radius,
            trigger_type=trigger_type,
            dwell_duration=dwell_duration,
        )
        reminder = Reminder(
            id=uuid.uuid4().hex,
            summary_id=summary_id,
            user_id=user_id,
            kind=ReminderKind.LOCATION,
            title=title,
            description=description,
            created_at=self._clock(),
            location=trigger,
        )
        await self._save(reminder)
        result = CreateReminderResult(reminder=reminder)

        try:
            region = self.engine.register(self._region_for(reminder, trigger), user_id=user_id)
        except Exception as e:
            logger.warning("Geofence registration failed for reminder %s: %s", reminder.id, e)
            result.error = _as_sync_error(e)
            return result

        reminder = replace(
            reminder,
            location=replace(trigger, geofence_id=region.id),
            updated_at=self._clock(),
        )
        await self._save(reminder)
        await self._sync_summary(summary_id)
        result.reminder = reminder
        result.geofence_registered = True
        result.geofence_id = region.id
        logger.info("Created location reminder %s (region %s)", reminder.id, region.id)
        return result

    async def _target_for(self, location: GeoLocation | LocationEntity) -> GeoLocation:
        if isinstance(location, GeoLocation):
            return location
        if location.latitude is not None and location.longitude is not None:
            return GeoLocation(
                latitude=location.latitude,
                longitude=location.longitude,
                address=location.resolved_address,
                place_name=location.original_text,
            )
        if self.geocoder is None:
            raise ValidationError(f"Location '{location.original_text}' has no coordinates")
        try:
            found = await self.geocoder.geocode(location.original_text)
        except GeocodeUnresolved as e:
            raise ValidationError(f"Location '{location.original_text}' could not be resolved") from e
        return GeoLocation(
            latitude=found.latitude,
            longitude=found.longitude,
            address=found.resolved_address,
            place_name=found.place_name or location.original_text,
            city=found.city,
            country=found.country,
        )

    def _region_for(self, reminder: Reminder, trigger: LocationTrigger) -> GeofenceRegion:
        return GeofenceRegion(
            id=region_id_for(reminder.id),
            name=reminder.title,
            center=trigger.target_location,
            radius_in_meters=trigger.radius_in_meters,
            trigger_type=trigger.trigger_type,
            dwell_duration=trigger.dwell_duration,
            payload=reminder.id,
        )

    # ── Status transitions ───────────────────────────────────

    async def mark_triggered(self, reminder_id: str) -> Reminder:
        return await self._transition(reminder_id, ReminderStatus.TRIGGERED)

    async def complete(self, reminder_id: str) -> Reminder:
        return await self._transition(reminder_id, ReminderStatus.COMPLETED)

    async def dismiss(self, reminder_id: str) -> Reminder:
        return await self._transition(reminder_id, ReminderStatus.DISMISSED)

    async def cancel(self, reminder_id: str) -> Reminder:
        return await self._transition(reminder_id, ReminderStatus.CANCELLED)

    async def _transition(self, reminder_id: str, target: ReminderStatus) -> Reminder:
        async with self._get_lane_lock(reminder_id):
            reminder = await self.get_reminder(reminder_id)
            updated = reminder.transition(target, self._clock())
            await self._save(updated)
        logger.info("Reminder %s: %s → %s", reminder_id, reminder.status.value, target.value)
        if target.is_terminal and updated.geofence_id:
            self.engine.unregister(updated.geofence_id)
            await self._sync_summary(updated.summary_id)
        return updated

    async def expire_overdue(
        self, user_id: str | None = None, now: datetime | None = None
    ) -> list[Reminder]:
        """Expire pending calendar reminders whose scheduled time has passed."""
        now = now or self._clock()
        page = await self.store.query(
            REMINDERS,
            user_id,
            filters={"type": ReminderKind.CALENDAR.value, "status": ReminderStatus.PENDING.value},
        )
        expired = []
        for doc in page.items:
            reminder = Reminder.from_dict(doc)
            if reminder.calendar is None or reminder.calendar.scheduled_datetime >= now:
                continue
            try:
                expired.append(await self._transition(reminder.id, ReminderStatus.EXPIRED))
            except ValidationError:
                # Moved on concurrently
                continue
        if expired:
            logger.info("Expired %d overdue reminders", len(expired))
        return expired

    async def process_location_update(
        self, user_id: str, position: GeoLocation, timestamp: datetime | None = None
    ) -> list[GeofenceEvent]:
        """Feed a position into the engine; triggered reminders update via the listener."""
        return await self.engine.process_update(user_id, position, timestamp)

    async def handle_geofence_event(self, event: GeofenceEvent) -> None:
        """Engine listener: the region payload names the reminder to trigger."""
        if not event.payload:
            return
        try:
            await self.mark_triggered(event.payload)
        except NotFoundError:
            logger.warning("Geofence %s points at missing reminder %s", event.region_id, event.payload)
        except ValidationError as e:
            logger.debug("Ignoring %s event for %s: %s", event.trigger_type.value, event.payload, e)

    # ── Deletion ─────────────────────────────────────────────

    async def delete_reminder(self, reminder_id: str) -> bool:
        doc = await self.store.get(REMINDERS, reminder_id)
        if doc is None:
            return False
        reminder = Reminder.from_dict(doc)
        if reminder.calendar_event_id and self.calendar is not None:
            try:
                await self.calendar.delete_event(reminder.calendar_event_id)
            except (NetworkError, ProviderError) as e:
                logger.warning(
                    "Could not delete calendar event %s: %s", reminder.calendar_event_id, e
                )
        if reminder.geofence_id:
            self.engine.unregister(reminder.geofence_id)
        await self.store.delete(REMINDERS, reminder_id)
        await self._sync_summary(reminder.summary_id)
        logger.info("Deleted reminder %s", reminder_id)
        return True

    async def delete_reminders_for_summary(self, summary_id: str) -> int:
        reminders = await self.reminders_for_summary(summary_id)
        deleted = 0
        for reminder in reminders:
            if await self.delete_reminder(reminder.id):
                deleted += 1
        return deleted

    # ── Startup ──────────────────────────────────────────────

    async def restore(self, user_id: str | None = None) -> int:
        """Re-register regions for live location reminders; returns how many."""
        page = await self.store.query(
            REMINDERS,
            user_id,
            filters=[("type", "==", ReminderKind.LOCATION.value), ("status", "in", _LIVE_STATUSES)],
        )
        restored = 0
        for doc in page.items:
            reminder = Reminder.from_dict(doc)
            trigger = reminder.location
            if trigger is None:
                logger.warning("Location reminder %s has no trigger", reminder.id)
                continue
            try:
                self.engine.register(self._region_for(reminder, trigger), user_id=reminder.user_id)
            except ValidationError as e:
                logger.warning("Could not restore geofence for reminder %s: %s", reminder.id, e)
                continue
            restored += 1
            if reminder.geofence_id is None:
                await self._save(
                    replace(
                        reminder,
                        location=replace(trigger, geofence_id=region_id_for(reminder.id)),
                    )
                )
                await self._sync_summary(reminder.summary_id)
        if restored:
            logger.info("Restored %d geofences", restored)
        return restored

    # ── Queries ──────────────────────────────────────────────

    async def get_reminder(self, reminder_id: str) -> Reminder:
        doc = await self.store.get(REMINDERS, reminder_id)
        if doc is None:
            raise NotFoundError(f"Reminder {reminder_id} not found")
        return Reminder.from_dict(doc)

    async def reminders_for_summary(self, summary_id: str) -> list[Reminder]:
        page = await self.store.query(
            REMINDERS, filters={"summaryId": summary_id}, order=["createdAt"]
        )
        return [Reminder.from_dict(d) for d in page.items]

    async def reminders_for_user(
        self, user_id: str, status: ReminderStatus | None = None, limit: int | None = None
    ) -> list[Reminder]:
        filters = {"status": status.value} if status else None
        page = await self.store.query(
            REMINDERS, user_id, filters=filters, order=["-createdAt"], limit=limit
        )
        return [Reminder.from_dict(d) for d in page.items]

    async def active_reminders(self, user_id: str) -> list[Reminder]:
        return await self.reminders_for_user(user_id, ReminderStatus.PENDING)

    async def upcoming_reminders(
        self, user_id: str, within: timedelta = timedelta(days=7), now: datetime | None = None
    ) -> list[Reminder]:
        """Pending calendar reminders scheduled in ``[now, now + within]``, soonest first."""
        now = now or self._clock()
        horizon = now + within
        upcoming = [
            r
            for r in await self.active_reminders(user_id)
            if r.calendar is not None and now <= r.calendar.scheduled_datetime <= horizon
        ]
        upcoming.sort(key=lambda r: r.calendar.scheduled_datetime)  # type: ignore[union-attr]
        return upcoming

    def stream(self, user_id: str) -> Subscription[Reminder]:
        return self.store.stream(
            REMINDERS, user_id, order=["-createdAt"], transform=Reminder.from_dict
        )

    # ── Persistence ──────────────────────────────────────────

    async def _save(self, reminder: Reminder) -> None:
        await self.store.put(REMINDERS, reminder.to_dict())

    async def _sync_summary(self, summary_id: str) -> None:
        """Recompute the summary's calendar/geofence flags from its reminders."""
        async with self._get_lane_lock(f"summary:{summary_id}"):
            if await self.store.get(SUMMARIES, summary_id) is None:
                return
            reminders = await self.reminders_for_summary(summary_id)
            geofence_ids = [
                r.geofence_id
                for r in reminders
                if r.geofence_id and not r.status.is_terminal
            ]
            event_ids = [r.calendar_event_id for r in reminders if r.calendar_event_id]
            await self.store.update(
                SUMMARIES,
                summary_id,
                {
                    "activeGeofenceIds": geofence_ids,
                    "hasActiveLocationReminder": bool(geofence_ids),
                    "isCalendarSynced": bool(event_ids),
                    "calendarEventId": event_ids[0] if event_ids else None,
                    "updatedAt": iso(self._clock()),
                },
            )
