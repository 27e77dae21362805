"""Reminders derived from summary entities."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from neuranote.errors import ValidationError
from neuranote.models.base import iso, parse_iso, parse_seconds, seconds
from neuranote.models.geo import GeoLocation
from neuranote.models.geofence import DEFAULT_RADIUS_M, TriggerType


class ReminderKind(str, Enum):
    CALENDAR = "calendar"
    LOCATION = "location"

    @classmethod
    def parse(cls, value: str | None) -> ReminderKind:
        try:
            return cls(value)
        except ValueError:
            return cls.CALENDAR


class ReminderStatus(str, Enum):
    PENDING = "pending"
    TRIGGERED = "triggered"
    DISMISSED = "dismissed"
    COMPLETED = "completed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"

    @classmethod
    def parse(cls, value: str | None) -> ReminderStatus:
        try:
            return cls(value)
        except ValueError:
            return cls.PENDING

    @property
    def is_terminal(self) -> bool:
        return not _TRANSITIONS[self]

    def can_transition_to(self, target: ReminderStatus) -> bool:
        return target in _TRANSITIONS[self]


_TRANSITIONS: dict[ReminderStatus, frozenset[ReminderStatus]] = {
    ReminderStatus.PENDING: frozenset(
        {
            ReminderStatus.TRIGGERED,
            ReminderStatus.DISMISSED,
            ReminderStatus.CANCELLED,
            ReminderStatus.EXPIRED,
        }
    ),
    ReminderStatus.TRIGGERED: frozenset({ReminderStatus.COMPLETED, ReminderStatus.DISMISSED}),
    ReminderStatus.COMPLETED: frozenset(),
    ReminderStatus.DISMISSED: frozenset(),
    ReminderStatus.CANCELLED: frozenset(),
    ReminderStatus.EXPIRED: frozenset(),
}


@dataclass(frozen=True)
class CalendarSchedule:
    scheduled_datetime: datetime
    end_datetime: datetime | None = None
    all_day_event: bool = False
    calendar_event_id: str | None = None
    notification_minutes_before: int | None = None


@dataclass(frozen=True)
class LocationTrigger:
    target_location: GeoLocation
    radius_in_meters: float = DEFAULT_RADIUS_M
    trigger_type: TriggerType = TriggerType.ENTER
    dwell_duration: timedelta | None = None
    geofence_id: str | None = None


@dataclass(frozen=True)
class Reminder:
    """A calendar or location reminder.

    Exactly one of ``calendar``/``location`` is set, matching ``kind``.
    """

    id: str
    summary_id: str
    user_id: str
    kind: ReminderKind
    title: str
    description: str
    created_at: datetime
    status: ReminderStatus = ReminderStatus.PENDING
    calendar: CalendarSchedule | None = None
    location: LocationTrigger | None = None
    updated_at: datetime | None = None
    triggered_at: datetime | None = None
    completed_at: datetime | None = None
    notification_enabled: bool = True

    def __post_init__(self) -> None:
        if self.kind is ReminderKind.CALENDAR:
            if self.calendar is None or self.location is not None:
                raise ValidationError("Calendar reminder requires a schedule and no location")
        elif self.kind is ReminderKind.LOCATION:
            if self.location is None or self.calendar is not None:
                raise ValidationError("Location reminder requires a location and no schedule")

    @property
    def is_active(self) -> bool:
        return self.status is ReminderStatus.PENDING

    @property
    def calendar_event_id(self) -> str | None:
        return self.calendar.calendar_event_id if self.calendar else None

    @property
    def geofence_id(self) -> str | None:
        return self.location.geofence_id if self.location else None

    @property
    def is_fully_configured(self) -> bool:
        if self.kind is ReminderKind.CALENDAR:
            return self.calendar_event_id is not None
        return self.geofence_id is not None

    def transition(self, target: ReminderStatus, now: datetime) -> Reminder:
        """Return a copy moved to ``target``; illegal moves raise ValidationError."""
        if not self.status.can_transition_to(target):
            raise ValidationError(
                f"Reminder {self.id}: cannot move from {self.status.value} to {target.value}"
            )
        changes: dict[str, Any] = {"status": target, "updated_at": now}
        if target is ReminderStatus.TRIGGERED:
            changes["triggered_at"] = now
        elif target is ReminderStatus.COMPLETED:
            changes["completed_at"] = now
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "summaryId": self.summary_id,
            "userId": self.user_id,
            "type": self.kind.value,
            "title": self.title,
            "description": self.description,
            "createdAt": iso(self.created_at),
            "updatedAt": iso(self.updated_at),
            "status": self.status.value,
            "triggeredAt": iso(self.triggered_at),
            "completedAt": iso(self.completed_at),
            "notificationEnabled": self.notification_enabled,
        }
        if self.calendar is not None:
            data.update(
                {
                    "scheduledDateTime": iso(self.calendar.scheduled_datetime),
                    "endDateTime": iso(self.calendar.end_datetime),
                    "allDayEvent": self.calendar.all_day_event,
                    "calendarEventId": self.calendar.calendar_event_id,
                    "notificationMinutesBefore": self.calendar.notification_minutes_before,
                }
            )
        if self.location is not None:
            data.update(
                {
                    "targetLocation": self.location.target_location.to_dict(),
                    "radiusInMeters": self.location.radius_in_meters,
                    "triggerType": self.location.trigger_type.value,
                    "dwellDuration": seconds(self.location.dwell_duration),
                    "geofenceId": self.location.geofence_id,
                }
            )
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Reminder:
        kind = ReminderKind.parse(data.get("type"))
        calendar = None
        location = None
        if kind is ReminderKind.CALENDAR:
            minutes = data.get("notificationMinutesBefore")
            calendar = CalendarSchedule(
                scheduled_datetime=parse_iso(data["scheduledDateTime"]),
                end_datetime=parse_iso(data.get("endDateTime")),
                all_day_event=bool(data.get("allDayEvent", False)),
                calendar_event_id=data.get("calendarEventId"),
                notification_minutes_before=int(minutes) if minutes is not None else None,
            )
        else:
            location = LocationTrigger(
                target_location=GeoLocation.from_dict(data["targetLocation"]),
                radius_in_meters=float(data.get("radiusInMeters", DEFAULT_RADIUS_M)),
                trigger_type=TriggerType.parse(data.get("triggerType")),
                dwell_duration=parse_seconds(data.get("dwellDuration")),
                geofence_id=data.get("geofenceId"),
            )
        return cls(
            id=data["id"],
            summary_id=data["summaryId"],
            user_id=data["userId"],
            kind=kind,
            title=data.get("title", ""),
            description=data.get("description", ""),
            created_at=parse_iso(data["createdAt"]),
            updated_at=parse_iso(data.get("updatedAt")),
            status=ReminderStatus.parse(data.get("status")),
            calendar=calendar,
            location=location,
            triggered_at=parse_iso(data.get("triggeredAt")),
            completed_at=parse_iso(data.get("completedAt")),
            notification_enabled=bool(data.get("notificationEnabled", True)),
        )
