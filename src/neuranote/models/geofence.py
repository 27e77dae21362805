"""Geofence regions and the events they emit."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from neuranote.models.base import iso, parse_iso, parse_seconds, seconds
from neuranote.models.geo import GeoLocation

DEFAULT_RADIUS_M = 200.0


class TriggerType(str, Enum):
    ENTER = "enter"
    EXIT = "exit"
    DWELL = "dwell"

    @classmethod
    def parse(cls, value: str | None) -> TriggerType:
        try:
            return cls(value)
        except ValueError:
            return cls.ENTER


class GeofenceStatus(str, Enum):
    INACTIVE = "inactive"
    ACTIVE = "active"
    TRIGGERED = "triggered"
    EXPIRED = "expired"

    @classmethod
    def parse(cls, value: str | None) -> GeofenceStatus:
        try:
            return cls(value)
        except ValueError:
            return cls.INACTIVE


@dataclass
class GeofenceRegion:
    """A circular region with a trigger rule.

    ``status``, ``is_inside``, ``entered_at``, ``dwell_emitted`` and
    ``last_evaluated_at`` are mutated by the geofence engine only.
    """

    id: str
    name: str
    center: GeoLocation
    radius_in_meters: float = DEFAULT_RADIUS_M
    trigger_type: TriggerType = TriggerType.ENTER
    dwell_duration: timedelta | None = None
    payload: str | None = None
    expires_at: datetime | None = None
    status: GeofenceStatus = GeofenceStatus.INACTIVE
    is_inside: bool = False
    entered_at: datetime | None = None
    dwell_emitted: bool = False
    last_evaluated_at: datetime | None = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and now > self.expires_at

    def has_dwelt(self, now: datetime) -> bool:
        if self.dwell_duration is None or self.entered_at is None:
            return False
        return now - self.entered_at >= self.dwell_duration

    def contains(self, position: GeoLocation) -> bool:
        return self.center.distance_to(position) <= self.radius_in_meters

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "center": self.center.to_dict(),
            "radiusInMeters": self.radius_in_meters,
            "triggerType": self.trigger_type.value,
            "dwellDuration": seconds(self.dwell_duration),
            "payload": self.payload,
            "expiresAt": iso(self.expires_at),
            "status": self.status.value,
            "isInside": self.is_inside,
            "enteredAt": iso(self.entered_at),
            "dwellEmitted": self.dwell_emitted,
            "lastEvaluatedAt": iso(self.last_evaluated_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GeofenceRegion:
        return cls(
            id=data["id"],
            name=data["name"],
            center=GeoLocation.from_dict(data["center"]),
            radius_in_meters=float(data.get("radiusInMeters", DEFAULT_RADIUS_M)),
            trigger_type=TriggerType.parse(data.get("triggerType")),
            dwell_duration=parse_seconds(data.get("dwellDuration")),
            payload=data.get("payload"),
            expires_at=parse_iso(data.get("expiresAt")),
            status=GeofenceStatus.parse(data.get("status")),
            is_inside=bool(data.get("isInside", False)),
            entered_at=parse_iso(data.get("enteredAt")),
            dwell_emitted=bool(data.get("dwellEmitted", False)),
            last_evaluated_at=parse_iso(data.get("lastEvaluatedAt")),
        )


@dataclass(frozen=True)
class GeofenceEvent:
    region_id: str
    user_id: str
    trigger_type: TriggerType
    position: GeoLocation
    timestamp: datetime
    distance: float
    payload: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "regionId": self.region_id,
            "userId": self.user_id,
            "triggerType": self.trigger_type.value,
            "position": self.position.to_dict(),
            "timestamp": iso(self.timestamp),
            "distance": self.distance,
            "payload": self.payload,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GeofenceEvent:
        return cls(
            region_id=data["regionId"],
            user_id=data["userId"],
            trigger_type=TriggerType.parse(data.get("triggerType")),
            position=GeoLocation.from_dict(data["position"]),
            timestamp=parse_iso(data["timestamp"]),
            distance=float(data.get("distance", 0.0)),
            payload=data.get("payload"),
        )
