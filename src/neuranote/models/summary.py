"""Summary records and the entities extracted from them."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Union

from neuranote.models.base import clamp_unit, iso, parse_iso


class ContentKind(str, Enum):
    IMAGE = "image"
    VOICE = "voice"
    TEXT = "text"  # typed note, nothing uploaded

    @classmethod
    def parse(cls, value: str | None) -> ContentKind:
        try:
            return cls(value)
        except ValueError:
            return cls.IMAGE


class DateTimeKind(str, Enum):
    SPECIFIC = "specific"  # "March 15, 2026 at 3:00 PM"
    RELATIVE = "relative"  # "tomorrow", "next week"
    RECURRING = "recurring"  # "every Monday"
    DATE_ONLY = "dateOnly"  # "March 15"
    TIME_ONLY = "timeOnly"  # "at 3 PM"

    @classmethod
    def parse(cls, value: str | None) -> DateTimeKind:
        lowered = (value or "").lower()
        for kind in cls:
            if kind.value.lower() == lowered:
                return kind
        return cls.SPECIFIC


class LocationKind(str, Enum):
    ADDRESS = "address"  # "123 Main Street"
    PLACE_NAME = "placeName"  # "Starbucks"
    LANDMARK = "landmark"  # "Central Park"
    CITY = "city"  # "New York"
    RELATIVE = "relative"  # "near the office"

    @classmethod
    def parse(cls, value: str | None) -> LocationKind:
        lowered = (value or "").lower()
        for kind in cls:
            if kind.value.lower() == lowered:
                return kind
        return cls.PLACE_NAME


@dataclass(frozen=True)
class DateTimeEntity:
    tag: ClassVar[str] = "datetime"

    original_text: str
    parsed_datetime: datetime
    kind: DateTimeKind
    confidence: float = 1.0

    def __post_init__(self) -> None:
        object.__setattr__(self, "confidence", clamp_unit(self.confidence))

    def to_dict(self) -> dict[str, Any]:
        return {
            "originalText": self.original_text,
            "parsedDateTime": iso(self.parsed_datetime),
            "type": self.kind.value,
            "confidence": self.confidence,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DateTimeEntity:
        return cls(
            original_text=data["originalText"],
            parsed_datetime=parse_iso(data["parsedDateTime"]),
            kind=DateTimeKind.parse(data.get("type")),
            confidence=float(data.get("confidence", 1.0)),
        )


@dataclass(frozen=True)
class LocationEntity:
    tag: ClassVar[str] = "location"

    original_text: str
    kind: LocationKind
    resolved_address: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    confidence: float = 1.0

    def __post_init__(self) -> None:
        object.__setattr__(self, "confidence", clamp_unit(self.confidence))

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "originalText": self.original_text,
            "resolvedAddress": self.resolved_address,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "type": self.kind.value,
            "confidence": self.confidence,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LocationEntity:
        lat = data.get("latitude")
        lng = data.get("longitude")
        return cls(
            original_text=data["originalText"],
            kind=LocationKind.parse(data.get("type")),
            resolved_address=data.get("resolvedAddress"),
            latitude=float(lat) if lat is not None else None,
            longitude=float(lng) if lng is not None else None,
            confidence=float(data.get("confidence", 1.0)),
        )


Entity = Union[DateTimeEntity, LocationEntity]


@dataclass
class Summary:
    """A summarized content item.

    Immutable after creation except for the reminder bookkeeping flags
    (calendar sync, active geofences) maintained by the reminder manager.
    """

    id: str
    user_id: str
    kind: ContentKind
    original_content_url: str
    summarized_text: str
    created_at: datetime
    thumbnail_url: str | None = None
    raw_transcript: str | None = None
    date_times: list[DateTimeEntity] = field(default_factory=list)
    locations: list[LocationEntity] = field(default_factory=list)
    tokens_cost: int = 1
    confidence_score: float = 1.0
    updated_at: datetime | None = None
    is_calendar_synced: bool = False
    calendar_event_id: str | None = None
    active_geofence_ids: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def has_date_time_entity(self) -> bool:
        return bool(self.date_times)

    @property
    def has_location_entity(self) -> bool:
        return bool(self.locations)

    @property
    def has_actionable_entities(self) -> bool:
        return self.has_date_time_entity or self.has_location_entity

    @property
    def has_active_location_reminder(self) -> bool:
        return bool(self.active_geofence_ids)

    @property
    def display_title(self) -> str:
        first_line = self.summarized_text.split("\n")[0]
        return first_line if len(first_line) <= 50 else f"{first_line[:47]}..."

    @property
    def preview_text(self) -> str:
        text = self.summarized_text
        return text if len(text) <= 100 else f"{text[:97]}..."

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "type": self.kind.value,
            "originalContentUrl": self.original_content_url,
            "thumbnailUrl": self.thumbnail_url,
            "summarizedText": self.summarized_text,
            "rawTranscript": self.raw_transcript,
            "createdAt": iso(self.created_at),
            "updatedAt": iso(self.updated_at),
            "hasDateTimeEntity": self.has_date_time_entity,
            "extractedDateTimes": [e.to_dict() for e in self.date_times],
            "hasLocationEntity": self.has_location_entity,
            "extractedLocations": [e.to_dict() for e in self.locations],
            "isCalendarSynced": self.is_calendar_synced,
            "calendarEventId": self.calendar_event_id,
            "hasActiveLocationReminder": self.has_active_location_reminder,
            "activeGeofenceIds": list(self.active_geofence_ids),
            "tokensCost": self.tokens_cost,
            "confidenceScore": self.confidence_score,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Summary:
        return cls(
            id=data["id"],
            user_id=data["userId"],
            kind=ContentKind.parse(data.get("type")),
            original_content_url=data.get("originalContentUrl", ""),
            thumbnail_url=data.get("thumbnailUrl"),
            summarized_text=data.get("summarizedText", ""),
            raw_transcript=data.get("rawTranscript"),
            created_at=parse_iso(data["createdAt"]),
            updated_at=parse_iso(data.get("updatedAt")),
            date_times=[DateTimeEntity.from_dict(e) for e in data.get("extractedDateTimes") or []],
            locations=[LocationEntity.from_dict(e) for e in data.get("extractedLocations") or []],
            is_calendar_synced=bool(data.get("isCalendarSynced", False)),
            calendar_event_id=data.get("calendarEventId"),
            active_geofence_ids=list(data.get("activeGeofenceIds") or []),
            tokens_cost=int(data.get("tokensCost", 1)),
            confidence_score=float(data.get("confidenceScore", 1.0)),
            metadata=dict(data.get("metadata") or {}),
        )
