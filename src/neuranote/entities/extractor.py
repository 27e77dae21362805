"""Rule-based entity extraction from summarized text.

Recognizes explicit dates (ISO, US, written), clock times, relative and
recurring expressions, street addresses, landmarks, ``at``/``in`` place
names and relative locations. Relative expressions resolve against the
instant passed as ``now``, so output is deterministic for a given
``(text, now)`` pair.
"""

from __future__ import annotations

import calendar
import json
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Any, NamedTuple

from neuranote.models.base import clamp_unit, parse_iso
from neuranote.models.summary import DateTimeEntity, DateTimeKind, LocationEntity, LocationKind

logger = logging.getLogger(__name__)

STRUCTURED_DEFAULT_CONFIDENCE = 0.8

_MONTH = (
    r"(?:jan(?:uary)?|feb(?:ruary)?|mar(?:ch)?|apr(?:il)?|may|june?|july?|aug(?:ust)?"
    r"|sep(?:t(?:ember)?)?|oct(?:ober)?|nov(?:ember)?|dec(?:ember)?)"
)
_WEEKDAY = r"(?:monday|tuesday|wednesday|thursday|friday|saturday|sunday)"
_WEEKDAYS = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]
_MONTH_NAMES = [
    "january", "february", "march", "april", "may", "june",
    "july", "august", "september", "october", "november", "december",
]
_MONTHS = {name[:3]: i for i, name in enumerate(_MONTH_NAMES, start=1)}
_NUMBER_WORDS = {"a": 1, "an": 1, "one": 1, "two": 2, "three": 3, "four": 4, "five": 5, "six": 6, "seven": 7}

_ISO_DATE = re.compile(r"\b(\d{4})-(\d{2})-(\d{2})\b")
_US_DATE = re.compile(r"\b(\d{1,2})/(\d{1,2})/(\d{4})\b")
_WRITTEN_MDY = re.compile(
    rf"\b({_MONTH})\.?\s+(\d{{1,2}})(?:st|nd|rd|th)?\b(?:,?\s*(\d{{4}})\b)?", re.IGNORECASE
)
_WRITTEN_DMY = re.compile(
    rf"\b(\d{{1,2}})(?:st|nd|rd|th)?\s+(?:of\s+)?({_MONTH})\b\.?(?:,?\s*(\d{{4}})\b)?", re.IGNORECASE
)

_TIME_12H = re.compile(r"\b(\d{1,2})(?::([0-5]\d))?\s*([ap])\.?m\b\.?", re.IGNORECASE)
_TIME_24H = re.compile(r"\b([01]?\d|2[0-3]):([0-5]\d)(?::[0-5]\d)?\b")
_TIME_NAMED = re.compile(r"\b(noon|midnight)\b", re.IGNORECASE)

_RECURRING = re.compile(
    rf"\b(?:every\s+(day|week|month|{_WEEKDAY})|(daily|weekly|monthly))\b", re.IGNORECASE
)
_RELATIVE_WORD = re.compile(r"\b(today|tonight|tomorrow|yesterday)\b", re.IGNORECASE)
_RELATIVE_NEXT = re.compile(rf"\bnext\s+(week|month|year|{_WEEKDAY})\b", re.IGNORECASE)
_RELATIVE_IN = re.compile(
    r"\bin\s+(\d+|an?|one|two|three|four|five|six|seven)\s+(day|week|month)s?\b", re.IGNORECASE
)
_RELATIVE_ON = re.compile(rf"\bon\s+({_WEEKDAY})\b", re.IGNORECASE)

_DATE_THEN_TIME_GAP = re.compile(r"^\s*,?\s*(?:at|@|by|from|around)?\s*$", re.IGNORECASE)
_TIME_THEN_DATE_GAP = re.compile(r"^\s*,?\s*(?:on)?\s*$", re.IGNORECASE)

_STREET = r"(?:Street|St|Avenue|Ave|Road|Rd|Boulevard|Blvd|Drive|Dr|Lane|Ln|Way|Court|Ct|Place|Pl)"
_ADDRESS = re.compile(rf"\b\d{{1,6}}\s+(?:[A-Za-z][\w'.-]*\s+){{1,4}}{_STREET}\b\.?")
_LANDMARK_WORDS = (
    r"(?:Park|Museum|Tower|Bridge|Station|Airport|Stadium|Square|Cathedral|Church|Mall|Center"
    r"|Centre|Library|University|Hospital|Beach|Palace|Gallery|Market|Zoo|Theater|Theatre)"
)
_LANDMARK = re.compile(rf"\b(?:[A-Z][\w'&.-]*\s+){{1,4}}{_LANDMARK_WORDS}\b")
_RELATIVE_PLACE = re.compile(
    r"\b(?:near|next to|close to|behind|across from|opposite)\s+"
    r"(?:the|my|our|your|his|her|their)\s+[a-z][\w-]*",
    re.IGNORECASE,
)
_PREPOSITION_PLACE = re.compile(r"\b((?i:at|in))\s+((?:the\s+)?[A-Z][\w'&.-]*(?:\s+[A-Z][\w'&.-]*){0,3})")
_NOT_PLACES = set(_MONTH_NAMES) | set(_WEEKDAYS) | {
    "noon",
    "midnight",
    "the",
}


class Extraction(NamedTuple):
    date_times: list[DateTimeEntity]
    locations: list[LocationEntity]


@dataclass
class _Span:
    start: int
    end: int
    kind: DateTimeKind
    confidence: float
    day: date | None = None
    clock: time | None = None

    def overlaps(self, other: _Span) -> bool:
        return self.start < other.end and other.start < self.end


def _claim(spans: list[_Span], candidate: _Span) -> bool:
    if any(candidate.overlaps(s) for s in spans):
        return False
    spans.append(candidate)
    return True


def _add_months(day: date, months: int) -> date:
    month_index = day.month - 1 + months
    year = day.year + month_index // 12
    month = month_index % 12 + 1
    return date(year, month, min(day.day, calendar.monthrange(year, month)[1]))


def _next_weekday(today: date, name: str, *, include_today: bool = False) -> date:
    days = (_WEEKDAYS.index(name.lower()) - today.weekday()) % 7
    if days == 0 and not include_today:
        days = 7
    return today + timedelta(days=days)


def load_json_object(text: str) -> dict[str, Any] | None:
    """Decode a JSON object, tolerating a surrounding Markdown code fence."""
    clean = text.strip()
    if clean.startswith("```json"):
        clean = clean[7:]
    elif clean.startswith("```"):
        clean = clean[3:]
    if clean.endswith("```"):
        clean = clean[:-3]
    try:
        value = json.loads(clean.strip())
    except ValueError:
        return None
    return value if isinstance(value, dict) else None


class EntityExtractor:
    """Turns free text into typed, confidence-scored date/time and location entities."""

    def __init__(
        self,
        clock: Callable[[], datetime] = datetime.now,
        *,
        default_hour: int = 9,
        evening_hour: int = 20,
    ) -> None:
        self._clock = clock
        self.default_time = time(default_hour)
        self.evening_time = time(evening_hour)

    def extract(self, text: str, now: datetime | None = None) -> Extraction:
        now = now or self._clock()
        if not text or not text.strip():
            return Extraction([], [])
        date_times, claimed = self._date_times(text, now)
        locations = self._locations(text, claimed)
        return Extraction(date_times, locations)

    # ── Date/time recognition ────────────────────────────────

    def _date_times(
        self, text: str, now: datetime
    ) -> tuple[list[DateTimeEntity], list[tuple[int, int]]]:
        """Entities in text order, plus the character spans they cover."""
        dates: list[_Span] = []
        for span in self._recurring(text, now):
            _claim(dates, span)
        for span in self._explicit_dates(text, now):
            _claim(dates, span)
        for span in self._relative(text, now):
            _claim(dates, span)

        times: list[_Span] = []
        for span in self._times(text):
            if not any(span.overlaps(d) for d in dates):
                _claim(times, span)

        entities: list[tuple[int, DateTimeEntity]] = []
        used_times: set[int] = set()
        covered: list[tuple[int, int]] = []
        for d in sorted(dates, key=lambda s: s.start):
            paired = self._pair_time(text, d, times, used_times)
            start, end = d.start, d.end
            clock = d.clock or self.default_time
            kind, confidence = d.kind, d.confidence
            if paired is not None:
                used_times.add(id(paired))
                start, end = min(d.start, paired.start), max(d.end, paired.end)
                clock = paired.clock
                if kind is DateTimeKind.DATE_ONLY:
                    kind = DateTimeKind.SPECIFIC
                confidence = min(1.0, confidence + 0.05)
            covered.append((start, end))
            entities.append(
                (
                    start,
                    DateTimeEntity(
                        original_text=text[start:end].strip(" ,"),
                        parsed_datetime=datetime.combine(d.day, clock),
                        kind=kind,
                        confidence=confidence,
                    ),
                )
            )

        for t in times:
            if id(t) in used_times:
                continue
            covered.append((t.start, t.end))
            entities.append(
                (
                    t.start,
                    DateTimeEntity(
                        original_text=text[t.start : t.end].strip(" ,"),
                        parsed_datetime=datetime.combine(now.date(), t.clock),
                        kind=DateTimeKind.TIME_ONLY,
                        confidence=t.confidence,
                    ),
                )
            )

        entities.sort(key=lambda pair: pair[0])
        return [e for _, e in entities], covered

    @staticmethod
    def _pair_time(text: str, d: _Span, times: list[_Span], used: set[int]) -> _Span | None:
        for t in sorted(times, key=lambda s: s.start):
            if id(t) in used:
                continue
            if t.start >= d.end and _DATE_THEN_TIME_GAP.match(text[d.end : t.start]):
                return t
            if t.end <= d.start and _TIME_THEN_DATE_GAP.match(text[t.end : d.start]):
                return t
        return None

    def _explicit_dates(self, text: str, now: datetime) -> list[_Span]:
        spans: list[_Span] = []

        def add(m: re.Match, year: int | None, month: int, day: int) -> None:
            has_year = year is not None
            try:
                value = date(year if has_year else now.year, month, day)
            except ValueError:
                return
            if not has_year and value < now.date():
                try:
                    value = date(now.year + 1, month, day)
                except ValueError:
                    return
            confidence = 0.9 if has_year else 0.85
            _claim(spans, _Span(m.start(), m.end(), DateTimeKind.DATE_ONLY, confidence, value))

        for m in _ISO_DATE.finditer(text):
            add(m, int(m.group(1)), int(m.group(2)), int(m.group(3)))
        for m in _US_DATE.finditer(text):
            add(m, int(m.group(3)), int(m.group(1)), int(m.group(2)))
        for m in _WRITTEN_MDY.finditer(text):
            year = int(m.group(3)) if m.group(3) else None
            add(m, year, _MONTHS[m.group(1)[:3].lower()], int(m.group(2)))
        for m in _WRITTEN_DMY.finditer(text):
            year = int(m.group(3)) if m.group(3) else None
            add(m, year, _MONTHS[m.group(2)[:3].lower()], int(m.group(1)))
        return spans

    def _relative(self, text: str, now: datetime) -> list[_Span]:
        spans: list[_Span] = []
        today = now.date()
        rel = DateTimeKind.RELATIVE

        for m in _RELATIVE_WORD.finditer(text):
            word = m.group(1).lower()
            clock = None
            if word == "today":
                day = today
            elif word == "tonight":
                day, clock = today, self.evening_time
            elif word == "tomorrow":
                day = today + timedelta(days=1)
            else:
                day = today - timedelta(days=1)
            _claim(spans, _Span(m.start(), m.end(), rel, 0.9, day, clock))

        for m in _RELATIVE_NEXT.finditer(text):
            unit = m.group(1).lower()
            if unit == "week":
                day = today + timedelta(days=7)
            elif unit == "month":
                day = _add_months(today, 1)
            elif unit == "year":
                day = _add_months(today, 12)
            else:
                day = _next_weekday(today, unit)
            _claim(spans, _Span(m.start(), m.end(), rel, 0.85, day))

        for m in _RELATIVE_IN.finditer(text):
            raw = m.group(1).lower()
            count = int(raw) if raw.isdigit() else _NUMBER_WORDS[raw]
            unit = m.group(2).lower()
            if unit == "month":
                day = _add_months(today, count)
            else:
                day = today + timedelta(days=count * (7 if unit == "week" else 1))
            # "in 3 days" keeps the current time of day
            _claim(spans, _Span(m.start(), m.end(), rel, 0.85, day, now.time().replace(microsecond=0)))

        for m in _RELATIVE_ON.finditer(text):
            day = _next_weekday(today, m.group(1), include_today=True)
            _claim(spans, _Span(m.start(), m.end(), rel, 0.8, day))
        return spans

    def _recurring(self, text: str, now: datetime) -> list[_Span]:
        spans: list[_Span] = []
        today = now.date()
        for m in _RECURRING.finditer(text):
            unit = (m.group(1) or m.group(2)).lower()
            if unit in ("day", "daily"):
                day = today if now.time() < self.default_time else today + timedelta(days=1)
            elif unit in ("week", "weekly"):
                day = today + timedelta(days=7)
            elif unit in ("month", "monthly"):
                day = _add_months(today, 1)
            else:
                day = _next_weekday(today, unit, include_today=True)
            _claim(spans, _Span(m.start(), m.end(), DateTimeKind.RECURRING, 0.8, day))
        return spans

    def _times(self, text: str) -> list[_Span]:
        spans: list[_Span] = []
        for m in _TIME_12H.finditer(text):
            hour, minute = int(m.group(1)), int(m.group(2) or 0)
            if not 1 <= hour <= 12:
                continue
            hour = hour % 12 + (12 if m.group(3).lower() == "p" else 0)
            _claim(spans, _Span(m.start(), m.end(), DateTimeKind.TIME_ONLY, 0.75, clock=time(hour, minute)))
        for m in _TIME_24H.finditer(text):
            clock = time(int(m.group(1)), int(m.group(2)))
            _claim(spans, _Span(m.start(), m.end(), DateTimeKind.TIME_ONLY, 0.7, clock=clock))
        for m in _TIME_NAMED.finditer(text):
            clock = time(12) if m.group(1).lower() == "noon" else time(0)
            _claim(spans, _Span(m.start(), m.end(), DateTimeKind.TIME_ONLY, 0.7, clock=clock))
        return spans

    # ── Location recognition ─────────────────────────────────

    def _locations(self, text: str, claimed: list[tuple[int, int]]) -> list[LocationEntity]:
        taken = list(claimed)
        found: list[tuple[int, LocationEntity]] = []

        def add(start: int, end: int, kind: LocationKind, confidence: float) -> None:
            if any(start < e and s < end for s, e in taken):
                return
            original = text[start:end].strip(" ,.;:")
            if not original:
                return
            taken.append((start, end))
            found.append((start, LocationEntity(original_text=original, kind=kind, confidence=confidence)))

        for m in _ADDRESS.finditer(text):
            add(m.start(), m.end(), LocationKind.ADDRESS, 0.9)
        for m in _LANDMARK.finditer(text):
            add(m.start(), m.end(), LocationKind.LANDMARK, 0.85)
        for m in _RELATIVE_PLACE.finditer(text):
            add(m.start(), m.end(), LocationKind.RELATIVE, 0.5)
        for m in _PREPOSITION_PLACE.finditer(text):
            place = m.group(2)
            if place.lower() in _NOT_PLACES or place.lower().removeprefix("the ") in _NOT_PLACES:
                continue
            if m.group(1).lower() == "in":
                add(m.start(2), m.end(2), LocationKind.CITY, 0.7)
            else:
                add(m.start(2), m.end(2), LocationKind.PLACE_NAME, 0.75)

        seen: set[str] = set()
        unique = []
        for _, entity in sorted(found, key=lambda pair: pair[0]):
            key = entity.original_text.lower()
            if key not in seen:
                seen.add(key)
                unique.append(entity)
        return unique

    # ── Structured provider output ───────────────────────────

    def parse_structured(self, json_text: str, now: datetime | None = None) -> Extraction:
        """Read ``{"dateTimes": [...], "locations": [...]}`` returned by a provider.

        Unknown entity kinds fall back to ``specific``/``placeName``; an
        unparseable ``parsedDateTime`` is re-read from the entity's text.
        """
        now = now or self._clock()
        parsed = load_json_object(json_text)
        if parsed is None:
            logger.debug("Structured entity payload is not a JSON object")
            return Extraction([], [])

        date_times: list[DateTimeEntity] = []
        for item in parsed.get("dateTimes") or []:
            if not isinstance(item, dict) or not item.get("originalText"):
                continue
            original = str(item["originalText"])
            date_times.append(
                DateTimeEntity(
                    original_text=original,
                    parsed_datetime=self._structured_datetime(item.get("parsedDateTime"), original, now),
                    kind=DateTimeKind.parse(item.get("type")),
                    confidence=_confidence(item.get("confidence")),
                )
            )

        locations: list[LocationEntity] = []
        for item in parsed.get("locations") or []:
            if not isinstance(item, dict) or not item.get("originalText"):
                continue
            lat, lng = item.get("latitude"), item.get("longitude")
            has_coordinates = isinstance(lat, (int, float)) and isinstance(lng, (int, float))
            locations.append(
                LocationEntity(
                    original_text=str(item["originalText"]),
                    kind=LocationKind.parse(item.get("type")),
                    resolved_address=item.get("resolvedAddress"),
                    latitude=float(lat) if has_coordinates else None,
                    longitude=float(lng) if has_coordinates else None,
                    confidence=_confidence(item.get("confidence")),
                )
            )
        return Extraction(date_times, locations)

    def _structured_datetime(self, value: Any, original: str, now: datetime) -> datetime:
        if isinstance(value, str):
            try:
                return parse_iso(value) or now
            except ValueError:
                pass
        for phrase in (value if isinstance(value, str) else None, original):
            if phrase:
                found, _ = self._date_times(phrase, now)
                if found:
                    return found[0].parsed_datetime
        return now


def _confidence(value: Any) -> float:
    try:
        return clamp_unit(value) if value is not None else STRUCTURED_DEFAULT_CONFIDENCE
    except (TypeError, ValueError):
        return STRUCTURED_DEFAULT_CONFIDENCE
