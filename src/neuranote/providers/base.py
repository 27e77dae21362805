"""Provider protocols and shared types.

Every external collaborator (storage, AI, maps, calendar) is a Protocol with
a ``name`` and ``health_check()``. Timeouts are the provider's concern: a
timed-out call raises NetworkError like any other transport failure.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Protocol, runtime_checkable


@dataclass(frozen=True)
class TextResult:
    """Text produced by a transcription, captioning or summarization provider."""

    text: str
    confidence: float = 1.0
    # Raw JSON with entity lists, when the provider returns structured output
    structured: str | None = None


@dataclass(frozen=True)
class GeocodeResult:
    latitude: float
    longitude: float
    resolved_address: str
    place_name: str | None = None
    city: str | None = None
    country: str | None = None


@runtime_checkable
class BlobStorage(Protocol):
    @property
    def name(self) -> str: ...

    async def upload(self, user_id: str, file: Path) -> str:
        """Store the file durably and return its URL."""
        ...

    async def delete(self, url: str) -> None:
        """Remove previously uploaded content. Best-effort for callers."""
        ...

    async def health_check(self) -> bool: ...


@runtime_checkable
class Transcriber(Protocol):
    @property
    def name(self) -> str: ...

    async def transcribe(self, audio_url: str) -> TextResult: ...

    async def health_check(self) -> bool: ...


@runtime_checkable
class Captioner(Protocol):
    @property
    def name(self) -> str: ...

    async def caption(self, image_url: str) -> TextResult: ...

    async def health_check(self) -> bool: ...


@runtime_checkable
class Summarizer(Protocol):
    @property
    def name(self) -> str: ...

    async def summarize(self, text: str) -> TextResult: ...

    async def health_check(self) -> bool: ...


@runtime_checkable
class Geocoder(Protocol):
    @property
    def name(self) -> str: ...

    async def geocode(self, place_text: str) -> GeocodeResult:
        """Resolve a place. Raises GeocodeUnresolved when nothing matches."""
        ...

    async def health_check(self) -> bool: ...


@runtime_checkable
class CalendarProvider(Protocol):
    @property
    def name(self) -> str: ...

    async def create_event(
        self,
        title: str,
        description: str,
        start: datetime,
        end: datetime | None = None,
        *,
        all_day: bool = False,
    ) -> str:
        """Create an event and return its id."""
        ...

    async def delete_event(self, event_id: str) -> None: ...

    async def health_check(self) -> bool: ...
