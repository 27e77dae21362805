"""Location-source protocol and shared types."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Callable, Coroutine, Protocol, runtime_checkable

from neuranote.models.geo import GeoLocation

if TYPE_CHECKING:
    from neuranote.models.geofence import GeofenceEvent


@dataclass
class LocationUpdate:
    """A position report received from any location source."""

    user_id: str
    position: GeoLocation
    timestamp: datetime | None = None
    update_id: str = ""
    source_name: str = ""
    metadata: dict = field(default_factory=dict)


# Callback type: core.NeuraNote.handle_location_update
LocationHandler = Callable[[LocationUpdate], Coroutine[None, None, "list[GeofenceEvent]"]]


@runtime_checkable
class LocationSource(Protocol):
    """Protocol that all location-update sources must implement."""

    @property
    def name(self) -> str: ...

    async def start(self, handler: LocationHandler) -> None:
        """Start receiving updates. Call handler for each one."""
        ...

    async def stop(self) -> None:
        """Gracefully stop the source."""
        ...
