"""NeuraNote data model.

Every record serializes to a camelCase dict via ``to_dict``/``from_dict``:

    summary.py   : Summary, DateTimeEntity, LocationEntity
    reminder.py  : Reminder and its status state machine
    geofence.py  : GeofenceRegion, GeofenceEvent
    tokens.py    : TokenBalance, TokenTransaction, TokenPackage
    geo.py       : GeoLocation, haversine
"""

from neuranote.models.geo import GeoLocation, haversine
from neuranote.models.geofence import GeofenceEvent, GeofenceRegion, GeofenceStatus, TriggerType
from neuranote.models.reminder import (
    CalendarSchedule,
    LocationTrigger,
    Reminder,
    ReminderKind,
    ReminderStatus,
)
from neuranote.models.summary import (
    ContentKind,
    DateTimeEntity,
    DateTimeKind,
    Entity,
    LocationEntity,
    LocationKind,
    Summary,
)
from neuranote.models.tokens import (
    TokenBalance,
    TokenPackage,
    TokenSource,
    TokenTransaction,
    TransactionType,
)

__all__ = [
    "CalendarSchedule",
    "ContentKind",
    "DateTimeEntity",
    "DateTimeKind",
    "Entity",
    "GeoLocation",
    "GeofenceEvent",
    "GeofenceRegion",
    "GeofenceStatus",
    "LocationEntity",
    "LocationKind",
    "LocationTrigger",
    "Reminder",
    "ReminderKind",
    "ReminderStatus",
    "Summary",
    "TokenBalance",
    "TokenPackage",
    "TokenSource",
    "TokenTransaction",
    "TransactionType",
    "TriggerType",
    "haversine",
]
