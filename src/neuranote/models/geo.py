"""Geographic value types."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any

from neuranote.errors import ValidationError

EARTH_RADIUS_M = 6_371_000.0


def haversine(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in meters on a spherical Earth."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_M * c


@dataclass(frozen=True)
class GeoLocation:
    latitude: float
    longitude: float
    address: str | None = None
    place_name: str | None = None
    city: str | None = None
    country: str | None = None

    def __post_init__(self) -> None:
        if not -90.0 <= self.latitude <= 90.0 or not -180.0 <= self.longitude <= 180.0:
            raise ValidationError(
                f"Malformed coordinates: ({self.latitude}, {self.longitude})"
            )

    @property
    def display_name(self) -> str:
        if self.place_name:
            return self.place_name
        if self.address:
            return self.address
        return f"{self.latitude}, {self.longitude}"

    def distance_to(self, other: GeoLocation) -> float:
        return haversine(self.latitude, self.longitude, other.latitude, other.longitude)

    def to_dict(self) -> dict[str, Any]:
        return {
            "latitude": self.latitude,
            "longitude": self.longitude,
            "address": self.address,
            "placeName": self.place_name,
            "city": self.city,
            "country": self.country,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GeoLocation:
        return cls(
            latitude=float(data["latitude"]),
            longitude=float(data["longitude"]),
            address=data.get("address"),
            place_name=data.get("placeName"),
            city=data.get("city"),
            country=data.get("country"),
        )
