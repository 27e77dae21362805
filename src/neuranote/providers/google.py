"""Google Maps geocoding and Google Calendar v3 adapters."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from neuranote.errors import GeocodeUnresolved, NetworkError, ProviderError
from neuranote.providers.base import GeocodeResult
from neuranote.providers.http import HttpClient

logger = logging.getLogger(__name__)

GEOCODE_URL = "https://maps.googleapis.com/maps/api/geocode/json"
CALENDAR_URL = "https://www.googleapis.com/calendar/v3/calendars"


def _component(components: list[dict[str, Any]], *types: str) -> str | None:
    for wanted in types:
        for component in components:
            if wanted in component.get("types", []):
                return component.get("long_name")
    return None


def _to_result(result: dict[str, Any]) -> GeocodeResult:
    try:
        location = result["geometry"]["location"]
        lat, lng = float(location["lat"]), float(location["lng"])
    except (KeyError, TypeError, ValueError):
        raise ProviderError("google_maps: result without geometry", reason="malformed_response")
    components = result.get("address_components") or []
    return GeocodeResult(
        latitude=lat,
        longitude=lng,
        resolved_address=result.get("formatted_address") or "",
        place_name=_component(components, "point_of_interest", "establishment", "premise"),
        city=_component(components, "locality", "administrative_area_level_2"),
        country=_component(components, "country"),
    )


class GoogleGeocoder:
    def __init__(self, api_key: str, *, timeout: int = 30, http: HttpClient | None = None) -> None:
        if not api_key:
            raise ValueError("Google Maps API key is required")
        self._api_key = api_key
        self._http = http or HttpClient("google_maps", timeout=timeout)

    @property
    def name(self) -> str:
        return "google_maps"

    async def _lookup(self, params: dict[str, str], what: str) -> GeocodeResult:
        data = await self._http.request_json(
            "GET", GEOCODE_URL, params={**params, "key": self._api_key}
        )
        status = (data or {}).get("status")
        if status == "ZERO_RESULTS":
            raise GeocodeUnresolved(f"No geocoding result for {what!r}")
        if status != "OK":
            message = (data or {}).get("error_message") or status
            reason = "rate_limited" if status == "OVER_QUERY_LIMIT" else "rejected"
            if status == "REQUEST_DENIED":
                reason = "invalid_credentials"
            raise ProviderError(f"google_maps: {message}", reason=reason)
        results = data.get("results") or []
        if not results:
            raise GeocodeUnresolved(f"No geocoding result for {what!r}")
        return _to_result(results[0])

    async def geocode(self, place_text: str) -> GeocodeResult:
        if not place_text.strip():
            raise GeocodeUnresolved("Empty place text")
        return await self._lookup({"address": place_text}, place_text)

    async def reverse_geocode(self, latitude: float, longitude: float) -> GeocodeResult:
        return await self._lookup({"latlng": f"{latitude},{longitude}"}, f"{latitude},{longitude}")

    async def health_check(self) -> bool:
        return bool(self._api_key)

    async def close(self) -> None:
        await self._http.close()


class GoogleCalendarProvider:
    """Creates events on a Google calendar using an OAuth bearer token."""

    def __init__(
        self,
        access_token: str,
        *,
        calendar_id: str = "primary",
        time_zone: str = "UTC",
        timeout: int = 30,
        http: HttpClient | None = None,
    ) -> None:
        if not access_token:
            raise ValueError("Google Calendar access token is required")
        self._headers = {"Authorization": f"Bearer {access_token}"}
        self._calendar_id = calendar_id
        self._time_zone = time_zone
        self._http = http or HttpClient("google_calendar", timeout=timeout)

    @property
    def name(self) -> str:
        return "google_calendar"

    @property
    def _events_url(self) -> str:
        return f"{CALENDAR_URL}/{self._calendar_id}/events"

    def _event_body(
        self, title: str, description: str, start: datetime, end: datetime | None, all_day: bool
    ) -> dict[str, Any]:
        if all_day:
            end_date = (end or start + timedelta(days=1)).date()
            if end_date <= start.date():
                end_date = start.date() + timedelta(days=1)
            span = {"start": {"date": start.date().isoformat()}, "end": {"date": end_date.isoformat()}}
        else:
            finish = end or start + timedelta(hours=1)
            span = {
                "start": {"dateTime": start.isoformat(), "timeZone": self._time_zone},
                "end": {"dateTime": finish.isoformat(), "timeZone": self._time_zone},
            }
        return {"summary": title, "description": description, **span}

    async def create_event(
        self,
        title: str,
        description: str,
        start: datetime,
        end: datetime | None = None,
        *,
        all_day: bool = False,
    ) -> str:
        data = await self._http.request_json(
            "POST",
            self._events_url,
            json_body=self._event_body(title, description, start, end, all_day),
            headers=self._headers,
        )
        event_id = data.get("id") if isinstance(data, dict) else None
        if not event_id:
            raise ProviderError("google_calendar: response has no event id", reason="malformed_response")
        logger.info("Created calendar event %s", event_id)
        return event_id

    async def delete_event(self, event_id: str) -> None:
        await self._http.request("DELETE", f"{self._events_url}/{event_id}", headers=self._headers)

    async def health_check(self) -> bool:
        try:
            await self._http.request_json(
                "GET", self._events_url, params={"maxResults": "1"}, headers=self._headers
            )
            return True
        except (ProviderError, NetworkError) as e:
            logger.warning("Google Calendar health check failed: %s", e)
            return False

    async def close(self) -> None:
        await self._http.close()
