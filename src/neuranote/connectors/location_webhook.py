"""Location-update webhook.

Receives ``POST /locations`` with JSON ``{userId, latitude, longitude,
timestamp?, id?}`` and hands each update to the geofence pipeline.
Redelivered updates inside the dedup window are acknowledged and dropped.
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Any

from aiohttp import web

from neuranote.connectors.base import LocationUpdate
from neuranote.errors import ValidationError
from neuranote.models.base import parse_iso
from neuranote.models.geo import GeoLocation

if TYPE_CHECKING:
    from neuranote.config import WebhookConfig
    from neuranote.connectors.base import LocationHandler

logger = logging.getLogger(__name__)


def _bad_request(message: str) -> web.Response:
    return web.json_response({"code": 400, "error": message}, status=400)


class LocationWebhook:
    """aiohttp listener feeding location updates into the geofence engine."""

    def __init__(self, config: WebhookConfig) -> None:
        self._config = config
        self._handler: LocationHandler | None = None
        self._seen_ids: dict[str, float] = {}  # update key → timestamp for dedup
        self._dedup_ttl = config.dedup_ttl
        self._runner: web.AppRunner | None = None

    @property
    def name(self) -> str:
        return "location_webhook"

    def build_app(self, handler: LocationHandler | None = None) -> web.Application:
        if handler is not None:
            self._handler = handler
        app = web.Application()
        app.router.add_post("/locations", self._handle_update)
        app.router.add_get("/health", self._handle_health)
        return app

    async def start(self, handler: LocationHandler) -> None:
        app = self.build_app(handler)
        self._runner = web.AppRunner(app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._config.host, self._config.port)
        await site.start()
        logger.info("Location webhook listening on %s:%d", self._config.host, self._config.port)

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({"status": "ok"})

    async def _handle_update(self, request: web.Request) -> web.Response:
        try:
            body = await request.json()
        except ValueError:
            return _bad_request("Body must be JSON")
        if not isinstance(body, dict):
            return _bad_request("Body must be a JSON object")

        try:
            update = self._parse(body)
        except (KeyError, TypeError, ValueError, ValidationError) as e:
            logger.warning("Rejected location update: %s", e)
            return _bad_request(str(e))

        if self._handler is None:
            return web.json_response({"code": 503, "error": "Not ready"}, status=503)

        if self._is_duplicate(update.update_id):
            logger.debug("Dropping duplicate location update %s", update.update_id)
            return web.json_response({"code": 0, "duplicate": True, "events": []})

        try:
            events = await self._handler(update)
        except Exception:
            # Let the sender redeliver
            self._seen_ids.pop(update.update_id, None)
            raise
        return web.json_response({"code": 0, "events": [e.to_dict() for e in events]})

    def _parse(self, body: dict[str, Any]) -> LocationUpdate:
        user_id = body["userId"]
        if not isinstance(user_id, str) or not user_id:
            raise ValidationError("userId must be a non-empty string")
        position = GeoLocation(latitude=float(body["latitude"]), longitude=float(body["longitude"]))
        timestamp = parse_iso(body.get("timestamp"))
        update_id = str(
            body.get("id")
            or f"{user_id}:{position.latitude}:{position.longitude}:{body.get('timestamp', '')}"
        )
        return LocationUpdate(
            user_id=user_id,
            position=position,
            timestamp=timestamp,
            update_id=update_id,
            source_name=self.name,
        )

    def _is_duplicate(self, update_id: str) -> bool:
        now = time.time()
        # Clean old entries
        self._seen_ids = {k: v for k, v in self._seen_ids.items() if now - v < self._dedup_ttl}
        if update_id in self._seen_ids:
            return True
        self._seen_ids[update_id] = now
        return False

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            logger.info("Location webhook stopped")
