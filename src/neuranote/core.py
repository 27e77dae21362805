"""NeuraNote hub.

Responsibilities:
1. Provider registry: storage, AI, maps and calendar collaborators by role
2. Summaries: affordability check → pipeline → debit → persist
3. Cascading deletes: summary → reminders → stored content
4. Location sources: route updates into the geofence engine
5. Lifecycle: restore geofences on start, close providers on stop
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from neuranote.config import NeuraNoteConfig
from neuranote.entities.extractor import EntityExtractor
from neuranote.errors import InsufficientTokensError, NotFoundError
from neuranote.geofence.engine import GeofenceEngine
from neuranote.models.geofence import GeofenceEvent
from neuranote.models.summary import ContentKind, Summary
from neuranote.models.tokens import TokenSource
from neuranote.pipeline.orchestrator import SummarizationOrchestrator
from neuranote.pipeline.progress import CancellationToken, ProgressSink
from neuranote.providers.base import (
    BlobStorage,
    CalendarProvider,
    Captioner,
    Geocoder,
    Summarizer,
    Transcriber,
)
from neuranote.reminders.manager import SUMMARIES, ReminderManager
from neuranote.store.documents import DocumentStore, Page, Subscription
from neuranote.tokens.ledger import TokenLedger

if TYPE_CHECKING:
    from neuranote.connectors.base import LocationSource, LocationUpdate

logger = logging.getLogger(__name__)

# Role → protocol a provider must satisfy to fill it
ROLES: dict[str, type] = {
    "storage": BlobStorage,
    "transcriber": Transcriber,
    "captioner": Captioner,
    "summarizer": Summarizer,
    "geocoder": Geocoder,
    "calendar": CalendarProvider,
}


class NeuraNote:
    """Core hub: wires the pipeline, ledger, reminders and geofences together."""

    def __init__(
        self,
        config: NeuraNoteConfig,
        *,
        store: DocumentStore | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.config = config
        self.store = store or DocumentStore(config.data_dir)
        self.ledger = TokenLedger(self.store, config.tokens, clock)
        self.geofences = GeofenceEngine(config.geofence, clock)
        self.extractor = EntityExtractor(clock=clock)
        self._clock = clock
        self._providers: dict[str, Any] = {}  # name → provider
        self._roles: dict[str, str] = {}  # role → provider name
        self._connectors: list[LocationSource] = []
        self._orchestrator: SummarizationOrchestrator | None = None
        self._reminders: ReminderManager | None = None

    # ── Provider management ──────────────────────────────────

    def add_provider(self, provider: Any) -> list[str]:
        """Register a provider for every role it implements; first one per role wins."""
        roles = [role for role, proto in ROLES.items() if isinstance(provider, proto)]
        if not roles:
            raise ValueError(f"Provider '{provider.name}' implements no known role")
        self._providers[provider.name] = provider
        for role in roles:
            self._roles.setdefault(role, provider.name)
        # Rebuild lazily with the new collaborators
        self._orchestrator = None
        if self._reminders is not None:
            self._reminders.close()
            self._reminders = None
        logger.info("Registered provider: %s (%s)", provider.name, ", ".join(roles))
        return roles

    def _get_provider(self, role: str) -> Any:
        name = self._roles.get(role)
        if not name:
            raise RuntimeError(
                f"No provider registered for '{role}'. Available: {list(self._providers)}"
            )
        return self._providers[name]

    def _optional_provider(self, role: str) -> Any:
        name = self._roles.get(role)
        return self._providers[name] if name else None

    @property
    def providers(self) -> dict[str, Any]:
        return dict(self._providers)

    @property
    def orchestrator(self) -> SummarizationOrchestrator:
        if self._orchestrator is None:
            self._orchestrator = SummarizationOrchestrator(
                self._get_provider("storage"),
                self._get_provider("summarizer"),
                transcriber=self._optional_provider("transcriber"),
                captioner=self._optional_provider("captioner"),
                geocoder=self._optional_provider("geocoder"),
                extractor=self.extractor,
                config=self.config.pipeline,
                clock=self._clock,
            )
        return self._orchestrator

    @property
    def reminders(self) -> ReminderManager:
        if self._reminders is None:
            self._reminders = ReminderManager(
                self.store,
                self.geofences,
                calendar=self._optional_provider("calendar"),
                geocoder=self._optional_provider("geocoder"),
                config=self.config.geofence,
                clock=self._clock,
            )
        return self._reminders

    # ── Connector management ─────────────────────────────────

    def add_connector(self, connector: LocationSource) -> None:
        self._connectors.append(connector)
        logger.info("Registered location source: %s", connector.name)

    async def handle_location_update(self, update: LocationUpdate) -> list[GeofenceEvent]:
        """Entry point for every location source."""
        return await self.reminders.process_location_update(
            update.user_id, update.position, update.timestamp
        )

    # ── Summaries ────────────────────────────────────────────

    async def summarize_and_save(
        self,
        kind: ContentKind,
        file_path: Path,
        user_id: str,
        on_progress: ProgressSink | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> Summary:
        """Run the pipeline and charge for it only after it succeeds.

        Raises InsufficientTokensError before any work when the balance is
        short, or after the run if a concurrent debit drained it (in which
        case the upload is released and nothing is persisted).
        """
        orchestrator = self.orchestrator
        cost = orchestrator.cost_of(kind)
        balance = await self.ledger.get_balance(user_id)
        if not balance.can_afford(cost):
            raise InsufficientTokensError(required=cost, available=balance.remaining_tokens)

        result = await orchestrator.summarize(kind, file_path, user_id, on_progress, cancel_token)
        summary = result.to_summary(user_id)
        source = TokenSource.VOICE_SUMMARY if kind is ContentKind.VOICE else TokenSource.IMAGE_SUMMARY

        try:
            await self.ledger.debit(user_id, cost, source, summary.id, description=source.display_name)
        except InsufficientTokensError:
            logger.warning("Debit refused for %s after summarization; discarding result", user_id)
            await self._release_content(summary.original_content_url)
            raise

        try:
            await self.store.put(SUMMARIES, summary.to_dict(), expected_version=0)
        except Exception:
            await self.ledger.refund(user_id, cost, summary.id, "Summary could not be saved")
            raise
        logger.info("Saved summary %s for %s (%d tokens)", summary.id, user_id, cost)
        return summary

    async def get_summary(self, summary_id: str) -> Summary:
        doc = await self.store.get(SUMMARIES, summary_id)
        if doc is None:
            raise NotFoundError(f"Summary {summary_id} not found")
        return Summary.from_dict(doc)

    async def summaries_for_user(
        self, user_id: str, limit: int | None = None, cursor: str | None = None
    ) -> Page[Summary]:
        page = await self.store.query(
            SUMMARIES, user_id, order=["-createdAt"], limit=limit, cursor=cursor
        )
        return Page(items=[Summary.from_dict(d) for d in page.items], next_cursor=page.next_cursor)

    async def summaries_by_kind(
        self, user_id: str, kind: ContentKind, limit: int | None = None
    ) -> list[Summary]:
        page = await self.store.query(
            SUMMARIES, user_id, filters={"type": kind.value}, order=["-createdAt"], limit=limit
        )
        return [Summary.from_dict(d) for d in page.items]

    async def summaries_with_entities(
        self, user_id: str, *, has_date_time: bool = False, has_location: bool = False
    ) -> list[Summary]:
        """Newest first; each flag set narrows to summaries carrying that entity kind."""
        filters: dict[str, Any] = {}
        if has_date_time:
            filters["hasDateTimeEntity"] = True
        if has_location:
            filters["hasLocationEntity"] = True
        page = await self.store.query(SUMMARIES, user_id, filters=filters, order=["-createdAt"])
        return [Summary.from_dict(d) for d in page.items]

    async def search_summaries(self, user_id: str, text: str) -> list[Summary]:
        """Case-insensitive substring search over summary text and transcript."""
        needle = text.strip().lower()
        page = await self.store.query(SUMMARIES, user_id, order=["-createdAt"])
        return [
            Summary.from_dict(d)
            for d in page.items
            if needle in (d.get("summarizedText") or "").lower()
            or needle in (d.get("rawTranscript") or "").lower()
        ]

    def stream_summaries(self, user_id: str) -> Subscription[Summary]:
        return self.store.stream(
            SUMMARIES, user_id, order=["-createdAt"], transform=Summary.from_dict
        )

    async def delete_summary(self, summary_id: str) -> None:
        """Delete a summary with its reminders and stored content."""
        summary = await self.get_summary(summary_id)
        removed = await self.reminders.delete_reminders_for_summary(summary_id)
        await self._release_content(summary.original_content_url)
        await self.store.delete(SUMMARIES, summary_id)
        logger.info("Deleted summary %s (%d reminders)", summary_id, removed)

    async def _release_content(self, url: str) -> None:
        storage = self._optional_provider("storage")
        if storage is None or not url:
            return
        try:
            await storage.delete(url)
        except Exception as e:
            logger.warning("Failed to delete stored content %s: %s", url, e)

    # ── Health ───────────────────────────────────────────────

    async def health_check(self) -> dict[str, bool]:
        results = {}
        for name, provider in self._providers.items():
            try:
                results[name] = bool(await provider.health_check())
            except Exception as e:
                logger.error("Provider %s health check error: %s", name, e)
                results[name] = False
        return results

    # ── Lifecycle ─────────────────────────────────────────────

    async def start(self) -> None:
        """Restore geofences, then start all location sources."""
        await self.reminders.restore()
        tasks = [connector.start(self.handle_location_update) for connector in self._connectors]
        if tasks:
            await asyncio.gather(*tasks)

    async def stop(self) -> None:
        """Gracefully stop all location sources and providers."""
        for connector in self._connectors:
            await connector.stop()

        # Close providers that hold HTTP sessions
        for provider in self._providers.values():
            close = getattr(provider, "close", None)
            if close and callable(close):
                await close()
        if self._reminders is not None:
            self._reminders.close()
        self.store.close()
