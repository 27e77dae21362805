"""Tests for the NeuraNote core hub."""

import math
import pytest
from datetime import datetime, timedelta
from pathlib import Path

from neuranote.config import NeuraNoteConfig
from neuranote.connectors.base import LocationUpdate
from neuranote.core import NeuraNote
from neuranote.errors import (
    ConcurrencyConflictError,
    InsufficientTokensError,
    NotFoundError,
    PipelineError,
    ProviderError,
)
from neuranote.models.geo import EARTH_RADIUS_M, GeoLocation
from neuranote.models.reminder import ReminderStatus
from neuranote.models.summary import (
    ContentKind,
    DateTimeEntity,
    DateTimeKind,
    LocationEntity,
    LocationKind,
    Summary,
)
from neuranote.reminders.manager import SUMMARIES
from neuranote.models.tokens import TokenSource, TransactionType
from neuranote.providers.base import TextResult

NOW = datetime(2026, 3, 10, 12, 0)
OFFICE = GeoLocation(37.7749, -122.4194, place_name="Office")


class MockStorage:
    def __init__(self):
        self.deleted: list[str] = []
        self.closed = False

    @property
    def name(self) -> str:
        return "mock-storage"

    async def upload(self, user_id: str, file: Path) -> str:
        return f"mem://{user_id}/{file.name}"

    async def delete(self, url: str) -> None:
        self.deleted.append(url)

    async def health_check(self) -> bool:
        return True

    async def close(self) -> None:
        self.closed = True


class MockAI:
    """Captions, transcribes and summarizes."""

    def __init__(self, summary: str = "Dentist tomorrow at 3pm at Smile Dental", fail: bool = False):
        self.summary = summary
        self.fail = fail

    @property
    def name(self) -> str:
        return "mock-ai"

    async def caption(self, image_url: str) -> TextResult:
        return TextResult("A reminder card on a desk")

    async def transcribe(self, audio_url: str) -> TextResult:
        return TextResult("remember the dentist tomorrow")

    async def summarize(self, text: str) -> TextResult:
        if self.fail:
            raise ProviderError("model overloaded", status=503)
        return TextResult(self.summary, 0.9)

    async def health_check(self) -> bool:
        return not self.fail


class BrokenHealth:
    @property
    def name(self) -> str:
        return "broken"

    async def geocode(self, place_text: str):
        raise NotImplementedError

    async def health_check(self) -> bool:
        raise RuntimeError("no route to host")


class MockSource:
    def __init__(self):
        self.handler = None
        self.stopped = False

    @property
    def name(self) -> str:
        return "mock-source"

    async def start(self, handler) -> None:
        self.handler = handler

    async def stop(self) -> None:
        self.stopped = True


@pytest.fixture
def config(tmp_path: Path) -> NeuraNoteConfig:
    return NeuraNoteConfig(data_dir=tmp_path / "data")


@pytest.fixture
def storage() -> MockStorage:
    return MockStorage()


@pytest.fixture
def app(config: NeuraNoteConfig, storage: MockStorage) -> NeuraNote:
    hub = NeuraNote(config, clock=lambda: NOW)
    hub.add_provider(storage)
    hub.add_provider(MockAI())
    return hub


class TestProviders:
    def test_roles_inferred(self, config: NeuraNoteConfig):
        hub = NeuraNote(config)
        assert hub.add_provider(MockAI()) == ["transcriber", "captioner", "summarizer"]
        assert hub.add_provider(MockStorage()) == ["storage"]

    def test_first_provider_per_role_wins(self, app: NeuraNote, storage: MockStorage):
        class OtherStorage(MockStorage):
            @property
            def name(self) -> str:
                return "other-storage"

        app.add_provider(OtherStorage())
        assert app.orchestrator.storage is storage
        assert set(app.providers) == {"mock-storage", "mock-ai", "other-storage"}

    def test_unknown_provider(self, app: NeuraNote):
        class Nothing:
            name = "nothing"

        with pytest.raises(ValueError):
            app.add_provider(Nothing())

    def test_missing_required_role(self, config: NeuraNoteConfig):
        hub = NeuraNote(config)
        hub.add_provider(MockAI())
        with pytest.raises(RuntimeError):
            _ = hub.orchestrator

    @pytest.mark.asyncio
    async def test_health_check(self, app: NeuraNote):
        app.add_provider(BrokenHealth())
        assert await app.health_check() == {"mock-storage": True, "mock-ai": True, "broken": False}


class TestSummaries:
    @pytest.mark.asyncio
    async def test_summarize_and_save(self, app: NeuraNote):
        await app.ledger.open_account("u1")
        summary = await app.summarize_and_save(ContentKind.IMAGE, Path("card.jpg"), "u1")

        assert summary.summarized_text == "Dentist tomorrow at 3pm at Smile Dental"
        assert summary.tokens_cost == 1
        assert [d.original_text for d in summary.date_times] == ["tomorrow at 3pm"]
        assert [loc.original_text for loc in summary.locations] == ["Smile Dental"]
        assert await app.get_summary(summary.id) == summary

        assert (await app.ledger.get_balance("u1")).remaining_tokens == 99
        debit = (await app.ledger.history("u1", TransactionType.DEBIT))[0]
        assert debit.source is TokenSource.IMAGE_SUMMARY
        assert debit.reference_id == summary.id

    @pytest.mark.asyncio
    async def test_voice_costs_more(self, app: NeuraNote):
        await app.ledger.open_account("u1")
        summary = await app.summarize_and_save(ContentKind.VOICE, Path("memo.m4a"), "u1")
        assert summary.raw_transcript == "remember the dentist tomorrow"
        assert (await app.ledger.get_balance("u1")).remaining_tokens == 98

    @pytest.mark.asyncio
    async def test_insufficient_tokens_before_any_work(self, app: NeuraNote, storage: MockStorage):
        with pytest.raises(InsufficientTokensError):
            await app.summarize_and_save(ContentKind.IMAGE, Path("card.jpg"), "broke")
        page = await app.summaries_for_user("broke")
        assert page.items == []

    @pytest.mark.asyncio
    async def test_pipeline_failure_charges_nothing(self, config: NeuraNoteConfig, storage: MockStorage):
        hub = NeuraNote(config, clock=lambda: NOW)
        hub.add_provider(storage)
        hub.add_provider(MockAI(fail=True))
        await hub.ledger.open_account("u1")

        with pytest.raises(PipelineError):
            await hub.summarize_and_save(ContentKind.IMAGE, Path("card.jpg"), "u1")
        assert (await hub.ledger.get_balance("u1")).remaining_tokens == 100
        assert (await hub.summaries_for_user("u1")).items == []

    @pytest.mark.asyncio
    async def test_failed_save_is_refunded(self, app: NeuraNote, monkeypatch):
        await app.ledger.open_account("u1")

        async def refuse(collection, data, expected_version=None):
            raise ConcurrencyConflictError("summary already exists")

        monkeypatch.setattr(app.store, "put", refuse)
        with pytest.raises(ConcurrencyConflictError):
            await app.summarize_and_save(ContentKind.IMAGE, Path("card.jpg"), "u1")

        assert (await app.ledger.get_balance("u1")).remaining_tokens == 100
        refunds = await app.ledger.history("u1", TransactionType.REFUND)
        assert len(refunds) == 1

    @pytest.mark.asyncio
    async def test_missing_summary(self, app: NeuraNote):
        with pytest.raises(NotFoundError):
            await app.get_summary("ghost")

    @pytest.mark.asyncio
    async def test_delete_summary_cascades(self, app: NeuraNote, storage: MockStorage):
        await app.ledger.open_account("u1")
        summary = await app.summarize_and_save(ContentKind.IMAGE, Path("card.jpg"), "u1")
        result = await app.reminders.create_location_reminder(
            user_id="u1", summary_id=summary.id, title="Dentist", location=OFFICE
        )
        assert (await app.get_summary(summary.id)).active_geofence_ids == [result.geofence_id]

        await app.delete_summary(summary.id)
        with pytest.raises(NotFoundError):
            await app.get_summary(summary.id)
        assert await app.reminders.reminders_for_summary(summary.id) == []
        assert app.geofences.regions_for("u1") == []
        assert storage.deleted == ["mem://u1/card.jpg"]


class TestSummaryQueries:
    @staticmethod
    async def _seed(app: NeuraNote) -> None:
        notes = [
            Summary(
                id="img", user_id="u1", kind=ContentKind.IMAGE, original_content_url="mem://a.jpg",
                summarized_text="Dentist on Friday", created_at=NOW,
                date_times=[DateTimeEntity("Friday", NOW + timedelta(days=3), DateTimeKind.RELATIVE, 0.8)],
            ),
            Summary(
                id="memo", user_id="u1", kind=ContentKind.VOICE, original_content_url="mem://b.m4a",
                summarized_text="Groceries", raw_transcript="pick up milk near the office",
                created_at=NOW + timedelta(minutes=1),
                locations=[LocationEntity("the office", LocationKind.RELATIVE)],
            ),
            Summary(
                id="both", user_id="u1", kind=ContentKind.IMAGE, original_content_url="mem://c.jpg",
                summarized_text="Dinner at Luna tonight", created_at=NOW + timedelta(minutes=2),
                date_times=[DateTimeEntity("tonight", NOW, DateTimeKind.RELATIVE, 0.8)],
                locations=[LocationEntity("Luna", LocationKind.PLACE_NAME)],
            ),
            Summary(
                id="other", user_id="u2", kind=ContentKind.IMAGE, original_content_url="mem://d.jpg",
                summarized_text="Dentist again", created_at=NOW,
            ),
        ]
        for summary in notes:
            await app.store.put(SUMMARIES, summary.to_dict())

    @pytest.mark.asyncio
    async def test_by_kind(self, app: NeuraNote):
        await self._seed(app)
        assert [s.id for s in await app.summaries_by_kind("u1", ContentKind.IMAGE)] == ["both", "img"]
        assert [s.id for s in await app.summaries_by_kind("u1", ContentKind.IMAGE, limit=1)] == ["both"]
        assert [s.id for s in await app.summaries_by_kind("u1", ContentKind.VOICE)] == ["memo"]

    @pytest.mark.asyncio
    async def test_with_entities(self, app: NeuraNote):
        await self._seed(app)
        assert [s.id for s in await app.summaries_with_entities("u1", has_date_time=True)] == ["both", "img"]
        assert [s.id for s in await app.summaries_with_entities("u1", has_location=True)] == ["both", "memo"]
        both = await app.summaries_with_entities("u1", has_date_time=True, has_location=True)
        assert [s.id for s in both] == ["both"]
        assert len(await app.summaries_with_entities("u1")) == 3

    @pytest.mark.asyncio
    async def test_search(self, app: NeuraNote):
        await self._seed(app)
        assert [s.id for s in await app.search_summaries("u1", "DENTIST")] == ["img"]
        assert [s.id for s in await app.search_summaries("u1", "milk")] == ["memo"]
        assert await app.search_summaries("u1", "nothing like this") == []


class TestLocationUpdates:
    @pytest.mark.asyncio
    async def test_update_triggers_reminder(self, app: NeuraNote):
        result = await app.reminders.create_location_reminder(
            user_id="u1", summary_id="s1", title="Keys", location=OFFICE
        )
        nearby = GeoLocation(OFFICE.latitude + math.degrees(60 / EARTH_RADIUS_M), OFFICE.longitude)
        events = await app.handle_location_update(LocationUpdate("u1", nearby, NOW))

        assert [e.payload for e in events] == [result.reminder.id]
        reminder = await app.reminders.get_reminder(result.reminder.id)
        assert reminder.status is ReminderStatus.TRIGGERED


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_and_stop(self, app: NeuraNote, storage: MockStorage):
        source = MockSource()
        app.add_connector(source)
        await app.reminders.create_location_reminder(
            user_id="u1", summary_id="s1", title="Keys", location=OFFICE
        )
        app.geofences.unregister(app.geofences.regions_for("u1")[0].id)

        await app.start()
        assert source.handler == app.handle_location_update
        assert len(app.geofences.regions_for("u1")) == 1

        await app.stop()
        assert source.stopped
        assert storage.closed
