"""Tests for the frontmatter document store."""

import pytest
from pathlib import Path

import frontmatter

from neuranote.errors import ConcurrencyConflictError, NotFoundError, ValidationError
from neuranote.store.documents import MAX_BACKUPS, VERSION_FIELD, DocumentStore, Write


@pytest.fixture
def store(tmp_path: Path) -> DocumentStore:
    return DocumentStore(tmp_path / "data")


def _note(doc_id: str, user: str = "u1", **fields) -> dict:
    return {"id": doc_id, "userId": user, **fields}


class TestCrud:
    @pytest.mark.asyncio
    async def test_put_and_get(self, store: DocumentStore):
        stored = await store.put("notes", _note("a", title="First"))
        assert stored[VERSION_FIELD] == 1
        doc = await store.get("notes", "a")
        assert doc["title"] == "First"
        assert (store.root / "notes" / "a.md").exists()

    @pytest.mark.asyncio
    async def test_get_returns_copy(self, store: DocumentStore):
        await store.put("notes", _note("a", tags=["x"]))
        doc = await store.get("notes", "a")
        doc["tags"].append("y")
        assert (await store.get("notes", "a"))["tags"] == ["x"]

    @pytest.mark.asyncio
    async def test_missing_returns_none(self, store: DocumentStore):
        assert await store.get("notes", "nope") is None
        assert store.version_of("notes", "nope") == 0

    @pytest.mark.asyncio
    async def test_body_field_written_as_markdown(self, store: DocumentStore):
        await store.put("summaries", _note("s1", summarizedText="Meet Anna at noon."))
        post = frontmatter.load(str(store.root / "summaries" / "s1.md"))
        assert post.content == "Meet Anna at noon."
        assert "summarizedText" not in post.metadata

    @pytest.mark.asyncio
    async def test_index_rebuilt_from_disk(self, store: DocumentStore):
        await store.put("summaries", _note("s1", summarizedText="Body text", score=0.5))
        reopened = DocumentStore(store.root)
        doc = await reopened.get("summaries", "s1")
        assert doc["summarizedText"] == "Body text"
        assert doc["score"] == 0.5
        assert reopened.version_of("summaries", "s1") == 1

    @pytest.mark.asyncio
    async def test_update_merges(self, store: DocumentStore):
        await store.put("notes", _note("a", title="Old", done=False))
        updated = await store.update("notes", "a", {"done": True})
        assert updated["title"] == "Old"
        assert updated["done"] is True
        assert updated[VERSION_FIELD] == 2

    @pytest.mark.asyncio
    async def test_update_missing_raises(self, store: DocumentStore):
        with pytest.raises(NotFoundError):
            await store.update("notes", "ghost", {"x": 1})

    @pytest.mark.asyncio
    async def test_delete(self, store: DocumentStore):
        await store.put("notes", _note("a"))
        assert await store.delete("notes", "a") is True
        assert await store.get("notes", "a") is None
        assert not (store.root / "notes" / "a.md").exists()
        assert await store.delete("notes", "a") is False

    @pytest.mark.asyncio
    async def test_illegal_id(self, store: DocumentStore):
        with pytest.raises(ValidationError):
            await store.put("notes", _note("../escape"))

    @pytest.mark.asyncio
    async def test_backups_are_capped(self, store: DocumentStore):
        for i in range(MAX_BACKUPS + 5):
            await store.put("notes", _note("a", n=i))
        versions = store.versions("notes", "a")
        assert 0 < len(versions) <= MAX_BACKUPS


class TestVersioning:
    @pytest.mark.asyncio
    async def test_create_only(self, store: DocumentStore):
        await store.put("notes", _note("a"), expected_version=0)
        with pytest.raises(ConcurrencyConflictError):
            await store.put("notes", _note("a"), expected_version=0)

    @pytest.mark.asyncio
    async def test_stale_version_rejected(self, store: DocumentStore):
        await store.put("notes", _note("a"))
        await store.put("notes", _note("a"), expected_version=1)
        with pytest.raises(ConcurrencyConflictError):
            await store.put("notes", _note("a"), expected_version=1)

    @pytest.mark.asyncio
    async def test_batch_is_all_or_nothing(self, store: DocumentStore):
        await store.put("notes", _note("a", n=1))
        with pytest.raises(ConcurrencyConflictError):
            await store.commit(
                [
                    Write("notes", "b", _note("b"), expected_version=0),
                    Write("notes", "a", _note("a", n=2), expected_version=5),
                ]
            )
        assert await store.get("notes", "b") is None
        assert (await store.get("notes", "a"))["n"] == 1

    @pytest.mark.asyncio
    async def test_batch_applies_together(self, store: DocumentStore):
        results = await store.commit(
            [
                Write("balances", "u1", {"total": 10}, expected_version=0),
                Write("log", "t1", {"userId": "u1", "amount": 10}, expected_version=0),
            ]
        )
        assert results[0]["id"] == "u1"
        assert results[1]["amount"] == 10


async def _populate(store: DocumentStore) -> DocumentStore:
    await store.put("notes", _note("a", rank=3, status="open"))
    await store.put("notes", _note("b", rank=1, status="done"))
    await store.put("notes", _note("c", rank=2, status="open"))
    await store.put("notes", _note("d", user="u2", rank=0, status="open"))
    return store


class TestQuery:
    @pytest.mark.asyncio
    async def test_filters_by_user_and_field(self, store: DocumentStore):
        populated = await _populate(store)
        page = await populated.query("notes", "u1", {"status": "open"})
        assert sorted(d["id"] for d in page.items) == ["a", "c"]

    @pytest.mark.asyncio
    async def test_operators(self, store: DocumentStore):
        populated = await _populate(store)
        page = await populated.query("notes", filters=[("rank", ">=", 2)])
        assert sorted(d["id"] for d in page.items) == ["a", "c"]
        page = await populated.query("notes", filters=[("id", "in", ["b", "d"])])
        assert sorted(d["id"] for d in page.items) == ["b", "d"]

    @pytest.mark.asyncio
    async def test_unknown_operator(self, store: DocumentStore):
        populated = await _populate(store)
        with pytest.raises(ValidationError):
            await populated.query("notes", filters=[("rank", "~", 1)])

    @pytest.mark.asyncio
    async def test_order_and_paging(self, store: DocumentStore):
        populated = await _populate(store)
        first = await populated.query("notes", "u1", order=["-rank"], limit=2)
        assert [d["id"] for d in first.items] == ["a", "c"]
        assert first.next_cursor is not None
        second = await populated.query("notes", "u1", order=["-rank"], limit=2, cursor=first.next_cursor)
        assert [d["id"] for d in second.items] == ["b"]
        assert second.next_cursor is None

    @pytest.mark.asyncio
    async def test_bad_cursor(self, store: DocumentStore):
        populated = await _populate(store)
        with pytest.raises(ValidationError):
            await populated.query("notes", cursor="abc")


class TestStream:
    @pytest.mark.asyncio
    async def test_initial_snapshot_then_updates(self, store: DocumentStore):
        await store.put("notes", _note("a", title="b"))
        sub = store.stream("notes", "u1", order=["title"], transform=lambda d: d["id"])
        assert await sub.__anext__() == ["a"]

        await store.put("notes", _note("z", title="a"))
        assert await sub.__anext__() == ["z", "a"]

    @pytest.mark.asyncio
    async def test_slow_consumer_gets_latest(self, store: DocumentStore):
        sub = store.stream("notes", "u1")
        assert await sub.__anext__() == []
        await store.put("notes", _note("a"))
        await store.put("notes", _note("b"))
        await store.delete("notes", "a")
        snapshot = await sub.__anext__()
        assert [d["id"] for d in snapshot] == ["b"]

    @pytest.mark.asyncio
    async def test_other_collections_do_not_notify(self, store: DocumentStore):
        sub = store.stream("notes", "u1")
        await sub.__anext__()
        await store.put("other", _note("x"))
        await store.put("notes", _note("a"))
        assert [d["id"] for d in await sub.__anext__()] == ["a"]

    @pytest.mark.asyncio
    async def test_cancel_ends_iteration(self, store: DocumentStore):
        sub = store.stream("notes")
        await sub.__anext__()
        sub.cancel()
        assert sub.closed
        with pytest.raises(StopAsyncIteration):
            await sub.__anext__()
        await store.put("notes", _note("a"))  # no error after cancel

    @pytest.mark.asyncio
    async def test_limit_caps_snapshots(self, store: DocumentStore):
        await store.put("notes", _note("a", title="a"))
        sub = store.stream("notes", "u1", order=["-title"], transform=lambda d: d["id"], limit=1)
        assert await sub.__anext__() == ["a"]
        await store.put("notes", _note("b", title="b"))
        assert await sub.__anext__() == ["b"]
        sub.cancel()
