"""Frontmatter-backed document store with versioned atomic batches.

Each document is a Markdown file with YAML frontmatter. An in-memory index
(built once at startup, updated on every write) serves reads and queries;
disk is only touched on writes.

Every document carries a ``_version`` counter. ``commit`` checks all
expected versions first and then applies the whole batch without yielding
to the event loop, so coroutines never observe half of a batch.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import operator
import os
import re
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Generic, TypeVar

import frontmatter

from neuranote.errors import ConcurrencyConflictError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

VERSION_FIELD = "_version"
MAX_BACKUPS = 10

# Field stored as the Markdown body instead of frontmatter
DEFAULT_BODY_FIELDS = {
    "summaries": "summarizedText",
    "reminders": "description",
}

_RESERVED_DIRS = {"blobs"}
_ILLEGAL_ID = re.compile(r'[<>:"/\\|?*\s]')

Filter = tuple[str, str, Any]

_OPS: dict[str, Callable[[Any, Any], bool]] = {
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "in": lambda value, options: value in options,
    "contains": lambda value, item: item in (value or []),
}
_ORDERING_OPS = {"<", "<=", ">", ">="}

T = TypeVar("T")


@dataclass
class Write:
    """One element of a ``commit`` batch. ``data=None`` deletes the document.

    ``expected_version`` of 0 means "must not exist yet"; None skips the check.
    """

    collection: str
    id: str
    data: dict[str, Any] | None
    expected_version: int | None = None


@dataclass
class Page(Generic[T]):
    items: list[T]
    next_cursor: str | None = None


class Subscription(Generic[T]):
    """Live query handle. Iterate for ordered snapshots; ``cancel()`` to stop.

    Snapshots that pile up between reads are coalesced: a slow consumer
    always gets the latest consistent list, never a stale one.
    """

    def __init__(
        self,
        store: DocumentStore,
        collection: str,
        user_id: str | None,
        filters: list[Filter],
        order: list[str],
        transform: Callable[[dict[str, Any]], T],
        limit: int | None = None,
    ) -> None:
        self._store = store
        self.collection = collection
        self.user_id = user_id
        self.filters = filters
        self.order = order
        self.limit = limit
        self._transform = transform
        self._queue: asyncio.Queue[list[T] | None] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _push(self, docs: list[dict[str, Any]]) -> None:
        if self._closed:
            return
        if self.limit is not None:
            docs = docs[: self.limit]
        self._queue.put_nowait([self._transform(d) for d in docs])

    def cancel(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._store._unsubscribe(self)
        self._queue.put_nowait(None)

    def __aiter__(self) -> Subscription[T]:
        return self

    async def __anext__(self) -> list[T]:
        snapshot = await self._queue.get()
        while snapshot is not None and not self._queue.empty():
            snapshot = self._queue.get_nowait()
        if snapshot is None:
            raise StopAsyncIteration
        return snapshot


class DocumentStore:
    """CRUD, queries and live subscriptions over per-collection Markdown files."""

    def __init__(self, root: Path, body_fields: Mapping[str, str] | None = None) -> None:
        self.root = root
        self._body_fields = {**DEFAULT_BODY_FIELDS, **(body_fields or {})}
        self._index: dict[str, dict[str, dict[str, Any]]] = {}
        self._subscriptions: list[Subscription] = []
        self._ensure_initialized()
        self._build_index()

    # ── Initialization ────────────────────────────────────────

    def _ensure_initialized(self) -> None:
        (self.root / ".versions").mkdir(parents=True, exist_ok=True)

    def _build_index(self) -> None:
        """Scan every collection directory once at startup."""
        self._index.clear()
        for coll_dir in sorted(self.root.iterdir()):
            if not coll_dir.is_dir() or coll_dir.name.startswith("."):
                continue
            if coll_dir.name in _RESERVED_DIRS:
                continue
            docs = self._index.setdefault(coll_dir.name, {})
            for md_file in coll_dir.glob("*.md"):
                doc = self._load(coll_dir.name, md_file)
                if doc is not None:
                    docs[doc.get("id", md_file.stem)] = doc
        logger.debug(
            "Indexed %d documents in %d collections",
            sum(len(d) for d in self._index.values()),
            len(self._index),
        )

    # ── File format ───────────────────────────────────────────

    def _path(self, collection: str, doc_id: str) -> Path:
        return self.root / collection / f"{doc_id}.md"

    def _load(self, collection: str, path: Path) -> dict[str, Any] | None:
        try:
            post = frontmatter.load(str(path))
        except Exception as e:
            logger.warning("Skipping unreadable document %s: %s", path, e)
            return None
        doc = dict(post.metadata)
        body_field = self._body_fields.get(collection)
        if body_field:
            doc[body_field] = post.content
        return doc

    def _render(self, collection: str, doc: dict[str, Any]) -> str:
        body_field = self._body_fields.get(collection)
        meta = dict(doc)
        body = ""
        if body_field:
            body = meta.pop(body_field, None) or ""
        post = frontmatter.Post(body)
        post.metadata.update(meta)
        return frontmatter.dumps(post) + "\n"

    def _write_file(self, path: Path, text: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".md.tmp")
        tmp.write_text(text, encoding="utf-8")
        os.replace(tmp, path)

    def _backup(self, collection: str, path: Path) -> None:
        """Backup to .versions/, keep at most MAX_BACKUPS per document."""
        if not path.exists():
            return
        versions_dir = self.root / ".versions"
        ts = datetime.now().strftime("%Y%m%dT%H%M%S%f")
        (versions_dir / f"{collection}@{path.stem}@{ts}.md").write_text(
            path.read_text(encoding="utf-8"), encoding="utf-8"
        )
        old = sorted(versions_dir.glob(f"{collection}@{path.stem}@*.md"))
        for f in old[:-MAX_BACKUPS]:
            f.unlink()

    def versions(self, collection: str, doc_id: str) -> list[Path]:
        """Backup files for a document, oldest first."""
        return sorted((self.root / ".versions").glob(f"{collection}@{doc_id}@*.md"))

    # ── Reads ─────────────────────────────────────────────────

    async def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        doc = self._index.get(collection, {}).get(doc_id)
        return copy.deepcopy(doc) if doc is not None else None

    def version_of(self, collection: str, doc_id: str) -> int:
        doc = self._index.get(collection, {}).get(doc_id)
        return int(doc.get(VERSION_FIELD, 0)) if doc else 0

    async def query(
        self,
        collection: str,
        user_id: str | None = None,
        filters: Mapping[str, Any] | Iterable[Filter] | None = None,
        order: Iterable[str] | None = None,
        limit: int | None = None,
        cursor: str | None = None,
    ) -> Page[dict[str, Any]]:
        """Filter, order and page a collection.

        ``order`` entries are field names, prefixed with ``-`` for descending.
        ``cursor`` is the opaque ``next_cursor`` of the previous page.
        """
        docs = self._select(collection, user_id, _normalize_filters(filters), list(order or []))
        start = 0
        if cursor:
            try:
                start = int(cursor)
            except ValueError:
                raise ValidationError(f"Invalid cursor: {cursor!r}")
        end = len(docs) if limit is None else start + limit
        items = [copy.deepcopy(d) for d in docs[start:end]]
        next_cursor = str(end) if end < len(docs) else None
        return Page(items=items, next_cursor=next_cursor)

    def _select(
        self,
        collection: str,
        user_id: str | None,
        filters: list[Filter],
        order: list[str],
    ) -> list[dict[str, Any]]:
        docs = [
            d
            for d in self._index.get(collection, {}).values()
            if (user_id is None or d.get("userId") == user_id) and _matches(d, filters)
        ]
        docs.sort(key=lambda d: str(d.get("id", "")))
        for key in reversed(order):
            desc = key.startswith("-")
            name = key.lstrip("-")
            docs.sort(key=lambda d, n=name: _sort_key(d.get(n)), reverse=desc)
        return docs

    # ── Writes ────────────────────────────────────────────────

    async def put(
        self,
        collection: str,
        doc: dict[str, Any],
        *,
        expected_version: int | None = None,
    ) -> dict[str, Any]:
        doc_id = doc.get("id")
        if not doc_id:
            raise ValidationError(f"Document for '{collection}' has no id")
        (stored,) = await self.commit([Write(collection, doc_id, doc, expected_version)])
        return stored

    async def update(
        self,
        collection: str,
        doc_id: str,
        partial: Mapping[str, Any],
        *,
        expected_version: int | None = None,
    ) -> dict[str, Any]:
        current = self._index.get(collection, {}).get(doc_id)
        if current is None:
            raise NotFoundError(f"{collection}/{doc_id} not found")
        merged = {**current, **partial}
        (stored,) = await self.commit([Write(collection, doc_id, merged, expected_version)])
        return stored

    async def delete(
        self, collection: str, doc_id: str, *, expected_version: int | None = None
    ) -> bool:
        if doc_id not in self._index.get(collection, {}):
            return False
        await self.commit([Write(collection, doc_id, None, expected_version)])
        return True

    async def commit(self, writes: list[Write]) -> list[dict[str, Any] | None]:
        """Apply a batch of puts/deletes as one unit.

        Raises ConcurrencyConflictError (writing nothing) if any
        ``expected_version`` does not match the stored version.
        """
        staged: list[tuple[Write, dict[str, Any] | None]] = []
        versions: dict[tuple[str, str], int] = {}

        for w in writes:
            if not w.id or _ILLEGAL_ID.search(w.id):
                raise ValidationError(f"Illegal document id: {w.id!r}")
            key = (w.collection, w.id)
            current_version = versions.get(key, self.version_of(w.collection, w.id))
            if w.expected_version is not None and w.expected_version != current_version:
                raise ConcurrencyConflictError(
                    f"{w.collection}/{w.id}: expected version {w.expected_version}, "
                    f"found {current_version}"
                )
            if w.data is None:
                staged.append((w, None))
                versions[key] = 0
            else:
                doc = copy.deepcopy(dict(w.data))
                doc["id"] = w.id
                body_field = self._body_fields.get(w.collection)
                if body_field and isinstance(doc.get(body_field), str):
                    # frontmatter strips the body on load
                    doc[body_field] = doc[body_field].strip()
                doc[VERSION_FIELD] = current_version + 1
                staged.append((w, doc))
                versions[key] = current_version + 1

        # No awaits below: the batch lands as a unit.
        results: list[dict[str, Any] | None] = []
        touched: set[str] = set()
        for w, doc in staged:
            path = self._path(w.collection, w.id)
            docs = self._index.setdefault(w.collection, {})
            self._backup(w.collection, path)
            if doc is None:
                path.unlink(missing_ok=True)
                docs.pop(w.id, None)
                results.append(None)
            else:
                self._write_file(path, self._render(w.collection, doc))
                docs[w.id] = doc
                results.append(copy.deepcopy(doc))
            touched.add(w.collection)

        self._notify(touched)
        return results

    # ── Live subscriptions ────────────────────────────────────

    def stream(
        self,
        collection: str,
        user_id: str | None = None,
        filters: Mapping[str, Any] | Iterable[Filter] | None = None,
        order: Iterable[str] | None = None,
        transform: Callable[[dict[str, Any]], T] | None = None,
        limit: int | None = None,
    ) -> Subscription[T]:
        """Subscribe to a query; the current result is delivered immediately.

        ``limit`` caps every snapshot to its first entries after ordering.
        """
        sub: Subscription = Subscription(
            self,
            collection,
            user_id,
            _normalize_filters(filters),
            list(order or []),
            transform or copy.deepcopy,
            limit,
        )
        self._subscriptions.append(sub)
        sub._push(self._select(collection, user_id, sub.filters, sub.order))
        return sub

    def _unsubscribe(self, sub: Subscription) -> None:
        if sub in self._subscriptions:
            self._subscriptions.remove(sub)

    def _notify(self, collections: set[str]) -> None:
        for sub in list(self._subscriptions):
            if sub.collection in collections:
                sub._push(self._select(sub.collection, sub.user_id, sub.filters, sub.order))

    def close(self) -> None:
        for sub in list(self._subscriptions):
            sub.cancel()


def _normalize_filters(filters: Mapping[str, Any] | Iterable[Filter] | None) -> list[Filter]:
    if not filters:
        return []
    if isinstance(filters, Mapping):
        return [(name, "==", value) for name, value in filters.items()]
    normalized = []
    for name, op, value in filters:
        if op not in _OPS:
            raise ValidationError(f"Unsupported filter operator: {op}")
        normalized.append((name, op, value))
    return normalized


def _matches(doc: dict[str, Any], filters: list[Filter]) -> bool:
    for name, op, expected in filters:
        value = doc.get(name)
        if value is None and op in _ORDERING_OPS:
            return False
        if not _OPS[op](value, expected):
            return False
    return True


def _sort_key(value: Any) -> tuple[bool, Any]:
    return (value is None, value if value is not None else "")
