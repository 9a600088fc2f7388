"""Index & migration layer.

The index is a rebuildable cache over the record store: one ``index.json``
per scope root, loaded into an immutable snapshot. Readers grab
``MemoryIndex.snapshot`` once per operation; writers build a new snapshot and
swap the reference, so a reader sees either the old or the new index, never a
half-built one.

Older tooling wrote absolute ``file`` paths instead of ``relativePath`` and a
top-level ``entries`` array instead of ``memories``. Both stay readable; only
the normalized form is ever written back.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from types import MappingProxyType
from typing import Any

from keepsake.errors import CorruptIndexEntry, KeepsakeError
from keepsake.memory.records import (
    MemoryRecord,
    MemoryType,
    Scope,
    format_timestamp,
    load_record,
    parse_timestamp,
)
from keepsake.memory.scopes import PRECEDENCE
from keepsake.memory.store import RecordStore, atomic_write_text

logger = logging.getLogger(__name__)

INDEX_VERSION = "1.0.0"
INDEX_FILENAME = "index.json"


@dataclass(frozen=True)
class IndexEntry:
    """Derived projection of one record, enough to search and link without reading it."""

    id: str
    relative_path: str
    scope: Scope
    type: MemoryType
    title: str = ""
    tags: tuple[str, ...] = ()
    links: tuple[str, ...] = ()
    created: datetime | None = None
    updated: datetime | None = None
    severity: str | None = None
    hash: str | None = None
    embedding: tuple[float, ...] | None = None

    @classmethod
    def from_record(cls, record: MemoryRecord, relative_path: str) -> IndexEntry:
        return cls(
            id=record.id,
            relative_path=relative_path,
            scope=Scope(record.scope),
            type=MemoryType(record.type),
            title=record.title,
            tags=tuple(record.tags),
            links=tuple(record.links),
            created=record.created_at,
            updated=record.updated_at,
            severity=record.severity.value if record.severity is not None else None,
            hash=record.content_hash,
            embedding=tuple(record.embedding) if record.embedding else None,
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "relativePath": self.relative_path,
            "scope": self.scope.value,
            "type": self.type.value,
            "title": self.title,
            "tags": list(self.tags),
            "links": list(self.links),
            "created": format_timestamp(self.created),
            "updated": format_timestamp(self.updated),
        }
        if self.severity:
            data["severity"] = self.severity
        if self.hash:
            data["hash"] = self.hash
        if self.embedding is not None:
            data["embedding"] = list(self.embedding)
        return data

    @property
    def updated_ts(self) -> float:
        return self.updated.timestamp() if self.updated else 0.0


@dataclass
class RebuildStats:
    """Outcome of a rebuild: entries written, records skipped, and why."""

    entries: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)
    orphans_removed: int = 0
    new_entries: int = 0

    def merge(self, other: RebuildStats) -> None:
        self.entries += other.entries
        self.skipped += other.skipped
        self.errors.extend(other.errors)
        self.orphans_removed += other.orphans_removed
        self.new_entries += other.new_entries


# ── Normalization ────────────────────────────────────────────


def _relative_from_legacy(file_value: str, root: Path) -> str:
    path = Path(file_value)
    if not path.is_absolute():
        return PurePosixPath(*path.parts).as_posix()
    try:
        rel = path.relative_to(root)
    except ValueError:
        rel = Path(os.path.relpath(path, root))
    return rel.as_posix()


def _str_list(value: Any) -> tuple[str, ...]:
    if not isinstance(value, (list, tuple)):
        return ()
    return tuple(str(v) for v in value if isinstance(v, str) and v.strip())


def _vector(value: Any) -> tuple[float, ...] | None:
    if not isinstance(value, (list, tuple)) or not value:
        return None
    if not all(isinstance(v, (int, float)) and not isinstance(v, bool) for v in value):
        return None
    return tuple(float(v) for v in value)


def _entry_type(raw: dict, entry_id: str) -> MemoryType | None:
    try:
        return MemoryType(raw.get("type"))
    except ValueError:
        pass
    # Old entries sometimes lack a type; the id prefix carries it.
    for mtype in MemoryType:
        if entry_id.startswith(f"{mtype.value}-"):
            return mtype
    return None


def normalize_entry(raw: Any, scope: Scope, root: Path) -> IndexEntry:
    """Normalize one raw index entry. Idempotent; raises CorruptIndexEntry."""
    if not isinstance(raw, dict):
        raise CorruptIndexEntry(scope.value, raw, "entry is not an object")

    entry_id = raw.get("id")
    if not isinstance(entry_id, str) or not entry_id.strip():
        raise CorruptIndexEntry(scope.value, raw, "missing id")

    relative_path = raw.get("relativePath")
    if not isinstance(relative_path, str) or not relative_path:
        legacy = raw.get("file")
        if not isinstance(legacy, str) or not legacy:
            raise CorruptIndexEntry(scope.value, raw, "neither relativePath nor file present")
        relative_path = _relative_from_legacy(legacy, root)

    mtype = _entry_type(raw, entry_id)
    if mtype is None:
        raise CorruptIndexEntry(scope.value, raw, f"unknown type {raw.get('type')!r}")

    severity = raw.get("severity")
    return IndexEntry(
        id=entry_id,
        relative_path=relative_path,
        scope=scope,
        type=mtype,
        title=str(raw.get("title") or ""),
        tags=_str_list(raw.get("tags")),
        links=_str_list(raw.get("links")),
        created=parse_timestamp(raw.get("created", raw.get("createdAt"))),
        updated=parse_timestamp(raw.get("updated", raw.get("updatedAt"))),
        severity=severity if isinstance(severity, str) and severity else None,
        hash=raw.get("hash") if isinstance(raw.get("hash"), str) else None,
        embedding=_vector(raw.get("embedding", raw.get("embeddingVector"))),
    )


# ── Snapshot ─────────────────────────────────────────────────


class IndexSnapshot:
    """Immutable view of the index across scopes."""

    def __init__(self, scopes: Mapping[Scope, Mapping[str, IndexEntry]] | None = None) -> None:
        self._scopes: Mapping[Scope, Mapping[str, IndexEntry]] = MappingProxyType(
            {s: MappingProxyType(dict(e)) for s, e in (scopes or {}).items()}
        )

    def scope_entries(self, scope: Scope) -> Mapping[str, IndexEntry]:
        return self._scopes.get(scope, MappingProxyType({}))

    def entries(self, scopes: Iterable[Scope] | None = None) -> Iterator[IndexEntry]:
        """Entries of the given scopes, walked in the order given."""
        for scope in scopes if scopes is not None else PRECEDENCE:
            yield from self.scope_entries(scope).values()

    def get(self, entry_id: str, scopes: Iterable[Scope] | None = None) -> IndexEntry | None:
        """First (highest precedence) entry with this id."""
        for scope in scopes if scopes is not None else PRECEDENCE:
            entry = self.scope_entries(scope).get(entry_id)
            if entry is not None:
                return entry
        return None

    def ids(self) -> set[str]:
        return {entry_id for entries in self._scopes.values() for entry_id in entries}

    def with_scope(self, scope: Scope, entries: Mapping[str, IndexEntry]) -> IndexSnapshot:
        scopes = dict(self._scopes)
        scopes[scope] = entries
        return IndexSnapshot(scopes)

    def __len__(self) -> int:
        return sum(len(e) for e in self._scopes.values())


# ── Index ────────────────────────────────────────────────────


class MemoryIndex:
    """Process-wide index with explicit load / rebuild / teardown lifecycle."""

    def __init__(self, stores: Mapping[Scope, RecordStore]) -> None:
        self.stores = dict(stores)
        self._snapshot = IndexSnapshot()
        self.load_errors: list[CorruptIndexEntry] = []

    @property
    def snapshot(self) -> IndexSnapshot:
        return self._snapshot

    def index_path(self, scope: Scope) -> Path:
        return self.stores[scope].root / INDEX_FILENAME

    # ── Load ──────────────────────────────────────────────────

    def load(self) -> list[IndexEntry]:
        """Load every scope's index.json. Corrupt entries are skipped and reported."""
        self.load_errors = []
        loaded: dict[Scope, dict[str, IndexEntry]] = {}

        for scope, store in self.stores.items():
            raw_entries = self._read_index_file(scope)
            if raw_entries is None:
                if any(True for _ in store.iter_files()):
                    logger.info("No usable index for %s scope, rebuilding", scope.value)
                    entries, stats = self._scan(store, {})
                    loaded[scope] = entries
                    self._persist(scope, entries)
                    for error in stats.errors:
                        logger.warning("Rebuild %s: %s", scope.value, error)
                else:
                    loaded[scope] = {}
                continue

            entries: dict[str, IndexEntry] = {}
            for raw in raw_entries:
                try:
                    entry = normalize_entry(raw, scope, store.root)
                except CorruptIndexEntry as e:
                    logger.warning("Skipping %s", e)
                    self.load_errors.append(e)
                    continue
                if entry.id in entries:
                    error = CorruptIndexEntry(scope.value, raw, "duplicate id in index")
                    logger.warning("Skipping %s", error)
                    self.load_errors.append(error)
                    continue
                entries[entry.id] = entry
            loaded[scope] = entries

        self._snapshot = IndexSnapshot(loaded)
        logger.info(
            "Loaded index: %d entries, %d skipped", len(self._snapshot), len(self.load_errors)
        )
        return list(self._snapshot.entries())

    def _read_index_file(self, scope: Scope) -> list | None:
        path = self.index_path(scope)
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError, UnicodeDecodeError) as e:
            logger.warning("Failed to parse index %s: %s", path, e)
            return None
        if not isinstance(data, dict):
            logger.warning("Index %s has invalid structure", path)
            return None
        memories = data.get("memories", data.get("entries"))
        if not isinstance(memories, list):
            logger.warning("Index %s has no memories array", path)
            return None
        return memories

    def _persist(self, scope: Scope, entries: Mapping[str, IndexEntry]) -> None:
        data = {
            "version": INDEX_VERSION,
            "lastUpdated": datetime.now(timezone.utc).isoformat(timespec="seconds"),
            "memories": [e.to_dict() for e in entries.values()],
        }
        atomic_write_text(self.index_path(scope), json.dumps(data, indent=2, ensure_ascii=False))
        logger.debug("Saved %s index (%d entries)", scope.value, len(entries))

    # ── Incremental writes ────────────────────────────────────

    def upsert(self, entry: IndexEntry) -> IndexEntry:
        """Add or replace one entry. A changed content hash drops the cached vector."""
        current = self._snapshot.scope_entries(entry.scope)
        previous = current.get(entry.id)
        if entry.embedding is None and previous is not None and previous.hash == entry.hash:
            entry = replace(entry, embedding=previous.embedding)
        elif previous is not None and previous.hash != entry.hash:
            entry = replace(entry, embedding=None)
        entries = dict(current)
        entries[entry.id] = entry
        self._swap(entry.scope, entries)
        return entry

    def remove(self, scope: Scope, entry_id: str) -> bool:
        current = self._snapshot.scope_entries(scope)
        if entry_id not in current:
            return False
        entries = dict(current)
        del entries[entry_id]
        self._swap(scope, entries)
        return True

    def set_embeddings(self, scope: Scope, vectors: Mapping[str, tuple[float, ...]]) -> int:
        """Attach computed vectors to entries, skipping ids that vanished meanwhile."""
        current = self._snapshot.scope_entries(scope)
        entries = dict(current)
        updated = 0
        for entry_id, vector in vectors.items():
            entry = entries.get(entry_id)
            if entry is None:
                continue
            entries[entry_id] = replace(entry, embedding=tuple(vector))
            updated += 1
        if updated:
            self._swap(scope, entries)
        return updated

    def _swap(self, scope: Scope, entries: dict[str, IndexEntry]) -> None:
        self._persist(scope, entries)
        self._snapshot = self._snapshot.with_scope(scope, entries)

    # ── Rebuild ───────────────────────────────────────────────

    def _entry_from_file(
        self, path: Path, store: RecordStore, previous: Mapping[str, IndexEntry]
    ) -> IndexEntry:
        record = load_record(path, store.scope)
        entry = IndexEntry.from_record(record, store.relative_path(record.id))
        old = previous.get(entry.id)
        if old is not None and old.embedding is not None and old.hash == entry.hash:
            entry = replace(entry, embedding=old.embedding)
        return entry

    def _scan(
        self, store: RecordStore, previous: Mapping[str, IndexEntry]
    ) -> tuple[dict[str, IndexEntry], RebuildStats]:
        stats = RebuildStats()
        entries: dict[str, IndexEntry] = {}
        for path in store.iter_files():
            self._index_file(path, store, previous, entries, stats)
        self._finish_stats(previous, entries, stats)
        return entries, stats

    def _index_file(
        self,
        path: Path,
        store: RecordStore,
        previous: Mapping[str, IndexEntry],
        entries: dict[str, IndexEntry],
        stats: RebuildStats,
    ) -> None:
        try:
            entry = self._entry_from_file(path, store, previous)
        except (KeepsakeError, OSError, UnicodeDecodeError) as e:
            stats.skipped += 1
            stats.errors.append(f"{store.scope.value}:{path.name}: {e}")
            logger.warning("Failed to index %s: %s", path, e)
            return
        entries[entry.id] = entry

    @staticmethod
    def _finish_stats(
        previous: Mapping[str, IndexEntry], entries: dict[str, IndexEntry], stats: RebuildStats
    ) -> None:
        stats.entries = len(entries)
        stats.new_entries = sum(1 for entry_id in entries if entry_id not in previous)
        stats.orphans_removed = sum(1 for entry_id in previous if entry_id not in entries)

    async def rebuild(
        self,
        scopes: Iterable[Scope] | None = None,
        *,
        cancel: asyncio.Event | None = None,
        batch_size: int = 64,
    ) -> RebuildStats:
        """Re-derive the index from the record store, then swap it in.

        Yields to the event loop every ``batch_size`` files and aborts with
        CancelledError if ``cancel`` is set; nothing is swapped in that case.
        """
        targets = [s for s in (scopes if scopes is not None else self.stores) if s in self.stores]
        total = RebuildStats()
        rebuilt: dict[Scope, dict[str, IndexEntry]] = {}

        for scope in targets:
            store = self.stores[scope]
            previous = self._snapshot.scope_entries(scope)
            stats = RebuildStats()
            entries: dict[str, IndexEntry] = {}
            for i, path in enumerate(store.iter_files(), start=1):
                self._index_file(path, store, previous, entries, stats)
                if i % batch_size == 0:
                    await asyncio.sleep(0)
                    if cancel is not None and cancel.is_set():
                        raise asyncio.CancelledError("index rebuild cancelled")
            self._finish_stats(previous, entries, stats)
            rebuilt[scope] = entries
            total.merge(stats)

        if cancel is not None and cancel.is_set():
            raise asyncio.CancelledError("index rebuild cancelled")

        snapshot = self._snapshot
        for scope, entries in rebuilt.items():
            self._persist(scope, entries)
            snapshot = snapshot.with_scope(scope, entries)
        self._snapshot = snapshot

        seen: dict[str, Scope] = {}
        for entry in snapshot.entries():
            if entry.id in seen and seen[entry.id] is not entry.scope:
                total.errors.append(
                    f"duplicate id {entry.id} in {seen[entry.id].value} and {entry.scope.value}"
                )
            seen.setdefault(entry.id, entry.scope)

        known = snapshot.ids()
        for scope in rebuilt:
            for entry in snapshot.scope_entries(scope).values():
                for target in entry.links:
                    if target not in known:
                        logger.warning(
                            "Dangling link %s -> %s in %s scope", entry.id, target, scope.value
                        )
                        total.errors.append(f"dangling link {entry.id} -> {target}")

        logger.info(
            "Rebuilt index: %d entries, %d skipped, %d new, %d removed",
            total.entries,
            total.skipped,
            total.new_entries,
            total.orphans_removed,
        )
        return total

    def teardown(self) -> None:
        self._snapshot = IndexSnapshot()
        self.load_errors = []
