"""Memory engine: the API hosts call into.

Responsibilities:
1. Lifecycle: load the index on start, drop it on close
2. Lane locks: serialize writes per scope, different scopes never contend
3. Ingestion and edits: validate, persist, keep the index in step
4. Retrieval: scope resolution + hybrid search under a deadline
5. Graph: auto-link, explicit links, orphan report
6. Injection: weighted selection of search hits for a hook kind
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, TypeVar

from keepsake.config import KeepsakeConfig
from keepsake.errors import (
    EmbeddingUnavailable,
    FieldError,
    InvalidScope,
    RecordNotFound,
    Timeout,
    ValidationError,
)
from keepsake.memory.embedding import EmbeddingProvider, create_provider, embed_text
from keepsake.memory.graph import Edge, GraphLinker, SuggestedLink
from keepsake.memory.index import IndexEntry, MemoryIndex, RebuildStats
from keepsake.memory.injection import Injection, InjectionDeduplicator, InjectionSelector
from keepsake.memory.records import (
    MemoryRecord,
    MemoryType,
    Scope,
    generate_id,
    normalize_record,
    utcnow,
    validate_record,
)
from keepsake.memory.scopes import ScopeQuery, ScopeResolver, parse_scope
from keepsake.memory.search import HybridSearch, SearchOptions, SearchResult
from keepsake.memory.store import RecordStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Fields an edit may touch. id, type and scope are fixed at creation.
EDITABLE_FIELDS = frozenset({"title", "content", "tags", "links", "severity", "source", "project"})


@dataclass
class EmbedStats:
    """Outcome of a semantic index pass."""

    embedded: int = 0
    remaining: int = 0
    errors: list[str] = field(default_factory=list)


class MemoryEngine:
    """Persistent memory store across user, project, local and enterprise scopes."""

    def __init__(
        self,
        config: KeepsakeConfig,
        cwd: Path | None = None,
        provider: EmbeddingProvider | None = None,
    ) -> None:
        self.config = config
        self.resolver = ScopeResolver(config.scopes, cwd)
        self.provider = provider if provider is not None else create_provider(config.embedding)
        self.stores: dict[Scope, RecordStore] = {
            scope: RecordStore(self.resolver.root(scope), scope)
            for scope in self.resolver.available()
        }
        self.index = MemoryIndex(self.stores)
        self.searcher = HybridSearch(self.index, config.search, self.provider)
        self.linker = GraphLinker(self.index, self.searcher, config.linking, self._get_lane_lock)
        self.injector = InjectionSelector(config.injection)
        self._lane_locks: dict[Scope, asyncio.Lock] = {}  # per-scope write serialization
        self._started = False

    # ── Lifecycle ─────────────────────────────────────────────

    def start(self) -> None:
        """Load every available scope's index. Safe to call again to reload."""
        self.index.load()
        self._started = True
        logger.info(
            "Memory engine started: scopes=%s, embeddings=%s",
            ",".join(s.value for s in self.stores),
            self.provider.name if self.provider else "off",
        )

    def close(self) -> None:
        self.index.teardown()
        self._lane_locks.clear()
        self._started = False
        logger.info("Memory engine closed")

    def _ensure_started(self) -> None:
        if not self._started:
            self.start()

    # ── Lane locks ────────────────────────────────────────────

    def _get_lane_lock(self, scope: Scope) -> asyncio.Lock:
        if scope not in self._lane_locks:
            self._lane_locks[scope] = asyncio.Lock()
        return self._lane_locks[scope]

    def _scopes(self, query_scope: ScopeQuery = None) -> list[Scope]:
        """Resolved scopes that have a store in this context."""
        scopes = self.resolver.resolve(query_scope)
        missing = [s for s in scopes if s not in self.stores]
        if missing:
            raise InvalidScope(
                f"Scope not available in this context: {', '.join(s.value for s in missing)}"
            )
        return scopes

    def _store(self, scope: Scope) -> RecordStore:
        return self.stores[self._scopes(scope)[0]]

    async def _bounded(self, awaitable: Awaitable[T], timeout: float | None, what: str) -> T:
        if timeout is None or timeout <= 0:
            return await awaitable
        try:
            return await asyncio.wait_for(awaitable, timeout)
        except asyncio.TimeoutError:
            logger.warning("%s exceeded %.1fs deadline", what, timeout)
            raise Timeout(f"{what} did not finish within {timeout}s") from None

    # ── Reads ─────────────────────────────────────────────────

    def entry(self, record_id: str, scope: ScopeQuery = None) -> IndexEntry:
        self._ensure_started()
        entry = self.index.snapshot.get(record_id, self._scopes(scope))
        if entry is None:
            raise RecordNotFound(f"Memory not found: {record_id}")
        return entry

    def get(self, record_id: str, scope: ScopeQuery = None) -> MemoryRecord:
        entry = self.entry(record_id, scope)
        return self.stores[entry.scope].read(entry.id)

    # ── Writes ────────────────────────────────────────────────

    def _check_links(self, record: MemoryRecord) -> list[FieldError]:
        known = self.index.snapshot.ids()
        return [
            FieldError("links", f"link target does not exist: {target}")
            for target in record.links
            if target not in known
        ]

    async def ingest(self, record: MemoryRecord) -> str:
        """Validate and persist a new record. Returns its id."""
        self._ensure_started()
        if not record.scope:
            record.scope = self.resolver.default_scope()
        try:
            scope = parse_scope(record.scope)
            store = self._store(scope)
        except InvalidScope as e:
            raise ValidationError([FieldError("scope", str(e))]) from None
        normalize_record(record)

        now = utcnow()
        record.created_at = record.created_at or now
        record.updated_at = record.updated_at or record.created_at

        async with self._get_lane_lock(scope):
            taken = self.index.snapshot.ids()
            if not record.id and isinstance(record.type, MemoryType):
                record.id = generate_id(record.type, record.title, taken)
            errors = validate_record(record)
            if record.id and (record.id in taken or store.exists(record.id)):
                errors.append(FieldError("id", f"id already exists: {record.id}"))
            errors.extend(self._check_links(record))
            if errors:
                raise ValidationError(errors)

            store.write(record)
            self.index.upsert(IndexEntry.from_record(record, store.relative_path(record.id)))

        logger.info("Ingested %s %s into %s scope", record.type.value, record.id, scope.value)
        return record.id

    async def update(self, record_id: str, **changes: Any) -> MemoryRecord:
        """Explicit edit. Scope, type and id cannot change."""
        unknown = sorted(set(changes) - EDITABLE_FIELDS)
        if unknown:
            raise ValidationError([FieldError(name, "field cannot be edited") for name in unknown])
        entry = self.entry(record_id)
        store = self.stores[entry.scope]

        async with self._get_lane_lock(entry.scope):
            record = store.read(entry.id)
            for name, value in changes.items():
                setattr(record, name, value)
            normalize_record(record)
            record.updated_at = max(utcnow(), record.created_at or utcnow())
            errors = validate_record(record) + self._check_links(record)
            if errors:
                raise ValidationError(errors)
            store.write(record)
            self.index.upsert(IndexEntry.from_record(record, entry.relative_path))

        logger.info("Updated %s (%s)", record_id, ", ".join(sorted(changes)) or "touch")
        return record

    async def delete(self, record_id: str) -> list[Edge]:
        """Remove a record and prune links that pointed at it. Returns the pruned edges."""
        entry = self.entry(record_id)
        async with self._get_lane_lock(entry.scope):
            self.stores[entry.scope].delete(entry.id)
            self.index.remove(entry.scope, entry.id)
        return await self.linker.remove_references(record_id)

    # ── Search ────────────────────────────────────────────────

    async def search(
        self,
        query: str,
        scope: ScopeQuery = None,
        options: SearchOptions | None = None,
        timeout: float | None = None,
    ) -> list[SearchResult]:
        self._ensure_started()
        scopes = self._scopes(scope)
        return await self._bounded(
            self.searcher.search(query, scopes, options),
            timeout if timeout is not None else self.config.search.timeout,
            "search",
        )

    async def inject(
        self,
        query: str,
        hook_kind: str,
        scope: ScopeQuery = None,
        dedup: InjectionDeduplicator | None = None,
        timeout: float | None = None,
    ) -> list[Injection]:
        """Pick what to surface for a hook: weighted, gated, capped per type."""
        if not self.config.injection.enabled:
            return []
        results = await self.search(query, scope, timeout=timeout)
        selected = self.injector.select(results, hook_kind, dedup)
        logger.debug("Injection for %s: %d of %d hits", hook_kind, len(selected), len(results))
        return selected

    # ── Graph ─────────────────────────────────────────────────

    async def auto_link(self, record_id: str) -> list[Edge]:
        self._ensure_started()
        return await self.linker.auto_link(record_id, self._scopes())

    async def link(self, source: str, target: str) -> Edge | None:
        self._ensure_started()
        return await self.linker.link(source, target)

    async def unlink(self, source: str, target: str) -> bool:
        self._ensure_started()
        return await self.linker.unlink(source, target)

    def check_cohesion(self, scope: ScopeQuery = None) -> list[str]:
        self._ensure_started()
        return self.linker.check_cohesion(self._scopes(scope))

    def suggest_links(
        self, scope: ScopeQuery = None, threshold: float = 0.75, limit: int = 20
    ) -> list[SuggestedLink]:
        self._ensure_started()
        return self.linker.suggest_links(self._scopes(scope), threshold, limit)

    # ── Maintenance ───────────────────────────────────────────

    async def rebuild_index(
        self,
        scope: ScopeQuery = None,
        timeout: float | None = None,
        cancel: asyncio.Event | None = None,
    ) -> RebuildStats:
        """Re-derive the index from disk while holding the lanes of the rebuilt scopes."""
        self._ensure_started()
        scopes = self._scopes(scope)

        async def run() -> RebuildStats:
            async with contextlib.AsyncExitStack() as stack:
                for s in scopes:
                    await stack.enter_async_context(self._get_lane_lock(s))
                return await self.index.rebuild(
                    scopes, cancel=cancel, batch_size=self.config.index.batch_size
                )

        return await self._bounded(
            run(), timeout if timeout is not None else self.config.index.timeout, "index rebuild"
        )

    async def index_embeddings(
        self,
        scope: ScopeQuery = None,
        timeout: float | None = None,
        cancel: asyncio.Event | None = None,
    ) -> EmbedStats:
        """Compute vectors for entries that lack one. Stops early if the provider fails."""
        self._ensure_started()
        scopes = self._scopes(scope)
        stats = EmbedStats()
        if self.provider is None:
            stats.errors.append("no embedding provider configured")
            logger.warning("Skipping embedding pass: no provider configured")
            return stats

        async def run() -> EmbedStats:
            for s in scopes:
                await self._embed_scope(s, stats, cancel)
            return stats

        try:
            await self._bounded(
                run(), timeout if timeout is not None else self.config.index.timeout, "embedding"
            )
        except EmbeddingUnavailable as e:
            stats.errors.append(str(e))
            logger.warning("Embedding pass stopped: %s", e)
        stats.remaining = sum(
            1 for e in self.index.snapshot.entries(scopes) if e.embedding is None
        )
        logger.info("Embedding pass: %d embedded, %d remaining", stats.embedded, stats.remaining)
        return stats

    async def _embed_scope(
        self, scope: Scope, stats: EmbedStats, cancel: asyncio.Event | None
    ) -> None:
        store = self.stores[scope]
        pending = [e for e in self.index.snapshot.scope_entries(scope).values() if e.embedding is None]
        batch_size = max(1, self.config.search.batch_size)

        for start in range(0, len(pending), batch_size):
            if cancel is not None and cancel.is_set():
                raise asyncio.CancelledError("embedding pass cancelled")
            computed: dict[str, tuple[str, tuple[float, ...]]] = {}
            for entry in pending[start : start + batch_size]:
                try:
                    record = store.read(entry.id)
                except (RecordNotFound, ValidationError) as e:
                    stats.errors.append(f"{entry.id}: {e}")
                    continue
                vector = await embed_text(self.provider, record.embedding_text)
                computed[entry.id] = (record.content_hash, vector)

            async with self._get_lane_lock(scope):
                # Drop vectors whose record changed while we were embedding.
                current = self.index.snapshot.scope_entries(scope)
                fresh = {
                    entry_id: vector
                    for entry_id, (digest, vector) in computed.items()
                    if entry_id in current and current[entry_id].hash == digest
                }
                stats.embedded += self.index.set_embeddings(scope, fresh)
