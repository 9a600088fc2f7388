"""Link graph and linker.

Edges come from each record's ``links`` list, so the graph is always derived
from the index snapshot: an adjacency map keyed by id, with outgoing lists
and incoming sets. Records never hold references to each other.

Linking adds ids to a record's ``links``; title, content and timestamps are
left untouched. Orphans (no incoming and no outgoing edges) are reported by
``check_cohesion`` and never fixed automatically.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass

from keepsake.config import LinkingConfig
from keepsake.errors import FieldError, RecordNotFound, ValidationError
from keepsake.memory.embedding import cosine_matrix
from keepsake.memory.index import IndexEntry, MemoryIndex
from keepsake.memory.records import Scope
from keepsake.memory.search import HybridSearch, SearchOptions

logger = logging.getLogger(__name__)

DEFAULT_RELATION = "relates-to"
AUTO_LINK_RELATION = "auto-linked-by-similarity"


@dataclass(frozen=True)
class Edge:
    source: str
    target: str
    label: str = DEFAULT_RELATION


@dataclass(frozen=True)
class SuggestedLink:
    source: str
    target: str
    similarity: float


class LinkGraph:
    """Directed graph over record ids."""

    def __init__(self, nodes: Iterable[str] = ()) -> None:
        self._out: dict[str, list[str]] = {n: [] for n in nodes}
        self._in: dict[str, set[str]] = {n: set() for n in self._out}
        self.dangling: list[Edge] = []

    @classmethod
    def from_entries(cls, entries: Iterable[IndexEntry]) -> LinkGraph:
        """Build from index entries; the first entry seen for an id wins."""
        unique: dict[str, IndexEntry] = {}
        for entry in entries:
            unique.setdefault(entry.id, entry)
        graph = cls(unique)
        for entry in unique.values():
            for target in entry.links:
                if target not in graph._out:
                    graph.dangling.append(Edge(entry.id, target))
                    continue
                if target != entry.id:
                    graph._add(entry.id, target)
        return graph

    def _add(self, source: str, target: str) -> bool:
        if target in self._out[source]:
            return False
        self._out[source].append(target)
        self._in[target].add(source)
        return True

    @property
    def nodes(self) -> list[str]:
        return list(self._out)

    def has_node(self, node: str) -> bool:
        return node in self._out

    def has_edge(self, source: str, target: str) -> bool:
        return target in self._out.get(source, ())

    def add_edge(self, source: str, target: str) -> bool:
        """Add source -> target. False if it already existed."""
        if source == target:
            raise ValidationError([FieldError("links", "Cannot create self-referencing edge")])
        for node in (source, target):
            if node not in self._out:
                raise RecordNotFound(f"Node not found: {node}")
        return self._add(source, target)

    def remove_edge(self, source: str, target: str) -> bool:
        if not self.has_edge(source, target):
            return False
        self._out[source].remove(target)
        self._in[target].discard(source)
        return True

    def outgoing(self, node: str) -> list[str]:
        return list(self._out.get(node, ()))

    def incoming(self, node: str) -> set[str]:
        return set(self._in.get(node, ()))

    def neighbours(self, node: str) -> set[str]:
        return set(self._out.get(node, ())) | self._in.get(node, set())

    def degree(self, node: str) -> int:
        return len(self._out.get(node, ())) + len(self._in.get(node, ()))

    def edges(self) -> list[Edge]:
        return [Edge(s, t) for s, targets in self._out.items() for t in targets]

    def orphans(self) -> list[str]:
        return sorted(n for n in self._out if not self._out[n] and not self._in[n])


class GraphLinker:
    """Adds edges between records and reports cohesion.

    ``lane`` hands out the per-scope write lock so link writes serialize with
    every other write to the same scope.
    """

    def __init__(
        self,
        index: MemoryIndex,
        search: HybridSearch,
        config: LinkingConfig,
        lane: Callable[[Scope], asyncio.Lock],
    ) -> None:
        self.index = index
        self.search = search
        self.config = config
        self.lane = lane

    def graph(self, scopes: Sequence[Scope] | None = None) -> LinkGraph:
        return LinkGraph.from_entries(self.index.snapshot.entries(scopes))

    def check_cohesion(self, scopes: Sequence[Scope] | None = None) -> list[str]:
        """Ids with zero incoming and zero outgoing edges."""
        return self.graph(scopes).orphans()

    def _entry(self, record_id: str, scopes: Sequence[Scope] | None) -> IndexEntry:
        entry = self.index.snapshot.get(record_id, scopes)
        if entry is None:
            raise RecordNotFound(f"Memory not found: {record_id}")
        return entry

    async def auto_link(self, record_id: str, scopes: Sequence[Scope]) -> list[Edge]:
        """Link a record to its top-K most similar neighbours above the threshold."""
        entry = self._entry(record_id, scopes)
        query = " ".join([entry.title, *entry.tags])
        options = SearchOptions(
            avoid_ids={entry.id, *entry.links},
            limit=self.config.top_k,
            threshold=self.config.threshold,
            # A neighbour without a cached vector still qualifies on its lexical score.
            min_score=0.0,
            query_vector=entry.embedding,
        )
        hits = await self.search.search(query, scopes, options)
        targets = [hit.id for hit in hits]
        if not targets:
            logger.info("auto-link found no neighbours for %s", record_id)
            return []
        added = await self._append_links(entry, targets, scopes)
        edges = [Edge(record_id, t, AUTO_LINK_RELATION) for t in added]
        logger.info("auto-linked %s -> %s", record_id, ", ".join(added) or "(none)")
        return edges

    async def link(
        self, source: str, target: str, scopes: Sequence[Scope] | None = None
    ) -> Edge | None:
        """Explicit link. None when the edge already existed."""
        if source == target:
            raise ValidationError([FieldError("links", "Cannot create self-referencing link")])
        entry = self._entry(source, scopes)
        self._entry(target, scopes)
        added = await self._append_links(entry, [target], scopes)
        return Edge(source, target) if added else None

    async def unlink(self, source: str, target: str, scopes: Sequence[Scope] | None = None) -> bool:
        entry = self._entry(source, scopes)
        if target not in entry.links:
            return False
        await self._rewrite_links(entry, [t for t in entry.links if t != target])
        logger.info("Removed link %s -> %s", source, target)
        return True

    async def remove_references(self, target: str) -> list[Edge]:
        """Drop every link pointing at target; used when a record is deleted."""
        removed: list[Edge] = []
        for entry in list(self.index.snapshot.entries()):
            if target in entry.links:
                await self._rewrite_links(entry, [t for t in entry.links if t != target])
                removed.append(Edge(entry.id, target))
        if removed:
            logger.info("Pruned %d dangling links to %s", len(removed), target)
        return removed

    async def _append_links(
        self, entry: IndexEntry, targets: Sequence[str], scopes: Sequence[Scope] | None
    ) -> list[str]:
        async with self.lane(entry.scope):
            # Re-read under the lane lock; a concurrent writer may have linked already.
            current = self._entry(entry.id, [entry.scope])
            snapshot = self.index.snapshot
            added = [
                t
                for t in dict.fromkeys(targets)
                if t != current.id
                and t not in current.links
                and snapshot.get(t, scopes) is not None
            ]
            if added:
                self._write_links(current, [*current.links, *added])
            return added

    async def _rewrite_links(self, entry: IndexEntry, links: list[str]) -> None:
        async with self.lane(entry.scope):
            current = self._entry(entry.id, [entry.scope])
            self._write_links(current, links)

    def _write_links(self, entry: IndexEntry, links: list[str]) -> None:
        store = self.index.stores[entry.scope]
        record = store.read(entry.id)
        record.links = list(links)
        store.write(record)
        self.index.upsert(IndexEntry.from_record(record, entry.relative_path))

    def suggest_links(
        self,
        scopes: Sequence[Scope] | None = None,
        threshold: float = 0.75,
        limit: int = 20,
    ) -> list[SuggestedLink]:
        """Unlinked pairs whose cached vectors are similar, most similar first.

        Input for a periodic cohesion pass; nothing is written here.
        """
        graph = self.graph(scopes)
        entries = [e for e in self.index.snapshot.entries(scopes) if e.embedding]
        unique: dict[str, IndexEntry] = {}
        for e in entries:
            unique.setdefault(e.id, e)
        by_dim: dict[int, list[IndexEntry]] = {}
        for e in unique.values():
            by_dim.setdefault(len(e.embedding), []).append(e)

        suggestions: list[SuggestedLink] = []
        for group in by_dim.values():
            vectors = [e.embedding for e in group]
            for i, source in enumerate(group):
                sims = cosine_matrix(source.embedding, vectors[i + 1 :])
                for other, sim in zip(group[i + 1 :], sims):
                    if sim < threshold:
                        continue
                    if graph.has_edge(source.id, other.id) or graph.has_edge(other.id, source.id):
                        continue
                    suggestions.append(SuggestedLink(source.id, other.id, sim))

        suggestions.sort(key=lambda s: (-s.similarity, s.source, s.target))
        return suggestions[:limit]
