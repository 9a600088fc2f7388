"""Hybrid search: lexical term coverage blended with embedding cosine similarity.

Candidates come from the index snapshot, walked in scope precedence order and
de-duplicated by id (first occurrence wins). Type, tag and avoid-list filters
are applied before any scoring. A record with no cached vector scores 0 on
the semantic side but still competes on the lexical one; when the query
itself cannot be embedded, ranking falls back to lexical only.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from keepsake.config import SearchConfig
from keepsake.errors import EmbeddingUnavailable, FieldError, ValidationError
from keepsake.memory.embedding import EmbeddingProvider, cosine_matrix, embed_text
from keepsake.memory.index import IndexEntry, MemoryIndex
from keepsake.memory.records import MemoryType, Scope
from keepsake.memory.scopes import precedence

logger = logging.getLogger(__name__)

TITLE_WEIGHT = 0.5
TAG_WEIGHT = 0.3
CONTENT_WEIGHT = 0.2
PHRASE_BONUS = 0.1

STOPWORDS = frozenset(
    """
    a an and are as at be but by for from has have in into is it its of on or
    that the this to was were will with when where which while how what why
    """.split()
)

_TOKEN_RE = re.compile(r"[a-z0-9]+")


def tokenize(text: str) -> list[str]:
    """Lowercase alphanumeric terms, without stopwords and one-letter tokens."""
    return [t for t in _TOKEN_RE.findall(text.lower()) if len(t) > 1 and t not in STOPWORDS]


def lexical_score(query: str, title: str, tags: Iterable[str], content: str) -> float:
    """Share of query terms found in title, tags and content, weighted by field."""
    terms = set(tokenize(query))
    if not terms:
        return 0.0

    def coverage(text: str) -> float:
        return len(terms & set(tokenize(text))) / len(terms)

    score = (
        TITLE_WEIGHT * coverage(title)
        + TAG_WEIGHT * coverage(" ".join(tags))
        + CONTENT_WEIGHT * coverage(content)
    )
    phrase = query.strip().lower()
    if phrase and phrase in title.lower():
        score += PHRASE_BONUS
    return min(score, 1.0)


@dataclass
class SearchOptions:
    """Per-call search options. Unset numeric fields fall back to SearchConfig."""

    types: set[MemoryType] | None = None
    tags: set[str] | None = None
    avoid_ids: set[str] = field(default_factory=set)
    limit: int | None = None
    threshold: float | None = None
    min_score: float | None = None
    lexical_weight: float | None = None
    semantic_weight: float | None = None
    query_vector: Sequence[float] | None = None
    cancel: asyncio.Event | None = None


@dataclass
class SearchResult:
    """One ranked hit."""

    entry: IndexEntry
    score: float
    lexical: float
    semantic: float

    @property
    def id(self) -> str:
        return self.entry.id

    @property
    def scope(self) -> Scope:
        return self.entry.scope

    @property
    def type(self) -> MemoryType:
        return self.entry.type

    @property
    def title(self) -> str:
        return self.entry.title

    def to_dict(self) -> dict:
        return {
            "id": self.entry.id,
            "type": self.entry.type.value,
            "title": self.entry.title,
            "tags": list(self.entry.tags),
            "scope": self.entry.scope.value,
            "score": round(self.score, 4),
        }


class HybridSearch:
    """Ranks index entries against a query across an ordered scope list."""

    def __init__(
        self,
        index: MemoryIndex,
        config: SearchConfig,
        provider: EmbeddingProvider | None = None,
    ) -> None:
        self.index = index
        self.config = config
        self.provider = provider

    def candidates(self, scopes: Sequence[Scope], options: SearchOptions) -> list[IndexEntry]:
        """Hard-filtered, id-deduplicated entries in scope order."""
        snapshot = self.index.snapshot
        seen: set[str] = set()
        result: list[IndexEntry] = []
        wanted_tags = {t.lower() for t in options.tags} if options.tags else None
        for entry in snapshot.entries(scopes):
            if entry.id in seen:
                continue
            seen.add(entry.id)
            if entry.id in options.avoid_ids:
                continue
            if options.types and entry.type not in options.types:
                continue
            if wanted_tags and not wanted_tags & {t.lower() for t in entry.tags}:
                continue
            result.append(entry)
        return result

    async def _query_vector(self, query: str, options: SearchOptions) -> Sequence[float] | None:
        if options.query_vector is not None:
            return options.query_vector
        if self.provider is None or not query.strip():
            return None
        try:
            return await embed_text(self.provider, query)
        except EmbeddingUnavailable as e:
            logger.warning("Semantic scoring unavailable, using lexical only: %s", e)
            return None

    def _read_contents(self, batch: list[IndexEntry]) -> list[str]:
        contents = []
        for entry in batch:
            store = self.index.stores.get(entry.scope)
            contents.append(store.read_content(entry.relative_path) if store else "")
        return contents

    async def search(
        self,
        query: str,
        scopes: Sequence[Scope],
        options: SearchOptions | None = None,
    ) -> list[SearchResult]:
        options = options or SearchOptions()
        if not query.strip() and options.query_vector is None:
            raise ValidationError([FieldError("query", "query is required")])

        def pick(value, default):
            return default if value is None else value

        threshold = pick(options.threshold, self.config.threshold)
        min_score = pick(options.min_score, self.config.min_score)
        limit = pick(options.limit, self.config.limit)
        w_lex = pick(options.lexical_weight, self.config.lexical_weight)
        w_sem = pick(options.semantic_weight, self.config.semantic_weight)

        entries = self.candidates(scopes, options)
        query_vector = await self._query_vector(query, options)
        if query_vector is None:
            w_sem = 0.0
        total_weight = w_lex + w_sem
        if total_weight <= 0:
            raise ValidationError([FieldError("weights", "search weights must sum to more than 0")])

        results: list[SearchResult] = []
        batch_size = max(1, self.config.batch_size)
        for start in range(0, len(entries), batch_size):
            if options.cancel is not None and options.cancel.is_set():
                raise asyncio.CancelledError("search cancelled")
            batch = entries[start : start + batch_size]
            semantic = self._semantic_scores(query_vector, batch)
            # Record bodies are read off the event loop, one worker hop per batch.
            contents = await asyncio.to_thread(self._read_contents, batch)
            for entry, sem, content in zip(batch, semantic, contents):
                lex = lexical_score(query, entry.title, entry.tags, content)
                if lex < threshold and sem < threshold:
                    continue
                if lex <= 0 and sem <= 0:
                    continue
                combined = (w_lex * lex + w_sem * sem) / total_weight
                if combined < min_score:
                    continue
                results.append(SearchResult(entry=entry, score=combined, lexical=lex, semantic=sem))
            await asyncio.sleep(0)

        results.sort(
            key=lambda r: (-round(r.score, 9), precedence(r.entry.scope), -r.entry.updated_ts)
        )
        logger.debug("Search %r over %d candidates: %d hits", query[:50], len(entries), len(results))
        return results[:limit] if limit else results

    @staticmethod
    def _semantic_scores(
        query_vector: Sequence[float] | None, batch: list[IndexEntry]
    ) -> list[float]:
        scores = [0.0] * len(batch)
        if query_vector is None:
            return scores
        dim = len(query_vector)
        positions = [i for i, e in enumerate(batch) if e.embedding and len(e.embedding) == dim]
        if not positions:
            return scores
        sims = cosine_matrix(query_vector, [batch[i].embedding for i in positions])
        for i, sim in zip(positions, sims):
            scores[i] = max(0.0, sim)
        return scores
