"""Context injection: weight search hits per hook kind and pick what to surface.

``weight`` is a plain table lookup; every hook kind goes through the same
selection pipeline and only the configured multipliers differ.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass

from keepsake.config import HOOK_KINDS, InjectionConfig
from keepsake.memory.records import MemoryType
from keepsake.memory.search import SearchResult

logger = logging.getLogger(__name__)

TYPE_PRIORITY: dict[MemoryType, int] = {
    MemoryType.GOTCHA: 1,
    MemoryType.DECISION: 2,
    MemoryType.LEARNING: 3,
    MemoryType.HUB: 4,
    MemoryType.ARTIFACT: 5,
}

_LABELS = {
    MemoryType.GOTCHA: "Gotchas",
    MemoryType.DECISION: "Decisions",
    MemoryType.LEARNING: "Learnings",
    MemoryType.HUB: "Hubs",
    MemoryType.ARTIFACT: "Artifacts",
}


def weight(
    memory_type: MemoryType | str,
    hook_kind: str,
    multipliers: Mapping[str, Mapping[str, float]],
) -> float:
    """Multiplier for a memory type under a hook kind; 1.0 when unconfigured."""
    type_name = memory_type.value if isinstance(memory_type, MemoryType) else str(memory_type)
    return float(multipliers.get(type_name, {}).get(hook_kind, 1.0))


@dataclass
class Injection:
    """A search hit selected for injection."""

    result: SearchResult
    weighted_score: float

    @property
    def id(self) -> str:
        return self.result.id

    @property
    def type(self) -> MemoryType:
        return self.result.type

    @property
    def title(self) -> str:
        return self.result.title


class InjectionDeduplicator:
    """Remembers what a session has already been shown, keyed by (id, type)."""

    def __init__(self) -> None:
        self._seen: set[tuple[str, str]] = set()

    def should_inject(self, memory_id: str, memory_type: MemoryType | str) -> bool:
        key = (memory_id, MemoryType(memory_type).value)
        if key in self._seen:
            return False
        self._seen.add(key)
        return True

    def clear(self) -> None:
        self._seen.clear()

    def __len__(self) -> int:
        return len(self._seen)


class InjectionSelector:
    def __init__(self, config: InjectionConfig) -> None:
        self.config = config

    def select(
        self,
        results: Iterable[SearchResult],
        hook_kind: str,
        dedup: InjectionDeduplicator | None = None,
    ) -> list[Injection]:
        if not self.config.enabled:
            return []
        if hook_kind not in HOOK_KINDS:
            logger.debug("Unknown hook kind %r, multipliers default to 1.0", hook_kind)

        candidates: list[Injection] = []
        for result in results:
            type_config = self.config.types.get(result.type.value)
            if type_config is None or not type_config.enabled:
                continue
            weighted = result.score * weight(result.type, hook_kind, self.config.multipliers)
            if weighted < type_config.threshold:
                continue
            candidates.append(Injection(result, weighted))

        candidates.sort(key=lambda c: (TYPE_PRIORITY.get(c.type, 99), -c.weighted_score))

        counts: dict[MemoryType, int] = {}
        selected: list[Injection] = []
        for candidate in candidates:
            if len(selected) >= self.config.total_limit:
                break
            limit = self.config.types[candidate.type.value].limit
            if counts.get(candidate.type, 0) >= limit:
                continue
            if dedup is not None and not dedup.should_inject(candidate.id, candidate.type):
                continue
            counts[candidate.type] = counts.get(candidate.type, 0) + 1
            selected.append(candidate)
        return selected


def format_reminder(selected: Iterable[Injection]) -> str:
    """Group selected memories by type, highest priority type first."""
    grouped: dict[MemoryType, list[Injection]] = {}
    for item in selected:
        grouped.setdefault(item.type, []).append(item)
    if not grouped:
        return ""

    lines: list[str] = []
    for mtype in sorted(grouped, key=lambda t: TYPE_PRIORITY.get(t, 99)):
        lines.append(f"{_LABELS.get(mtype, mtype.value.title())}:")
        for item in grouped[mtype]:
            lines.append(f"  - {item.title} ({item.id})")
    return "\n".join(lines)
