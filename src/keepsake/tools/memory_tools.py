"""Memory tools for the host agent.

These coroutines are meant to be registered as MCP tools (or called
directly) so the assistant can search, record and link its own memories.
Failures the agent can act on come back as text; everything else raises.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from keepsake.errors import InvalidScope, RecordNotFound, Timeout, ValidationError
from keepsake.memory.records import MemoryRecord
from keepsake.memory.search import SearchOptions

if TYPE_CHECKING:
    from keepsake.core import MemoryEngine


def get_memory_tools(engine: MemoryEngine) -> dict[str, callable]:
    """Return a dict of tool_name -> async callable for memory operations."""

    async def search_memories(
        query: str,
        scope: str | None = None,
        types: list[str] | None = None,
        tags: list[str] | None = None,
        exclude: list[str] | None = None,
        limit: int = 10,
    ) -> str:
        """Search memories by keyword and meaning across the visible scopes."""
        options = SearchOptions(
            types=set(types) if types else None,
            tags=set(tags) if tags else None,
            avoid_ids=set(exclude or ()),
            limit=limit,
        )
        try:
            results = await engine.search(query, scope, options)
        except (InvalidScope, ValidationError, Timeout) as e:
            return f"Search failed: {e}"
        if not results:
            return f"No memories match '{query}'"
        lines = [f"Found {len(results)} memories:"]
        for r in results:
            lines.append(f"- [{r.type.value}] {r.title} ({r.id}, {r.scope.value}, {r.score:.2f})")
        return "\n".join(lines)

    async def remember(
        type: str,
        title: str,
        content: str,
        tags: list[str] | None = None,
        links: list[str] | None = None,
        scope: str | None = None,
        severity: str | None = None,
        source: str | None = None,
    ) -> str:
        """Save a new memory. Without explicit links it is auto-linked to similar ones."""
        record = MemoryRecord(
            id="",
            type=type,
            scope=scope or "",
            title=title,
            content=content,
            tags=list(tags or ()),
            links=list(links or ()),
            severity=severity,
            source=source,
        )
        try:
            record_id = await engine.ingest(record)
        except (ValidationError, InvalidScope) as e:
            return f"Not saved: {e}"
        if links:
            return f"Saved {record_id}"
        edges = await engine.auto_link(record_id)
        if not edges:
            return f"Saved {record_id} (no related memories found; it is an orphan for now)"
        return f"Saved {record_id}, linked to {', '.join(e.target for e in edges)}"

    async def link_memories(source: str, target: str) -> str:
        """Add an explicit link from one memory to another."""
        try:
            edge = await engine.link(source, target)
        except (RecordNotFound, ValidationError) as e:
            return f"Not linked: {e}"
        if edge is None:
            return f"{source} already links to {target}"
        return f"Linked {source} -> {target}"

    async def orphans() -> str:
        """List memories with no incoming and no outgoing links."""
        ids = engine.check_cohesion()
        if not ids:
            return "No orphaned memories"
        return "Orphaned memories:\n" + "\n".join(f"- {i}" for i in ids)

    async def rebuild_index() -> str:
        """Re-derive the search index from the memory files on disk."""
        try:
            stats = await engine.rebuild_index()
        except Timeout as e:
            return f"Rebuild did not finish: {e}"
        text = f"Indexed {stats.entries} memories, skipped {stats.skipped}"
        if stats.errors:
            text += "\n" + "\n".join(f"- {e}" for e in stats.errors)
        return text

    return {
        "search_memories": search_memories,
        "remember": remember,
        "link_memories": link_memories,
        "orphans": orphans,
        "rebuild_index": rebuild_index,
    }
