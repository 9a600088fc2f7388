"""Tests for the host-facing memory tools."""

from __future__ import annotations

import pytest

from keepsake.core import MemoryEngine
from keepsake.tools.memory_tools import get_memory_tools


@pytest.fixture
def tools(engine: MemoryEngine) -> dict:
    return get_memory_tools(engine)


class TestMemoryTools:
    def test_tool_names(self, tools: dict):
        assert set(tools) == {"search_memories", "remember", "link_memories", "orphans", "rebuild_index"}

    @pytest.mark.asyncio
    async def test_remember_then_search(self, tools: dict):
        result = await tools["remember"](
            type="gotcha",
            title="Redis pool exhaustion",
            content="Size the pool above the worker count.",
            tags=["redis"],
            severity="high",
        )
        assert "gotcha-redis-pool-exhaustion" in result
        assert "orphan" in result

        found = await tools["search_memories"]("redis pool")
        assert "gotcha-redis-pool-exhaustion" in found
        assert "[gotcha]" in found

    @pytest.mark.asyncio
    async def test_remember_auto_links(self, tools: dict):
        await tools["remember"](type="decision", title="Use Redis connection pool", content="Pool it.")
        result = await tools["remember"](
            type="gotcha", title="Redis connection pool exhaustion", content="Watch the pool size."
        )
        assert "linked to decision-use-redis-connection-pool" in result
        assert await tools["orphans"]() == "No orphaned memories"

    @pytest.mark.asyncio
    async def test_remember_invalid(self, tools: dict):
        result = await tools["remember"](type="rumour", title="x", content="y")
        assert result.startswith("Not saved:")

    @pytest.mark.asyncio
    async def test_search_bad_scope(self, tools: dict):
        result = await tools["search_memories"]("redis", scope="galaxy")
        assert result.startswith("Search failed:")

    @pytest.mark.asyncio
    async def test_link_and_orphans(self, tools: dict):
        await tools["remember"](type="decision", title="Use Postgres", content="Orders need transactions.")
        await tools["remember"](type="learning", title="Frontend bundles", content="Split vendor chunks.")
        assert "decision-use-postgres" in await tools["orphans"]()

        result = await tools["link_memories"]("learning-frontend-bundles", "decision-use-postgres")
        assert result == "Linked learning-frontend-bundles -> decision-use-postgres"
        assert await tools["orphans"]() == "No orphaned memories"
        again = await tools["link_memories"]("learning-frontend-bundles", "decision-use-postgres")
        assert "already links" in again
        missing = await tools["link_memories"]("learning-frontend-bundles", "decision-ghost")
        assert missing.startswith("Not linked:")

    @pytest.mark.asyncio
    async def test_rebuild_index(self, tools: dict):
        await tools["remember"](type="decision", title="Use Postgres", content="Orders need transactions.")
        assert (await tools["rebuild_index"]()).startswith("Indexed 1 memories, skipped 0")
