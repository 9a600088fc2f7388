"""Tests for the memory engine facade."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from conftest import KeywordEmbedder, make_record, write_record_file
from keepsake.config import KeepsakeConfig
from keepsake.core import MemoryEngine
from keepsake.errors import InvalidScope, RecordNotFound, Timeout, ValidationError
from keepsake.memory.injection import InjectionDeduplicator
from keepsake.memory.records import MemoryType, Scope, Severity
from keepsake.memory.search import SearchOptions


class TestIngest:
    @pytest.mark.asyncio
    async def test_ingest_generates_id_and_persists(self, engine: MemoryEngine, repo: Path):
        record_id = await engine.ingest(make_record(title="Use Redis for caching"))
        assert record_id == "decision-use-redis-for-caching"
        path = repo / ".claude" / "memory" / "permanent" / f"{record_id}.md"
        assert path.exists()
        assert engine.entry(record_id).relative_path == f"permanent/{record_id}.md"

    @pytest.mark.asyncio
    async def test_default_scope_is_project_in_a_repo(self, engine: MemoryEngine):
        record_id = await engine.ingest(make_record(scope=""))
        assert engine.entry(record_id).scope is Scope.PROJECT

    @pytest.mark.asyncio
    async def test_missing_timestamps_are_filled(self, engine: MemoryEngine):
        record = make_record()
        record.created_at = None
        record.updated_at = None
        record_id = await engine.ingest(record)
        stored = engine.get(record_id)
        assert stored.created_at is not None
        assert stored.updated_at == stored.created_at

    @pytest.mark.asyncio
    async def test_same_title_gets_suffixed_ids(self, engine: MemoryEngine):
        first = await engine.ingest(make_record(title="Retry policy"))
        second = await engine.ingest(make_record(title="Retry policy", scope=Scope.USER))
        assert (first, second) == ("decision-retry-policy", "decision-retry-policy-1")

    @pytest.mark.asyncio
    async def test_duplicate_id_rejected_across_scopes(self, engine: MemoryEngine):
        await engine.ingest(make_record("decision-shared", scope=Scope.USER))
        with pytest.raises(ValidationError) as exc:
            await engine.ingest(make_record("decision-shared", scope=Scope.PROJECT))
        assert exc.value.errors[0].field == "id"

    @pytest.mark.asyncio
    async def test_dangling_link_rejected(self, engine: MemoryEngine):
        with pytest.raises(ValidationError) as exc:
            await engine.ingest(make_record(links=["decision-ghost"]))
        assert [e.field for e in exc.value.errors] == ["links"]
        assert engine.check_cohesion() == []

    @pytest.mark.asyncio
    async def test_invalid_fields_all_reported(self, engine: MemoryEngine):
        record = make_record(type="rumour", title="", severity="extreme")
        with pytest.raises(ValidationError) as exc:
            await engine.ingest(record)
        fields = {e.field for e in exc.value.errors}
        assert {"type", "title", "severity"} <= fields

    @pytest.mark.asyncio
    async def test_unknown_scope_is_a_validation_error(self, engine: MemoryEngine):
        with pytest.raises(ValidationError):
            await engine.ingest(make_record(scope="galaxy"))

    @pytest.mark.asyncio
    async def test_enterprise_unavailable_is_a_validation_error(self, engine: MemoryEngine):
        with pytest.raises(ValidationError) as exc:
            await engine.ingest(make_record(scope=Scope.ENTERPRISE))
        assert [e.field for e in exc.value.errors] == ["scope"]
        assert "enterprise" in exc.value.errors[0].message.lower()

    @pytest.mark.asyncio
    async def test_concurrent_ingest_same_scope(self, engine: MemoryEngine):
        ids = await asyncio.gather(
            *(engine.ingest(make_record(title="Flaky test")) for _ in range(5))
        )
        assert len(set(ids)) == 5
        assert len(engine.index.snapshot.scope_entries(Scope.PROJECT)) == 5


class TestUpdateDelete:
    @pytest.mark.asyncio
    async def test_update_bumps_updated(self, engine: MemoryEngine):
        record_id = await engine.ingest(make_record(type=MemoryType.GOTCHA))
        updated = await engine.update(record_id, content="New body.", severity="high")
        assert updated.content == "New body."
        assert updated.severity is Severity.HIGH
        assert updated.updated_at > updated.created_at
        assert engine.get(record_id).content == "New body."

    @pytest.mark.asyncio
    async def test_update_rejects_fixed_fields(self, engine: MemoryEngine):
        record_id = await engine.ingest(make_record())
        with pytest.raises(ValidationError):
            await engine.update(record_id, scope="user")

    @pytest.mark.asyncio
    async def test_content_edit_invalidates_embedding(self, semantic_engine: MemoryEngine):
        record_id = await semantic_engine.ingest(make_record())
        await semantic_engine.index_embeddings()
        assert semantic_engine.entry(record_id).embedding is not None

        await semantic_engine.update(record_id, tags=["cache"])
        assert semantic_engine.entry(record_id).embedding is not None
        await semantic_engine.update(record_id, content="Sessions moved to Postgres.")
        assert semantic_engine.entry(record_id).embedding is None

    @pytest.mark.asyncio
    async def test_delete_prunes_incoming_links(self, engine: MemoryEngine):
        target = await engine.ingest(make_record(title="Use Redis"))
        source = await engine.ingest(make_record(title="Redis pool", links=[target]))

        pruned = await engine.delete(target)
        assert [(e.source, e.target) for e in pruned] == [(source, target)]
        assert engine.get(source).links == []
        with pytest.raises(RecordNotFound):
            engine.get(target)


class TestSearch:
    @pytest.mark.asyncio
    async def test_user_before_project_on_ties(self, engine: MemoryEngine):
        same = dict(title="Cache policy", content="Expire cache keys hourly.")
        project = await engine.ingest(make_record("decision-cache-project", **same))
        user = await engine.ingest(make_record("decision-cache-user", scope=Scope.USER, **same))
        results = await engine.search("cache policy")
        assert [r.id for r in results] == [user, project]

    @pytest.mark.asyncio
    async def test_scope_argument(self, engine: MemoryEngine):
        await engine.ingest(make_record(title="Cache policy", scope=Scope.USER))
        assert await engine.search("cache policy", scope="project") == []
        assert len(await engine.search("cache policy", scope=["user", "project"])) == 1

    @pytest.mark.asyncio
    async def test_invalid_scope(self, engine: MemoryEngine):
        with pytest.raises(InvalidScope):
            await engine.search("cache", scope="galaxy")

    @pytest.mark.asyncio
    async def test_avoid_list(self, engine: MemoryEngine):
        top = await engine.ingest(make_record(title="Cache policy"))
        await engine.ingest(make_record(title="Cache warming"))
        results = await engine.search("cache policy", options=SearchOptions(avoid_ids={top}))
        assert top not in [r.id for r in results]
        assert results

    @pytest.mark.asyncio
    async def test_lexical_only_when_embedder_down(self, config: KeepsakeConfig, repo: Path):
        engine = MemoryEngine(config, cwd=repo, provider=KeywordEmbedder(fail=True))
        engine.start()
        record_id = await engine.ingest(make_record(title="Cache policy"))
        results = await engine.search("cache policy")
        assert [r.id for r in results] == [record_id]
        assert results[0].semantic == 0.0
        engine.close()

    @pytest.mark.asyncio
    async def test_timeout(self, config: KeepsakeConfig, repo: Path):
        engine = MemoryEngine(config, cwd=repo, provider=KeywordEmbedder(delay=1.0))
        engine.start()
        await engine.ingest(make_record(title="Cache policy"))
        with pytest.raises(Timeout):
            await engine.search("cache policy", timeout=0.05)
        engine.close()


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_restart_reads_persisted_index(self, config: KeepsakeConfig, repo: Path):
        first = MemoryEngine(config, cwd=repo)
        first.start()
        record_id = await first.ingest(make_record(title="Cache policy"))
        first.close()

        second = MemoryEngine(config, cwd=repo)
        second.start()
        assert second.entry(record_id).title == "Cache policy"
        second.close()

    def test_legacy_index_on_start(self, config: KeepsakeConfig, repo: Path):
        root = repo / ".claude" / "memory"
        record = make_record("decision-use-redis")
        path = write_record_file(root, record)
        (root / "index.json").write_text(
            json.dumps({"entries": [{"id": "decision-use-redis", "file": str(path)}]})
        )
        engine = MemoryEngine(config, cwd=repo)
        engine.start()
        entry = engine.entry("decision-use-redis")
        assert entry.relative_path == "permanent/decision-use-redis.md"
        assert engine.get("decision-use-redis").title == record.title

    @pytest.mark.asyncio
    async def test_rebuild_index(self, engine: MemoryEngine, repo: Path):
        root = repo / ".claude" / "memory"
        await engine.ingest(make_record("decision-a"))
        write_record_file(root, make_record("decision-b"))
        (root / "permanent" / "decision-bad.md").write_text("---\ntitle: [unclosed\n---\n")

        stats = await engine.rebuild_index()
        assert stats.entries == 2
        assert stats.skipped == 1
        assert engine.entry("decision-b").id == "decision-b"

    @pytest.mark.asyncio
    async def test_rebuild_reports_dangling_links(self, engine: MemoryEngine, repo: Path, caplog):
        root = repo / ".claude" / "memory"
        write_record_file(root, make_record("decision-x", links=["decision-gone"]))

        with caplog.at_level("WARNING", logger="keepsake.memory.index"):
            stats = await engine.rebuild_index()
        assert stats.entries == 1
        assert stats.errors == ["dangling link decision-x -> decision-gone"]
        assert "decision-gone" in caplog.text

    @pytest.mark.asyncio
    async def test_rebuild_waits_for_writers(self, engine: MemoryEngine):
        lock = engine._get_lane_lock(Scope.PROJECT)
        await lock.acquire()
        rebuild = asyncio.create_task(engine.rebuild_index(scope="project"))
        await asyncio.sleep(0.01)
        assert not rebuild.done()
        lock.release()
        stats = await rebuild
        assert stats.entries == 0

    @pytest.mark.asyncio
    async def test_rebuild_timeout(self, engine: MemoryEngine):
        lock = engine._get_lane_lock(Scope.PROJECT)
        await lock.acquire()
        try:
            with pytest.raises(Timeout):
                await engine.rebuild_index(scope="project", timeout=0.05)
        finally:
            lock.release()


class TestEmbeddings:
    @pytest.mark.asyncio
    async def test_index_embeddings(self, semantic_engine: MemoryEngine, embedder: KeywordEmbedder):
        await semantic_engine.ingest(make_record(title="Cache policy"))
        await semantic_engine.ingest(make_record(title="Retry policy"))
        stats = await semantic_engine.index_embeddings()
        assert stats.embedded == 2
        assert stats.remaining == 0
        assert embedder.calls == 2

        again = await semantic_engine.index_embeddings()
        assert again.embedded == 0
        assert embedder.calls == 2

    @pytest.mark.asyncio
    async def test_embedder_down_stops_cleanly(self, config: KeepsakeConfig, repo: Path):
        engine = MemoryEngine(config, cwd=repo, provider=KeywordEmbedder(fail=True))
        engine.start()
        await engine.ingest(make_record(title="Cache policy"))
        stats = await engine.index_embeddings()
        assert stats.embedded == 0
        assert stats.remaining == 1
        assert stats.errors
        engine.close()

    @pytest.mark.asyncio
    async def test_no_provider(self, engine: MemoryEngine):
        await engine.ingest(make_record(title="Cache policy"))
        stats = await engine.index_embeddings()
        assert stats.embedded == 0
        assert stats.errors == ["no embedding provider configured"]


class TestInject:
    @pytest.mark.asyncio
    async def test_inject_weights_by_hook(self, engine: MemoryEngine):
        await engine.ingest(
            make_record(
                type=MemoryType.GOTCHA,
                title="Redis pool exhaustion",
                content="Size the pool above worker count.",
                tags=["redis"],
            )
        )
        await engine.ingest(make_record(type=MemoryType.HUB, title="Redis architecture"))

        dedup = InjectionDeduplicator()
        selected = await engine.inject("redis pool", "Edit", dedup=dedup)
        assert [s.type for s in selected] == [MemoryType.GOTCHA]
        assert selected[0].weighted_score == pytest.approx(selected[0].result.score * 1.5)
        assert await engine.inject("redis pool", "Edit", dedup=dedup) == []
