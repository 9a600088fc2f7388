"""Tests for the on-disk record store."""

from __future__ import annotations

from pathlib import Path

import pytest

from conftest import make_record
from keepsake.errors import RecordNotFound
from keepsake.memory.records import Scope
from keepsake.memory.store import MAX_VERSIONS, RecordStore, atomic_write_text


@pytest.fixture
def store(tmp_path: Path) -> RecordStore:
    return RecordStore(tmp_path / "memory", Scope.PROJECT)


class TestEnsureInitialized:
    def test_creates_directory_structure(self, store: RecordStore):
        store.ensure_initialized()
        assert (store.root / "permanent").is_dir()
        assert (store.root / ".versions").is_dir()

    def test_idempotent(self, store: RecordStore):
        store.ensure_initialized()
        store.ensure_initialized()
        assert store.records_dir.is_dir()


class TestReadWrite:
    def test_write_and_read(self, store: RecordStore):
        store.write(make_record("decision-use-redis"))
        assert store.exists("decision-use-redis")
        assert store.relative_path("decision-use-redis") == "permanent/decision-use-redis.md"
        record = store.read("decision-use-redis")
        assert record.title == "Use Redis for caching"
        assert record.scope is Scope.PROJECT

    def test_read_missing(self, store: RecordStore):
        with pytest.raises(RecordNotFound):
            store.read("decision-nope")

    def test_read_content_strips_frontmatter(self, store: RecordStore):
        store.write(make_record("decision-use-redis", content="Body only."))
        assert store.read_content("permanent/decision-use-redis.md") == "Body only."

    def test_read_content_missing_file_is_empty(self, store: RecordStore):
        assert store.read_content("permanent/ghost.md") == ""

    def test_iter_files_skips_hidden(self, store: RecordStore):
        store.write(make_record("decision-b"))
        store.write(make_record("decision-a"))
        (store.records_dir / ".decision-c.md.tmp").write_text("partial")
        (store.records_dir / ".hidden.md").write_text("x")
        assert [p.stem for p in store.iter_files()] == ["decision-a", "decision-b"]


class TestVersioning:
    def test_backup_on_overwrite(self, store: RecordStore):
        record = make_record("decision-x")
        store.write(record)
        record.content = "Changed."
        store.write(record)
        versions = list((store.root / ".versions").glob("decision-x-*.md"))
        assert len(versions) == 1
        assert "We cache session data" in versions[0].read_text()

    def test_keeps_at_most_max_versions(self, store: RecordStore):
        record = make_record("decision-x")
        for i in range(MAX_VERSIONS + 3):
            record.content = f"Revision {i}"
            store.write(record)
        versions = list((store.root / ".versions").glob("decision-x-*.md"))
        assert len(versions) == MAX_VERSIONS

    def test_similar_ids_do_not_share_backups(self, store: RecordStore):
        store.write(make_record("decision-x"))
        store.write(make_record("decision-x-1"))
        for _ in range(MAX_VERSIONS + 2):
            store.write(make_record("decision-x-1"))
        store.write(make_record("decision-x"))
        versions = (store.root / ".versions").glob("decision-x-2*.md")
        assert len(list(versions)) == 1
        assert len(list((store.root / ".versions").glob("decision-x-1-*.md"))) == MAX_VERSIONS

    def test_delete_backs_up(self, store: RecordStore):
        store.write(make_record("decision-x"))
        store.delete("decision-x")
        assert not store.exists("decision-x")
        assert len(list((store.root / ".versions").glob("decision-x-*.md"))) == 1


class TestAtomicWrite:
    def test_replaces_content(self, tmp_path: Path):
        path = tmp_path / "sub" / "index.json"
        atomic_write_text(path, "one")
        atomic_write_text(path, "two")
        assert path.read_text() == "two"
        assert [p.name for p in path.parent.iterdir()] == ["index.json"]
