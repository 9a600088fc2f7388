"""Shared fixtures: an isolated scope layout and a deterministic embedder."""

from __future__ import annotations

import asyncio
import hashlib
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from keepsake.config import KeepsakeConfig
from keepsake.core import MemoryEngine
from keepsake.errors import EmbeddingUnavailable
from keepsake.memory.records import MemoryRecord, MemoryType, Scope, render_record
from keepsake.memory.search import tokenize

T0 = datetime(2026, 1, 1, 10, 0, tzinfo=timezone.utc)


class KeywordEmbedder:
    """Bag-of-words vectors hashed into a fixed width; shared terms raise the cosine."""

    DIM = 64

    def __init__(self, fail: bool = False, delay: float = 0.0):
        self.fail = fail
        self.delay = delay
        self.calls = 0

    @property
    def name(self) -> str:
        return "keyword"

    async def embed(self, text: str) -> list[float]:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise EmbeddingUnavailable("embedder offline")
        vec = [0.0] * self.DIM
        for token in tokenize(text):
            vec[int(hashlib.md5(token.encode()).hexdigest(), 16) % self.DIM] += 1.0
        if not any(vec):
            vec[0] = 1.0
        return vec


def make_record(
    record_id: str = "",
    type: MemoryType | str = MemoryType.DECISION,
    title: str = "Use Redis for caching",
    content: str = "We cache session data in Redis.",
    scope: Scope | str = Scope.PROJECT,
    tags: list[str] | None = None,
    links: list[str] | None = None,
    updated: datetime | None = None,
    **kwargs,
) -> MemoryRecord:
    return MemoryRecord(
        id=record_id,
        type=type,
        scope=scope,
        title=title,
        content=content,
        tags=list(tags or []),
        links=list(links or []),
        created_at=T0,
        updated_at=updated or T0,
        **kwargs,
    )


def write_record_file(root: Path, record: MemoryRecord) -> Path:
    path = root / "permanent" / f"{record.id}.md"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(render_record(record), encoding="utf-8")
    return path


def later(minutes: int) -> datetime:
    return T0 + timedelta(minutes=minutes)


@pytest.fixture
def repo(tmp_path: Path) -> Path:
    root = tmp_path / "repo"
    (root / ".git").mkdir(parents=True)
    return root


@pytest.fixture
def config(tmp_path: Path) -> KeepsakeConfig:
    config = KeepsakeConfig()
    config.scopes.user_dir = tmp_path / "home" / ".claude" / "memory"
    config.embedding.provider = "none"
    return config


@pytest.fixture
def engine(config: KeepsakeConfig, repo: Path) -> MemoryEngine:
    e = MemoryEngine(config, cwd=repo)
    e.start()
    yield e
    e.close()


@pytest.fixture
def embedder() -> KeywordEmbedder:
    return KeywordEmbedder()


@pytest.fixture
def semantic_engine(config: KeepsakeConfig, repo: Path, embedder: KeywordEmbedder) -> MemoryEngine:
    e = MemoryEngine(config, cwd=repo, provider=embedder)
    e.start()
    yield e
    e.close()
