"""Embedding providers and vector math.

Embedding computation is a black box (text -> vector). Vectors are stored
normalized to unit length, keyed by the record's content hash, so a content
change invalidates the cached vector.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from typing import Protocol, runtime_checkable

import numpy as np

from keepsake.config import EmbeddingConfig
from keepsake.errors import EmbeddingUnavailable

logger = logging.getLogger(__name__)

# Embedding models typically take 2K-8K tokens; 6000 chars leaves headroom.
MAX_EMBEDDING_CONTENT_LENGTH = 6000


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Protocol that all embedding backends must implement."""

    @property
    def name(self) -> str: ...

    async def embed(self, text: str) -> list[float]:
        """Return a vector for text. Raise EmbeddingUnavailable on failure."""
        ...


def normalize(vector: Sequence[float]) -> tuple[float, ...]:
    arr = np.asarray(vector, dtype=np.float64)
    norm = np.linalg.norm(arr)
    if norm == 0:
        return tuple(arr.tolist())
    return tuple((arr / norm).tolist())


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity; 0.0 for empty, zero-length or mismatched vectors."""
    if not len(a) or not len(b) or len(a) != len(b):
        return 0.0
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    denom = np.linalg.norm(va) * np.linalg.norm(vb)
    if denom == 0:
        return 0.0
    return float(np.dot(va, vb) / denom)


def cosine_matrix(query: Sequence[float], vectors: Sequence[Sequence[float]]) -> list[float]:
    """Cosine of one query against many same-length vectors, in one numpy pass."""
    if not vectors:
        return []
    q = np.asarray(query, dtype=np.float64)
    m = np.asarray(vectors, dtype=np.float64)
    norms = np.linalg.norm(m, axis=1) * np.linalg.norm(q)
    dots = m @ q
    with np.errstate(divide="ignore", invalid="ignore"):
        sims = np.where(norms > 0, dots / norms, 0.0)
    return sims.tolist()


def truncate_for_embedding(text: str) -> str:
    """Cut long text at a word boundary near the limit."""
    if len(text) <= MAX_EMBEDDING_CONTENT_LENGTH:
        return text
    truncated = text[:MAX_EMBEDDING_CONTENT_LENGTH]
    last_space = truncated.rfind(" ")
    if last_space > MAX_EMBEDDING_CONTENT_LENGTH - 100:
        truncated = truncated[:last_space]
    return truncated + "..."


class OllamaEmbeddingProvider:
    """Embeddings from a local Ollama server (POST /api/embeddings)."""

    def __init__(
        self,
        model: str = "embeddinggemma:latest",
        base_url: str = "http://localhost:11434",
        timeout: float = 15.0,
    ) -> None:
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    @property
    def name(self) -> str:
        return f"ollama:{self.model}"

    async def embed(self, text: str) -> list[float]:
        import aiohttp

        if not text or not text.strip():
            raise EmbeddingUnavailable("Text cannot be empty")

        payload = {"model": self.model, "prompt": truncate_for_embedding(text)}
        try:
            async with aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            ) as session:
                async with session.post(f"{self.base_url}/api/embeddings", json=payload) as resp:
                    if resp.status != 200:
                        detail = resp.reason
                        try:
                            body = await resp.json()
                            detail = body.get("error", detail)
                        except (aiohttp.ContentTypeError, ValueError):
                            pass
                        raise EmbeddingUnavailable(f"Ollama API error: {detail}")
                    data = await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise EmbeddingUnavailable(f"Ollama unreachable at {self.base_url}: {e}") from e

        embedding = data.get("embedding") if isinstance(data, dict) else None
        if not embedding:
            raise EmbeddingUnavailable("Ollama returned no embedding")
        return embedding

    async def health_check(self) -> bool:
        try:
            await self.embed("ping")
        except EmbeddingUnavailable:
            return False
        return True


def create_provider(config: EmbeddingConfig) -> EmbeddingProvider | None:
    """Build the configured provider; None disables semantic scoring."""
    name = config.provider.lower()
    if name in ("", "none", "off"):
        return None
    if name == "ollama":
        return OllamaEmbeddingProvider(config.model, config.base_url, config.timeout)
    logger.warning("Unknown embedding provider %r, semantic search disabled", config.provider)
    return None


async def embed_text(provider: EmbeddingProvider | None, text: str) -> tuple[float, ...]:
    """Embed and normalize, mapping every provider failure to EmbeddingUnavailable."""
    if provider is None:
        raise EmbeddingUnavailable("No embedding provider configured")
    try:
        vector = await provider.embed(text)
    except EmbeddingUnavailable:
        raise
    except (OSError, ValueError, RuntimeError) as e:
        raise EmbeddingUnavailable(f"{provider.name} failed: {e}") from e
    if not vector:
        raise EmbeddingUnavailable(f"{provider.name} returned an empty vector")
    return normalize(vector)
