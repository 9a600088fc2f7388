"""Entry point: python -m keepsake [reindex|orphans|embed]

- "reindex": Rebuild every visible scope's index from the files on disk
- "orphans": Print ids of memories with no links in or out
- "embed":   Compute missing embedding vectors (semantic index pass)
"""

from __future__ import annotations

import asyncio
import logging
import sys

from keepsake.config import load_config


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _build_engine():
    config = load_config()
    _setup_logging(config.log_level)

    from keepsake.core import MemoryEngine

    engine = MemoryEngine(config)
    engine.start()
    return engine


def _run_reindex() -> None:
    engine = _build_engine()
    try:
        stats = asyncio.run(engine.rebuild_index())
    finally:
        engine.close()
    print(f"entries={stats.entries} skipped={stats.skipped}")
    for error in stats.errors:
        print(f"  {error}")


def _run_orphans() -> None:
    engine = _build_engine()
    try:
        for record_id in engine.check_cohesion():
            print(record_id)
    finally:
        engine.close()


def _run_embed() -> None:
    engine = _build_engine()
    try:
        stats = asyncio.run(engine.index_embeddings())
    finally:
        engine.close()
    print(f"embedded={stats.embedded} remaining={stats.remaining}")
    for error in stats.errors:
        print(f"  {error}")


def main() -> None:
    cmd = sys.argv[1] if len(sys.argv) > 1 else ""

    if cmd == "reindex":
        _run_reindex()
    elif cmd == "orphans":
        _run_orphans()
    elif cmd == "embed":
        _run_embed()
    else:
        print("Usage: python -m keepsake [reindex|orphans|embed]")
        print("  reindex  Rebuild the index from memory files")
        print("  orphans  List memories with no links")
        print("  embed    Compute missing embedding vectors")
        sys.exit(1)


if __name__ == "__main__":
    main()
