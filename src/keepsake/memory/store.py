"""Record store: one scope root's markdown files on disk.

Layout under a scope root:
    permanent/<id>.md     # one record per file, YAML frontmatter
    .versions/            # timestamped backups (10 per record)
    index.json            # derived index, see keepsake.memory.index
"""

from __future__ import annotations

import logging
import os
import re
import tempfile
from collections.abc import Iterator
from datetime import datetime
from pathlib import Path

import frontmatter

from keepsake.errors import RecordNotFound
from keepsake.memory.records import MemoryRecord, Scope, load_record, render_record

logger = logging.getLogger(__name__)

RECORDS_DIR = "permanent"
VERSIONS_DIR = ".versions"
MAX_VERSIONS = 10


def atomic_write_text(path: Path, text: str) -> None:
    """Write via a temp file in the same directory, then rename over the target."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


class RecordStore:
    """Read/write access to the records of a single scope."""

    def __init__(self, root: Path, scope: Scope) -> None:
        self.root = root
        self.scope = Scope(scope)

    # ── Initialization ────────────────────────────────────────

    def ensure_initialized(self) -> None:
        """Ensure base directories exist. Idempotent."""
        for d in [RECORDS_DIR, VERSIONS_DIR]:
            (self.root / d).mkdir(parents=True, exist_ok=True)

    @property
    def records_dir(self) -> Path:
        return self.root / RECORDS_DIR

    # ── Paths ─────────────────────────────────────────────────

    def path_for(self, record_id: str) -> Path:
        return self.records_dir / f"{record_id}.md"

    def relative_path(self, record_id: str) -> str:
        return f"{RECORDS_DIR}/{record_id}.md"

    def resolve(self, relative_path: str) -> Path:
        return self.root / relative_path

    def exists(self, record_id: str) -> bool:
        return self.path_for(record_id).is_file()

    # ── Reads ─────────────────────────────────────────────────

    def iter_files(self) -> Iterator[Path]:
        """Record files in stable order. Hidden and temp files are skipped."""
        if not self.records_dir.is_dir():
            return
        for path in sorted(self.records_dir.glob("*.md")):
            if path.name.startswith("."):
                continue
            yield path

    def read(self, record_id: str) -> MemoryRecord:
        path = self.path_for(record_id)
        if not path.is_file():
            raise RecordNotFound(f"{record_id} not found in {self.scope.value} scope")
        return load_record(path, self.scope)

    def read_content(self, relative_path: str) -> str:
        """Record body without frontmatter, for lexical matching. Unreadable files read as empty."""
        try:
            text = self.resolve(relative_path).read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            return ""
        try:
            return frontmatter.loads(text).content
        except Exception:
            logger.debug("Unparseable frontmatter in %s, matching raw text", relative_path)
            return text

    # ── Writes ────────────────────────────────────────────────

    def write(self, record: MemoryRecord) -> Path:
        """Persist a record, backing up any previous version first."""
        path = self.path_for(record.id)
        self.ensure_initialized()
        if path.exists():
            self._backup(path)
        atomic_write_text(path, render_record(record))
        logger.info("Wrote %s record %s", self.scope.value, record.id)
        return path

    def delete(self, record_id: str) -> None:
        path = self.path_for(record_id)
        if not path.exists():
            raise RecordNotFound(f"{record_id} not found in {self.scope.value} scope")
        self._backup(path)
        path.unlink()
        logger.info("Deleted %s record %s", self.scope.value, record_id)

    def _backup(self, path: Path) -> None:
        """Backup to .versions/, keep at most MAX_VERSIONS per record."""
        versions_dir = self.root / VERSIONS_DIR
        versions_dir.mkdir(exist_ok=True)
        ts = datetime.now().strftime("%Y%m%dT%H%M%S%f")
        (versions_dir / f"{path.stem}-{ts}.md").write_text(
            path.read_text(encoding="utf-8"), encoding="utf-8"
        )
        pattern = re.compile(rf"{re.escape(path.stem)}-\d{{8}}T\d{{12}}\.md")
        old = sorted(f for f in versions_dir.glob(f"{path.stem}-*.md") if pattern.fullmatch(f.name))
        for f in old[:-MAX_VERSIONS]:
            f.unlink()
