"""Memory record model: types, on-disk format, validation.

Records are markdown files with YAML frontmatter. The filename stem is the
canonical id; the body is the record content.
"""

from __future__ import annotations

import hashlib
import re
import unicodedata
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

import frontmatter

from keepsake.errors import FieldError, ValidationError

MAX_SLUG_LENGTH = 80


class MemoryType(str, Enum):
    HUB = "hub"
    DECISION = "decision"
    GOTCHA = "gotcha"
    LEARNING = "learning"
    ARTIFACT = "artifact"


class Scope(str, Enum):
    USER = "user"
    PROJECT = "project"
    LOCAL = "local"
    ENTERPRISE = "enterprise"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


SEVERITY_TYPES = frozenset({MemoryType.GOTCHA, MemoryType.LEARNING})


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


@dataclass
class MemoryRecord:
    """A single persisted memory."""

    id: str
    type: MemoryType
    scope: Scope
    title: str
    content: str
    tags: list[str] = field(default_factory=list)
    links: list[str] = field(default_factory=list)
    severity: Severity | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    source: str | None = None
    project: str | None = None
    embedding: list[float] | None = None

    @property
    def embedding_text(self) -> str:
        return f"{self.title}\n\n{self.content}"

    @property
    def content_hash(self) -> str:
        return content_hash(self.embedding_text)


# ── Slugs & ids ──────────────────────────────────────────────


def slugify(title: str) -> str:
    """Lowercase ascii slug: diacritics stripped, runs of spaces to one hyphen."""
    text = unicodedata.normalize("NFKD", str(title or "").strip().lower())
    text = "".join(c for c in text if not unicodedata.combining(c))
    text = re.sub(r"[^a-z0-9\s-]", "", text)
    text = re.sub(r"\s+", "-", text)
    text = re.sub(r"-+", "-", text).strip("-")
    if len(text) > MAX_SLUG_LENGTH:
        text = text[:MAX_SLUG_LENGTH].rstrip("-")
    return text or "untitled"


def generate_id(type: MemoryType | str, title: str, taken: set[str] | frozenset[str]) -> str:
    """`<type>-<slug>`, suffixed `-1`, `-2`, ... until unused."""
    base = f"{MemoryType(type).value}-{slugify(title)}"
    if base not in taken:
        return base
    suffix = 1
    while f"{base}-{suffix}" in taken:
        suffix += 1
    return f"{base}-{suffix}"


def content_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()[:16]


# ── Timestamps ───────────────────────────────────────────────


def parse_timestamp(value: Any) -> datetime | None:
    """Accept datetimes, dates and ISO 8601 strings; naive values are UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        dt = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def format_timestamp(value: datetime | None) -> str:
    return value.isoformat() if value else ""


# ── Validation ───────────────────────────────────────────────


def _enum_error(name: str, enum_cls: type[Enum]) -> FieldError:
    allowed = ", ".join(m.value for m in enum_cls)
    return FieldError(name, f"must be one of: {allowed}")


def _coerce(enum_cls: type[Enum], value: Any) -> Enum | None:
    try:
        return enum_cls(value)
    except ValueError:
        return None


def validate_record(record: MemoryRecord) -> list[FieldError]:
    """Structural checks only. Link targets are checked against the corpus by the engine."""
    errors: list[FieldError] = []

    if not isinstance(record.title, str) or not record.title.strip():
        errors.append(FieldError("title", "title is required and must be a non-empty string"))
    if not isinstance(record.content, str) or not record.content.strip():
        errors.append(FieldError("content", "content is required and must be a non-empty string"))
    if not isinstance(record.id, str) or not record.id.strip():
        errors.append(FieldError("id", "id is required"))
    elif not re.fullmatch(r"[A-Za-z0-9][A-Za-z0-9._-]*", record.id):
        errors.append(FieldError("id", "id may only contain letters, digits, '.', '_' and '-'"))

    mtype = _coerce(MemoryType, record.type)
    if mtype is None:
        errors.append(_enum_error("type", MemoryType))
    if _coerce(Scope, record.scope) is None:
        errors.append(_enum_error("scope", Scope))

    if record.severity is not None:
        if _coerce(Severity, record.severity) is None:
            errors.append(_enum_error("severity", Severity))
        elif mtype is not None and mtype not in SEVERITY_TYPES:
            errors.append(FieldError("severity", "severity is only allowed on gotcha and learning"))

    if not isinstance(record.tags, list) or not all(
        isinstance(t, str) and t.strip() for t in record.tags
    ):
        errors.append(FieldError("tags", "tags must be a list of non-empty strings"))
    if not isinstance(record.links, list) or not all(
        isinstance(link, str) and link.strip() for link in record.links
    ):
        errors.append(FieldError("links", "links must be a list of non-empty strings"))
    elif record.id in record.links:
        errors.append(FieldError("links", "a record cannot link to itself"))

    if record.created_at is None:
        errors.append(FieldError("created", "created must be a valid ISO 8601 timestamp"))
    if record.updated_at is None:
        errors.append(FieldError("updated", "updated must be a valid ISO 8601 timestamp"))
    if record.created_at and record.updated_at and record.updated_at < record.created_at:
        errors.append(FieldError("updated", "updated must not be earlier than created"))

    return errors


def normalize_record(record: MemoryRecord) -> MemoryRecord:
    """Coerce enum fields and collapse duplicate tags/links, keeping order."""
    record.type = _coerce(MemoryType, record.type) or record.type
    record.scope = _coerce(Scope, record.scope) or record.scope
    if isinstance(record.content, str):
        record.content = record.content.strip()
    if record.severity is not None:
        record.severity = _coerce(Severity, record.severity) or record.severity
    if isinstance(record.tags, list):
        record.tags = list(dict.fromkeys(t.strip() for t in record.tags if isinstance(t, str)))
    if isinstance(record.links, list):
        record.links = list(dict.fromkeys(record.links))
    return record


# ── Parse / render ───────────────────────────────────────────


def _as_list(value: Any) -> list:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    if isinstance(value, str):
        return [v.strip() for v in value.split(",") if v.strip()]
    return [value]


def parse_record(text: str, record_id: str, scope: Scope | str) -> MemoryRecord:
    """Parse a markdown file body into a record, raising ValidationError if malformed."""
    try:
        post = frontmatter.loads(text)
    except Exception as e:
        raise ValidationError([FieldError("frontmatter", f"unparseable frontmatter: {e}")]) from e

    meta = dict(post.metadata)
    if not meta:
        raise ValidationError([FieldError("frontmatter", "missing frontmatter")])

    declared_id = meta.get("id")
    if declared_id is not None and str(declared_id) != record_id:
        raise ValidationError(
            [FieldError("id", f"frontmatter id {declared_id!r} does not match file {record_id!r}")]
        )
    declared_scope = meta.get("scope")
    if declared_scope is not None and str(declared_scope) != Scope(scope).value:
        raise ValidationError(
            [FieldError("scope", f"record declares scope {declared_scope!r} but lives in {scope}")]
        )

    record = MemoryRecord(
        id=record_id,
        type=meta.get("type"),
        scope=Scope(scope),
        title=str(meta.get("title") or ""),
        content=post.content.strip(),
        tags=[str(t) for t in _as_list(meta.get("tags"))],
        links=[str(link) for link in _as_list(meta.get("links"))],
        severity=meta.get("severity"),
        created_at=parse_timestamp(meta.get("created")),
        updated_at=parse_timestamp(meta.get("updated")),
        source=meta.get("source"),
        project=meta.get("project"),
    )
    normalize_record(record)
    errors = validate_record(record)
    if errors:
        raise ValidationError(errors)
    return record


def render_record(record: MemoryRecord) -> str:
    """Serialize a record to markdown with frontmatter."""
    meta: dict[str, Any] = {
        "id": record.id,
        "title": record.title,
        "type": MemoryType(record.type).value,
        "scope": Scope(record.scope).value,
    }
    if record.project:
        meta["project"] = record.project
    meta["created"] = format_timestamp(record.created_at)
    meta["updated"] = format_timestamp(record.updated_at)
    meta["tags"] = list(record.tags)
    if record.severity is not None:
        meta["severity"] = Severity(record.severity).value
    if record.links:
        meta["links"] = list(record.links)
    if record.source:
        meta["source"] = record.source

    post = frontmatter.Post(record.content, **meta)
    return frontmatter.dumps(post, sort_keys=False) + "\n"


def load_record(path: Path, scope: Scope | str) -> MemoryRecord:
    return parse_record(path.read_text(encoding="utf-8"), path.stem, scope)
