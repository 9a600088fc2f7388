"""Tests for record parsing, rendering and validation."""

from __future__ import annotations

import pytest

from conftest import T0, make_record, later
from keepsake.errors import ValidationError
from keepsake.memory.records import (
    MemoryType,
    Scope,
    Severity,
    content_hash,
    generate_id,
    parse_record,
    parse_timestamp,
    render_record,
    slugify,
    validate_record,
)


class TestIds:
    def test_slugify(self):
        assert slugify("Redis Pool: Exhaustion!") == "redis-pool-exhaustion"
        assert slugify("  Café   au lait ") == "cafe-au-lait"
        assert slugify("!!!") == "untitled"

    def test_generate_id_suffixes_on_collision(self):
        taken = {"gotcha-redis-pool"}
        assert generate_id("gotcha", "Redis pool", set()) == "gotcha-redis-pool"
        assert generate_id("gotcha", "Redis pool", taken) == "gotcha-redis-pool-1"
        taken.add("gotcha-redis-pool-1")
        assert generate_id(MemoryType.GOTCHA, "Redis pool", taken) == "gotcha-redis-pool-2"

    def test_content_hash_is_short_and_stable(self):
        assert len(content_hash("abc")) == 16
        assert content_hash("abc") == content_hash("abc")
        assert content_hash("abc") != content_hash("abd")


class TestTimestamps:
    def test_parse_z_suffix(self):
        assert parse_timestamp("2026-01-01T10:00:00Z") == T0

    def test_naive_is_utc(self):
        assert parse_timestamp("2026-01-01T10:00:00") == T0

    def test_garbage(self):
        assert parse_timestamp("yesterday") is None
        assert parse_timestamp(None) is None


class TestValidation:
    def test_valid_record(self):
        assert validate_record(make_record("decision-redis")) == []

    def test_missing_title_and_content(self):
        errors = validate_record(make_record("decision-x", title=" ", content=""))
        assert {e.field for e in errors} == {"title", "content"}

    def test_bad_enums(self):
        errors = validate_record(make_record("decision-x", type="rumour", scope="galaxy"))
        assert {e.field for e in errors} == {"type", "scope"}

    def test_severity_only_on_gotcha_and_learning(self):
        errors = validate_record(make_record("decision-x", severity=Severity.HIGH))
        assert [e.field for e in errors] == ["severity"]
        ok = make_record("gotcha-x", type=MemoryType.GOTCHA, severity=Severity.HIGH)
        assert validate_record(ok) == []

    def test_self_link_rejected(self):
        errors = validate_record(make_record("decision-x", links=["decision-x"]))
        assert [e.field for e in errors] == ["links"]

    def test_updated_before_created(self):
        record = make_record("decision-x")
        record.created_at = later(5)
        errors = validate_record(record)
        assert [e.field for e in errors] == ["updated"]


class TestParseRender:
    def test_render_then_parse(self):
        record = make_record(
            "gotcha-redis-pool",
            type=MemoryType.GOTCHA,
            title="Redis pool exhaustion",
            content="Pool size must exceed worker count.",
            tags=["redis", "cache"],
            links=["decision-use-redis"],
            severity=Severity.HIGH,
            source="app/cache.py",
        )
        text = render_record(record)
        assert text.startswith("---\n")
        assert "id: gotcha-redis-pool" in text

        parsed = parse_record(text, "gotcha-redis-pool", Scope.PROJECT)
        assert parsed.type is MemoryType.GOTCHA
        assert parsed.severity is Severity.HIGH
        assert parsed.tags == ["redis", "cache"]
        assert parsed.links == ["decision-use-redis"]
        assert parsed.created_at == T0
        assert parsed.source == "app/cache.py"
        assert parsed.content_hash == record.content_hash

    def test_missing_frontmatter(self):
        with pytest.raises(ValidationError):
            parse_record("just text", "decision-x", Scope.USER)

    def test_id_mismatch(self):
        text = render_record(make_record("decision-a"))
        with pytest.raises(ValidationError) as exc:
            parse_record(text, "decision-b", Scope.PROJECT)
        assert exc.value.errors[0].field == "id"

    def test_scope_mismatch(self):
        text = render_record(make_record("decision-a", scope=Scope.USER))
        with pytest.raises(ValidationError) as exc:
            parse_record(text, "decision-a", Scope.PROJECT)
        assert exc.value.errors[0].field == "scope"

    def test_comma_separated_tags(self):
        text = (
            "---\ntitle: Pin numpy\ntype: decision\ncreated: 2026-01-01T10:00:00Z\n"
            "updated: 2026-01-01T10:00:00Z\ntags: numpy, deps, numpy\n---\n\nPinned.\n"
        )
        parsed = parse_record(text, "decision-pin-numpy", Scope.USER)
        assert parsed.tags == ["numpy", "deps"]
        assert parsed.scope is Scope.USER
