"""Tests for lumberjack.compiler."""

from __future__ import annotations

import pytest

from lumberjack.catalog import catalog_from_revisions, load_catalog, revision_from_dict
from lumberjack.compiler import compile_catalog, normalize_timestamp_format, translate_regex
from lumberjack.config import DEFAULT_CATALOG_DIR
from lumberjack.errors import CatalogError, UnsupportedVersion
from lumberjack.models import UNCLASSIFIED, PatternCatalog


def _catalog(events: dict, **platform_overrides) -> PatternCatalog:
    platform = {
        "name": "plain",
        "version": "PLAIN v(?<ver>\\d+\\.\\d+\\.\\d+)",
        "timestamp": "^(?<ts>\\S+)",
        "full_timestamp": True,
        "timestamp_formats": ["%Y-%m-%dT%H:%M:%S"],
        "level": "^\\S+ (?<level>\\w)",
        "level_names": {"info": "I"},
    }
    platform.update(platform_overrides)
    doc = {
        "platforms": [platform],
        "object": "\\{(?<obj>\\w+)#(?<id>\\d+)\\}",
        "events": events,
    }
    return catalog_from_revisions([revision_from_dict(doc, "test.yml", (1, 0, 0), (2, 0, 0))])


class TestTranslation:
    def test_named_group(self) -> None:
        assert translate_regex("a(?<name>\\d+)") == "a(?P<name>\\d+)"

    def test_lookbehinds_untouched(self) -> None:
        assert translate_regex("(?<=x)(?<!y)") == "(?<=x)(?<!y)"

    def test_python_syntax_untouched(self) -> None:
        assert translate_regex("(?P<name>x)") == "(?P<name>x)"

    def test_fractional_second_directives(self) -> None:
        assert normalize_timestamp_format("%H:%M:%S.%3f") == "%H:%M:%S.%f"
        assert normalize_timestamp_format("%H:%M:%S%.6f") == "%H:%M:%S.%f"
        assert normalize_timestamp_format("%Y-%m-%d") == "%Y-%m-%d"


class TestEventNumbering:
    def test_deterministic(self) -> None:
        first = compile_catalog(load_catalog(DEFAULT_CATALOG_DIR))
        second = compile_catalog(load_catalog(DEFAULT_CATALOG_DIR))
        assert first.event_types == second.event_types
        assert first.event_table == second.event_table

    def test_dense_from_one_in_declaration_order(self, compiled) -> None:
        numbers = sorted(compiled.event_types.values())
        assert numbers == list(range(1, len(numbers) + 1))
        assert compiled.event_types["db_open"] == 1
        assert compiled.event_types["db_upgrade"] == 2

    def test_sentinel_first_in_table(self, compiled) -> None:
        assert compiled.event_table[0] == (UNCLASSIFIED, "unclassified")
        assert compiled.event_name(UNCLASSIFIED) == "unclassified"
        assert compiled.event_name(compiled.event_types["db_open"]) == "db_open"

    def test_added_events_are_appended(self, compiled) -> None:
        old = compiled.matcher_set("android", (3, 0, 2))
        new = compiled.matcher_set("android", (3, 1, 0))
        old_numbers = {e.name: e.event_type for e in old.events}
        new_numbers = {e.name: e.event_type for e in new.events}
        for name, number in old_numbers.items():
            assert new_numbers[name] == number
        assert new_numbers["db_close"] == max(old_numbers.values()) + 1


class TestValidation:
    def test_group_without_type_names_event(self) -> None:
        catalog = _catalog({"greet": {"regex": "hi (?<who>\\w+) (?<extra>\\w+)", "captures": {"who": "String"}}})
        with pytest.raises(CatalogError) as exc:
            compile_catalog(catalog)
        assert "event 'greet'" in str(exc.value)
        assert "extra" in str(exc.value)

    def test_declared_capture_missing_names_event(self) -> None:
        catalog = _catalog({"greet": {"regex": "hi", "captures": {"who": "String"}}})
        with pytest.raises(CatalogError) as exc:
            compile_catalog(catalog)
        assert "event 'greet'" in exc.value.problems[0]
        assert "who" in exc.value.problems[0]

    def test_invalid_regex_names_event(self) -> None:
        catalog = _catalog({"broken": {"regex": "unbalanced (paren"}})
        with pytest.raises(CatalogError) as exc:
            compile_catalog(catalog)
        assert "event 'broken'" in str(exc.value)
        assert "invalid regex" in str(exc.value)

    def test_all_problems_reported(self) -> None:
        catalog = _catalog({
            "broken": {"regex": "(oops"},
            "untyped": {"regex": "(?<n>\\d+)"},
            "fine": {"regex": "fine"},
        })
        with pytest.raises(CatalogError) as exc:
            compile_catalog(catalog)
        assert len(exc.value.problems) == 2

    def test_dialect_requires_ts_group(self) -> None:
        catalog = _catalog({}, timestamp="^(?<time>\\S+)")
        with pytest.raises(CatalogError) as exc:
            compile_catalog(catalog)
        assert "dialect 'plain'" in str(exc.value)
        assert "ts" in str(exc.value)

    def test_dialect_version_requires_ver(self) -> None:
        catalog = _catalog({}, version="PLAIN v(?<version>\\S+)")
        with pytest.raises(CatalogError):
            compile_catalog(catalog)

    def test_level_regex_needs_level_names(self) -> None:
        catalog = _catalog({}, level_names={})
        with pytest.raises(CatalogError):
            compile_catalog(catalog)

    def test_python_named_groups_accepted(self) -> None:
        compiled = compile_catalog(_catalog({"greet": {"regex": "hi (?P<who>\\w+)", "captures": {"who": "String"}}}))
        assert compiled.event_types == {"greet": 1}


class TestMatcherSets:
    def test_shared_within_revision(self, compiled) -> None:
        assert compiled.matcher_set("android", (3, 0, 2)) is compiled.matcher_set("android", (3, 0, 9))

    def test_distinct_across_revisions(self, compiled) -> None:
        old = compiled.matcher_set("android", (3, 0, 2))
        new = compiled.matcher_set("android", (3, 1, 0))
        assert old is not new
        assert old.revision == "3-0-0_3-1-0.yml"
        assert new.revision == "3-1-0_4-0-0.yml"

    def test_unsupported_version(self, compiled) -> None:
        with pytest.raises(UnsupportedVersion):
            compiled.matcher_set("android", (2, 8, 0))
        with pytest.raises(UnsupportedVersion):
            compiled.matcher_set("android", (4, 0, 0))

    def test_compiled_fields(self, android) -> None:
        assert android.name == "android"
        assert not android.full_timestamp
        assert android.timestamp_formats == ("%H:%M:%S.%f",)
        assert android.level_tokens["W"].name == "WARN"
        assert android.events[0].name == "db_open"
