"""Pattern Catalog loader.

A catalog is a directory of YAML documents, one per revision. The file name
carries the half-open version range the revision applies to::

    3-0-0_3-1-0.yml   ->   [3.0.0, 3.1.0)

Document layout::

    platforms:
      - name: android
        version: "Initialized: CouchbaseLite (?<plat>\\S+) v(?<ver>...)"
        timestamp: "(?<ts>\\d{2}:\\d{2}:\\d{2}.\\d+)"
        full_timestamp: false
        timestamp_formats: ["%H:%M:%S.%f"]
        domain: "CouchbaseLite/(?<domain>\\w+):"
        level: " (?<level>\\w) CouchbaseLite/"
        level_names: {error: E, warn: W, info: I, verbose: V, debug: D}
    object: "\\{(?<obj>\\w+)#(?<id>\\d+)\\}"
    events:
      db_upgrade:
        regex: "SCHEMA UPGRADE \\((?<old_ver>\\d+)-(?<new_ver>\\d+)\\)"
        captures: {old_ver: Int, new_ver: Int}

Only structure is checked here; regex semantics are the compiler's job.
"""

from __future__ import annotations

import logging
import os
import re
from typing import Any

import yaml

from lumberjack.errors import CatalogError
from lumberjack.models import (
    CaptureType,
    CatalogRevision,
    EventDefinition,
    PatternCatalog,
    PlatformDialect,
)

logger = logging.getLogger(__name__)

CATALOG_EXTENSIONS = (".yml", ".yaml")

_RANGE_RE = re.compile(
    r"^(?P<from_major>\d+)-(?P<from_minor>\d+)-(?P<from_patch>\d+)"
    r"_(?P<to_major>\d+)-(?P<to_minor>\d+)-(?P<to_patch>\d+)$"
)
_VERSION_RE = re.compile(r"^\s*v?(\d+)(?:\.(\d+))?(?:\.(\d+))?\s*$")

CANONICAL_LEVEL_NAMES = ("error", "warn", "info", "verbose", "debug")

_CAPTURE_TYPES = {t.value: t for t in CaptureType}


# ---------------------------------------------------------------------------
# YAML loading
# ---------------------------------------------------------------------------


class _UniqueKeyLoader(yaml.SafeLoader):
    """SafeLoader that refuses duplicate mapping keys instead of keeping the last one."""

    def construct_mapping(self, node, deep=False):
        seen = set()
        for key_node, _ in node.value:
            key = self.construct_object(key_node, deep=deep)
            if key in seen:
                raise yaml.constructor.ConstructorError(
                    None, None, f"duplicate key '{key}'", key_node.start_mark
                )
            seen.add(key)
        return super().construct_mapping(node, deep=deep)


def parse_version(text: str) -> tuple[int, int, int] | None:
    """Parse '3.0.2' / '3.2' / 'v3' into a zero-filled (major, minor, patch). None if invalid."""
    m = _VERSION_RE.match(text)
    if not m:
        return None
    return tuple(int(part) if part is not None else 0 for part in m.groups())


def version_range_from_filename(filename: str) -> tuple[tuple[int, int, int], tuple[int, int, int]] | None:
    stem = os.path.splitext(os.path.basename(filename))[0]
    m = _RANGE_RE.match(stem)
    if not m:
        return None
    low = (int(m["from_major"]), int(m["from_minor"]), int(m["from_patch"]))
    high = (int(m["to_major"]), int(m["to_minor"]), int(m["to_patch"]))
    return low, high


# ---------------------------------------------------------------------------
# Document -> records
# ---------------------------------------------------------------------------


def _platform_from_dict(index: int, raw: Any, source: str, problems: list[str]) -> PlatformDialect | None:
    if not isinstance(raw, dict):
        problems.append(f"{source}: platform #{index} must be a mapping")
        return None
    name = str(raw.get("name") or f"platform-{index}")
    where = f"{source}: dialect '{name}'"

    ok = True
    for key in ("version", "timestamp"):
        if not isinstance(raw.get(key), str) or not raw.get(key):
            problems.append(f"{where}: missing '{key}' regex")
            ok = False
    for key in ("domain", "level"):
        if raw.get(key) is not None and not isinstance(raw.get(key), str):
            problems.append(f"{where}: '{key}' must be a regex string")
            ok = False

    formats = raw.get("timestamp_formats")
    if not isinstance(formats, list) or not formats or not all(isinstance(f, str) for f in formats):
        problems.append(f"{where}: 'timestamp_formats' must be a non-empty list of strings")
        ok = False

    full_timestamp = raw.get("full_timestamp", False)
    if not isinstance(full_timestamp, bool):
        problems.append(f"{where}: 'full_timestamp' must be a boolean")
        ok = False

    level_names = raw.get("level_names") or {}
    if not isinstance(level_names, dict):
        problems.append(f"{where}: 'level_names' must be a mapping")
        ok = False
        level_names = {}
    for canonical in level_names:
        if str(canonical).lower() not in CANONICAL_LEVEL_NAMES:
            problems.append(f"{where}: unknown level name '{canonical}'")
            ok = False

    if not ok:
        return None

    return PlatformDialect(
        name=name,
        version=raw["version"],
        timestamp=raw["timestamp"],
        timestamp_formats=tuple(formats),
        full_timestamp=full_timestamp,
        level_names=tuple((str(k).lower(), str(v)) for k, v in level_names.items()),
        domain=raw.get("domain"),
        level=raw.get("level"),
    )


def _event_from_dict(name: str, raw: Any, source: str, problems: list[str]) -> EventDefinition | None:
    where = f"{source}: event '{name}'"
    if isinstance(raw, str):
        raw = {"regex": raw}
    if not isinstance(raw, dict) or not isinstance(raw.get("regex"), str):
        problems.append(f"{where}: missing 'regex'")
        return None

    captures = raw.get("captures") or {}
    if not isinstance(captures, dict):
        problems.append(f"{where}: 'captures' must be a mapping of name to type")
        return None

    typed = []
    for capture, type_name in captures.items():
        capture_type = _CAPTURE_TYPES.get(str(type_name))
        if capture_type is None:
            problems.append(
                f"{where}: capture '{capture}' has unknown type '{type_name}' "
                f"(expected one of {', '.join(_CAPTURE_TYPES)})"
            )
            return None
        typed.append((str(capture), capture_type))

    return EventDefinition(name=name, regex=raw["regex"], captures=tuple(typed))


def _events_from_raw(raw: Any, source: str, problems: list[str]) -> list[EventDefinition]:
    """Accepts the ordered mapping form or a list of {name, regex, captures} entries."""
    if raw is None:
        return []
    if isinstance(raw, dict):
        items = list(raw.items())
    elif isinstance(raw, list):
        items = []
        for entry in raw:
            if not isinstance(entry, dict) or "name" not in entry:
                problems.append(f"{source}: event list entries need a 'name'")
                continue
            items.append((entry["name"], entry))
    else:
        problems.append(f"{source}: 'events' must be a mapping")
        return []

    events = []
    seen = set()
    for name, body in items:
        name = str(name)
        if name in seen:
            problems.append(f"{source}: duplicate event name '{name}'")
            continue
        seen.add(name)
        event = _event_from_dict(name, body, source, problems)
        if event is not None:
            events.append(event)
    return events


def revision_from_dict(
    data: Any,
    source: str,
    min_version: tuple[int, int, int],
    max_version: tuple[int, int, int],
    problems: list[str] | None = None,
) -> CatalogRevision | None:
    """Build one revision from an already-parsed document.

    Problems are appended to *problems* when given, otherwise raised as CatalogError.
    """
    own_problems = problems if problems is not None else []
    before = len(own_problems)

    if not isinstance(data, dict):
        own_problems.append(f"{source}: document must be a mapping")
        if problems is None:
            raise CatalogError(own_problems)
        return None

    if min_version >= max_version:
        own_problems.append(f"{source}: empty version range")

    raw_platforms = data.get("platforms")
    if not isinstance(raw_platforms, list) or not raw_platforms:
        own_problems.append(f"{source}: 'platforms' must be a non-empty list")
        raw_platforms = []
    platforms = [
        p for p in (
            _platform_from_dict(i, raw, source, own_problems) for i, raw in enumerate(raw_platforms)
        ) if p is not None
    ]
    names = [p.name for p in platforms]
    for name in sorted({n for n in names if names.count(n) > 1}):
        own_problems.append(f"{source}: duplicate dialect name '{name}'")

    object_pattern = data.get("object")
    if not isinstance(object_pattern, str) or not object_pattern:
        own_problems.append(f"{source}: missing 'object' regex")

    events = _events_from_raw(data.get("events"), source, own_problems)

    if len(own_problems) > before:
        if problems is None:
            raise CatalogError(own_problems)
        return None

    return CatalogRevision(
        source=source,
        min_version=min_version,
        max_version=max_version,
        platforms=tuple(platforms),
        object_pattern=object_pattern,
        events=tuple(events),
    )


def _check_overlaps(revisions: list[CatalogRevision], problems: list[str]) -> None:
    for prev, cur in zip(revisions, revisions[1:]):
        if cur.min_version < prev.max_version:
            problems.append(f"{cur.source}: version range overlaps {prev.source}")


def catalog_from_revisions(revisions: list[CatalogRevision]) -> PatternCatalog:
    ordered = sorted(revisions, key=lambda r: (r.min_version, r.max_version))
    problems: list[str] = []
    _check_overlaps(ordered, problems)
    if problems:
        raise CatalogError(problems)
    return PatternCatalog(revisions=tuple(ordered))


def load_catalog(path: str) -> PatternCatalog:
    """Load every revision file in *path* (a directory, or a single YAML file)."""
    if os.path.isdir(path):
        files = sorted(
            os.path.join(path, name) for name in os.listdir(path)
            if name.endswith(CATALOG_EXTENSIONS)
        )
    else:
        files = [path]

    problems: list[str] = []
    if not files:
        raise CatalogError([f"{path}: no catalog files found"])

    revisions = []
    for filepath in files:
        source = os.path.basename(filepath)
        version_range = version_range_from_filename(filepath)
        if version_range is None:
            problems.append(
                f"{source}: file name must look like '<major>-<minor>-<patch>_<major>-<minor>-<patch>.yml'"
            )
            continue
        try:
            with open(filepath, "r", encoding="utf-8") as f:
                data = yaml.load(f, Loader=_UniqueKeyLoader)
        except OSError as e:
            problems.append(f"{source}: cannot read ({e})")
            continue
        except yaml.YAMLError as e:
            problems.append(f"{source}: invalid YAML ({e})")
            continue
        revision = revision_from_dict(data, source, *version_range, problems=problems)
        if revision is not None:
            revisions.append(revision)

    if problems:
        raise CatalogError(problems)

    catalog = catalog_from_revisions(revisions)
    logger.info(
        "Loaded pattern catalog from %s: %d revision(s)", path, len(catalog.revisions)
    )
    return catalog
