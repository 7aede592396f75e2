"""Pattern Compiler: PatternCatalog -> CompiledCatalog -> MatcherSet.

Compilation is all-or-nothing. Every problem found is collected into one
validation report and raised as a single CatalogError.
"""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass, field

from lumberjack.errors import CatalogError, UnsupportedVersion
from lumberjack.models import (
    UNCLASSIFIED,
    UNCLASSIFIED_NAME,
    CaptureType,
    CatalogRevision,
    Level,
    PatternCatalog,
    PlatformDialect,
)

logger = logging.getLogger(__name__)

# "(?<name>" but not the lookbehinds "(?<=" / "(?<!"
_NAMED_GROUP_RE = re.compile(r"\(\?<(?=[A-Za-z_])")

# chrono-style fractional seconds
_FRACTION_DIRECTIVES = (
    ("%.3f", ".%f"),
    ("%.6f", ".%f"),
    ("%.9f", ".%f"),
    ("%.f", ".%f"),
    ("%3f", "%f"),
    ("%6f", "%f"),
    ("%9f", "%f"),
)

VERSION_GROUPS = frozenset({"plat", "ver", "build", "commit", "os"})


def translate_regex(pattern: str) -> str:
    """Rewrite portable named groups ``(?<name>...)`` into Python's ``(?P<name>...)``."""
    return _NAMED_GROUP_RE.sub("(?P<", pattern)


def normalize_timestamp_format(fmt: str) -> str:
    for old, new in _FRACTION_DIRECTIVES:
        fmt = fmt.replace(old, new)
    return fmt


@dataclass(frozen=True)
class CompiledEvent:
    event_type: int
    name: str
    regex: re.Pattern
    captures: tuple[tuple[str, CaptureType], ...]


@dataclass(frozen=True)
class MatcherSet:
    """Executable matcher for one dialect bound to one catalog revision. Read-only."""

    dialect: PlatformDialect
    revision: str
    min_version: tuple[int, int, int]
    max_version: tuple[int, int, int]
    version_re: re.Pattern
    timestamp_re: re.Pattern
    timestamp_formats: tuple[str, ...]
    domain_re: re.Pattern | None
    level_re: re.Pattern | None
    level_tokens: dict[str, Level] = field(hash=False, compare=False)
    object_re: re.Pattern
    events: tuple[CompiledEvent, ...]

    @property
    def name(self) -> str:
        return self.dialect.name

    @property
    def full_timestamp(self) -> bool:
        return self.dialect.full_timestamp


@dataclass(frozen=True)
class _CompiledRevision:
    revision: CatalogRevision
    object_re: re.Pattern
    events: tuple[CompiledEvent, ...]
    dialects: dict[str, tuple[PlatformDialect, dict]] = field(hash=False, compare=False)


class CompiledCatalog:
    """Validated catalog: EventType table plus cached MatcherSets."""

    def __init__(self, revisions: list[_CompiledRevision], event_types: dict[str, int]):
        self._revisions = tuple(revisions)
        self._event_types = dict(event_types)
        self._cache: dict[tuple[str, str], MatcherSet] = {}
        self._lock = threading.Lock()

    @property
    def event_types(self) -> dict[str, int]:
        return dict(self._event_types)

    @property
    def event_table(self) -> list[tuple[int, str]]:
        """(EventType, name) rows, sentinel first."""
        rows = [(UNCLASSIFIED, UNCLASSIFIED_NAME)]
        rows.extend(sorted((num, name) for name, num in self._event_types.items()))
        return rows

    def event_name(self, event_type: int) -> str | None:
        for name, num in self._event_types.items():
            if num == event_type:
                return name
        return UNCLASSIFIED_NAME if event_type == UNCLASSIFIED else None

    @property
    def revisions(self) -> tuple[CatalogRevision, ...]:
        return tuple(r.revision for r in self._revisions)

    def dialect_names(self) -> list[str]:
        names: list[str] = []
        for compiled in self._revisions:
            for name in compiled.dialects:
                if name not in names:
                    names.append(name)
        return names

    def version_patterns(self) -> list[tuple[str, re.Pattern]]:
        """Distinct (dialect, version regex) pairs across all revisions, in catalog order."""
        seen = set()
        out = []
        for compiled in self._revisions:
            for name, (_, regexes) in compiled.dialects.items():
                key = (name, regexes["version"].pattern)
                if key not in seen:
                    seen.add(key)
                    out.append((name, regexes["version"]))
        return out

    def matcher_set(self, dialect: str, version: tuple[int, int, int]) -> MatcherSet:
        """Return the shared MatcherSet for *dialect* at *version*."""
        for compiled in self._revisions:
            if dialect in compiled.dialects and compiled.revision.covers(version):
                break
        else:
            raise UnsupportedVersion(dialect, ".".join(str(v) for v in version))

        key = (dialect, compiled.revision.source)
        with self._lock:
            cached = self._cache.get(key)
            if cached is None:
                cached = self._build(compiled, dialect)
                self._cache[key] = cached
                logger.debug("Built matcher set %s/%s", dialect, compiled.revision.source)
        return cached

    @staticmethod
    def _build(compiled: _CompiledRevision, dialect: str) -> MatcherSet:
        platform, regexes = compiled.dialects[dialect]
        tokens = {token: Level.from_name(canonical) for canonical, token in platform.level_names}
        return MatcherSet(
            dialect=platform,
            revision=compiled.revision.source,
            min_version=compiled.revision.min_version,
            max_version=compiled.revision.max_version,
            version_re=regexes["version"],
            timestamp_re=regexes["timestamp"],
            timestamp_formats=tuple(normalize_timestamp_format(f) for f in platform.timestamp_formats),
            domain_re=regexes.get("domain"),
            level_re=regexes.get("level"),
            level_tokens=tokens,
            object_re=compiled.object_re,
            events=compiled.events,
        )


# ---------------------------------------------------------------------------
# Compilation
# ---------------------------------------------------------------------------


def _compile(pattern: str, where: str, problems: list[str]) -> re.Pattern | None:
    try:
        return re.compile(translate_regex(pattern))
    except re.error as e:
        problems.append(f"{where}: invalid regex ({e})")
        return None


def _require_groups(regex: re.Pattern, required: set[str], where: str, problems: list[str]) -> None:
    missing = sorted(required - set(regex.groupindex))
    if missing:
        problems.append(f"{where}: regex lacks named group(s) {', '.join(missing)}")


def _compile_dialect(platform: PlatformDialect, source: str, problems: list[str]) -> dict | None:
    where = f"{source}: dialect '{platform.name}'"
    before = len(problems)
    regexes = {}

    specs = [
        ("version", platform.version, {"ver"}),
        ("timestamp", platform.timestamp, {"ts"}),
        ("domain", platform.domain, {"domain"}),
        ("level", platform.level, {"level"}),
    ]
    for key, pattern, required in specs:
        if pattern is None:
            continue
        regex = _compile(pattern, f"{where} {key}", problems)
        if regex is None:
            continue
        _require_groups(regex, required, f"{where} {key}", problems)
        regexes[key] = regex

    if "version" in regexes:
        unknown = sorted(set(regexes["version"].groupindex) - VERSION_GROUPS)
        if unknown:
            problems.append(f"{where} version: unexpected named group(s) {', '.join(unknown)}")

    if not platform.timestamp_formats:
        problems.append(f"{where}: 'timestamp_formats' is empty")
    if platform.level is not None and not platform.level_names:
        problems.append(f"{where}: 'level' regex needs a 'level_names' table")

    tokens = [token for _, token in platform.level_names]
    if len(tokens) != len(set(tokens)):
        problems.append(f"{where}: 'level_names' maps one token to several levels")

    if len(problems) > before:
        return None
    return regexes


def _compile_events(
    revision: CatalogRevision, event_types: dict[str, int], problems: list[str]
) -> tuple[CompiledEvent, ...]:
    compiled = []
    seen = set()
    for event in revision.events:
        where = f"{revision.source}: event '{event.name}'"
        if event.name == UNCLASSIFIED_NAME:
            problems.append(f"{where}: name is reserved")
            continue
        if event.name in seen:
            problems.append(f"{where}: duplicate event name")
            continue
        seen.add(event.name)

        regex = _compile(event.regex, where, problems)
        if regex is None:
            continue

        groups = set(regex.groupindex)
        declared = [name for name, _ in event.captures]
        untyped = sorted(groups - set(declared))
        unmatched = sorted(set(declared) - groups)
        if untyped:
            problems.append(f"{where}: named group(s) without a declared type: {', '.join(untyped)}")
        if unmatched:
            problems.append(f"{where}: declared capture(s) missing from regex: {', '.join(unmatched)}")
        if untyped or unmatched:
            continue

        if event.name not in event_types:
            event_types[event.name] = len(event_types) + 1
        compiled.append(CompiledEvent(
            event_type=event_types[event.name],
            name=event.name,
            regex=regex,
            captures=event.captures,
        ))
    return tuple(compiled)


def compile_catalog(catalog: PatternCatalog) -> CompiledCatalog:
    """Validate and compile *catalog*. Deterministic: same input, same EventType numbering."""
    problems: list[str] = []
    event_types: dict[str, int] = {}
    compiled_revisions = []

    revisions = sorted(catalog.revisions, key=lambda r: (r.min_version, r.max_version))
    if not revisions:
        problems.append("catalog has no revisions")

    for revision in revisions:
        object_re = _compile(revision.object_pattern, f"{revision.source}: object", problems)
        if object_re is not None:
            _require_groups(object_re, {"obj", "id"}, f"{revision.source}: object", problems)

        dialects = {}
        for platform in revision.platforms:
            if platform.name in dialects:
                problems.append(f"{revision.source}: duplicate dialect name '{platform.name}'")
                continue
            regexes = _compile_dialect(platform, revision.source, problems)
            if regexes is not None:
                dialects[platform.name] = (platform, regexes)

        events = _compile_events(revision, event_types, problems)
        compiled_revisions.append(_CompiledRevision(
            revision=revision, object_re=object_re, events=events, dialects=dialects,
        ))

    if problems:
        for problem in problems:
            logger.error("Catalog problem: %s", problem)
        raise CatalogError(problems)

    logger.info(
        "Compiled catalog: %d revision(s), %d dialect(s), %d event type(s)",
        len(compiled_revisions),
        len({name for r in compiled_revisions for name in r.dialects}),
        len(event_types),
    )
    return CompiledCatalog(compiled_revisions, event_types)
