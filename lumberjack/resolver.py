"""Dialect Resolver: find the one dialect whose version header appears in the leading lines."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable

from lumberjack.catalog import parse_version
from lumberjack.compiler import CompiledCatalog, MatcherSet
from lumberjack.errors import AmbiguousDialect, InvalidVersion, NoDialectMatch
from lumberjack.models import HeaderInfo

logger = logging.getLogger(__name__)

DEFAULT_SCAN_WINDOW = 100


@dataclass(frozen=True)
class Resolution:
    matcher_set: MatcherSet
    header: HeaderInfo


def resolve(lines: Iterable[str], compiled: CompiledCatalog, scan_window: int = DEFAULT_SCAN_WINDOW) -> Resolution:
    """Claim the input for exactly one dialect and bind it to its catalog revision.

    Every dialect's version regex is applied to each of the first *scan_window*
    lines. Zero claims raise NoDialectMatch, more than one AmbiguousDialect. The
    captured version then selects the revision; InvalidVersion or
    UnsupportedVersion are raised when that is impossible.
    """
    patterns = compiled.version_patterns()
    claims: dict[str, tuple[int, dict]] = {}
    scanned = 0

    for index, line in enumerate(lines):
        if index >= scan_window:
            break
        scanned += 1
        for dialect, regex in patterns:
            if dialect in claims:
                continue
            m = regex.search(line)
            if m:
                claims[dialect] = (index, m.groupdict())

    if not claims:
        raise NoDialectMatch(scanned)
    if len(claims) > 1:
        raise AmbiguousDialect(list(claims))

    dialect, (index, groups) = next(iter(claims.items()))
    version_text = groups.get("ver") or ""
    version = parse_version(version_text)
    if version is None:
        raise InvalidVersion(version_text)

    matcher_set = compiled.matcher_set(dialect, version)

    build = groups.get("build")
    header = HeaderInfo(
        dialect=dialect,
        platform=groups.get("plat") or dialect,
        version=version,
        build=int(build) if build and build.isdigit() else None,
        commit=groups.get("commit"),
        os=(groups.get("os") or "").strip() or None,
        line_index=index,
    )
    logger.debug(
        "Resolved dialect %s v%s (revision %s) from line %d",
        dialect, header.version_string, matcher_set.revision, index,
    )
    return Resolution(matcher_set=matcher_set, header=header)
