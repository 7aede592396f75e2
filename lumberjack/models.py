"""Shared data model: levels, catalog records, parsed lines and file metadata."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any

UNCLASSIFIED = 0
UNCLASSIFIED_NAME = "unclassified"


class Level(IntEnum):
    """Canonical log level. Values are persisted, keep them stable."""

    ERROR = 0
    WARN = 1
    INFO = 2
    VERBOSE = 3
    DEBUG = 4

    @classmethod
    def from_name(cls, name: str) -> Level | None:
        """Look up a canonical level name ("info", "Warning", ...). None if unknown."""
        return _LEVEL_ALIASES.get(name.strip().lower())


_LEVEL_ALIASES = {
    "error": Level.ERROR,
    "warn": Level.WARN,
    "warning": Level.WARN,
    "info": Level.INFO,
    "verbose": Level.VERBOSE,
    "debug": Level.DEBUG,
}


class CaptureType(str, Enum):
    INT = "Int"
    STRING = "String"
    BOOL = "Bool"
    CHAR = "Char"


class LineStatus(str, Enum):
    PARSED = "parsed"
    UNMATCHED = "unmatched"
    ERROR = "error"


# ---------------------------------------------------------------------------
# Catalog records (pure data, produced by catalog.py)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PlatformDialect:
    name: str
    version: str
    timestamp: str
    timestamp_formats: tuple[str, ...]
    full_timestamp: bool
    level_names: tuple[tuple[str, str], ...]  # (canonical name, token)
    domain: str | None = None
    level: str | None = None


@dataclass(frozen=True)
class EventDefinition:
    name: str
    regex: str
    captures: tuple[tuple[str, CaptureType], ...] = ()


@dataclass(frozen=True)
class CatalogRevision:
    """One catalog document, valid for versions in [min_version, max_version)."""

    source: str
    min_version: tuple[int, int, int]
    max_version: tuple[int, int, int]
    platforms: tuple[PlatformDialect, ...]
    object_pattern: str
    events: tuple[EventDefinition, ...]

    def covers(self, version: tuple[int, int, int]) -> bool:
        return self.min_version <= version < self.max_version


@dataclass(frozen=True)
class PatternCatalog:
    revisions: tuple[CatalogRevision, ...]


# ---------------------------------------------------------------------------
# Extraction results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ObjectRef:
    type_name: str
    object_id: int

    def __str__(self) -> str:
        return f"{self.type_name}#{self.object_id}"


def format_object_path(path: tuple[ObjectRef, ...]) -> str:
    """Render a hierarchy path as '/Repl#76/Pusher#80/' ('' for an empty path)."""
    if not path:
        return ""
    return "/" + "/".join(str(ref) for ref in path) + "/"


@dataclass(frozen=True)
class HeaderInfo:
    dialect: str
    platform: str
    version: tuple[int, int, int]
    build: int | None = None
    commit: str | None = None
    os: str | None = None
    line_index: int = 0

    @property
    def version_string(self) -> str:
        return ".".join(str(part) for part in self.version)


@dataclass(frozen=True)
class ParsedLine:
    source: str
    index: int
    status: LineStatus
    level: Level | None = None
    timestamp: datetime | None = None
    domain: str = ""
    object_path: tuple[ObjectRef, ...] = ()
    event_type: int = UNCLASSIFIED
    event_name: str | None = None
    fields: dict[str, Any] = field(default_factory=dict)
    message: str = ""
    error: str | None = None
    error_kind: str | None = None
    line_num: int | None = None

    @property
    def recordable(self) -> bool:
        return self.level is not None and self.timestamp is not None

    @property
    def classified(self) -> bool:
        return self.event_type != UNCLASSIFIED


def serialize_fields(fields: dict[str, Any]) -> str | None:
    """Encode typed capture values as a JSON document (None when there are none)."""
    if not fields:
        return None
    return json.dumps(fields, separators=(",", ":"), ensure_ascii=False)


@dataclass(frozen=True)
class LogFile:
    """File metadata handed to the Record Sink alongside its lines."""

    path: str
    sequence: str
    start: datetime
    level: Level | None = None
    header: HeaderInfo | None = None
