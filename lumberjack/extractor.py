"""Line Extractor and the sequential date-anchor pre-pass.

Extraction of one line is pure: given a MatcherSet, the line text and its
date anchor the result is always the same ParsedLine. The anchors are
computed up front by ``compute_anchors`` so that chunks of lines can be
extracted in any order, on any worker.
"""

from __future__ import annotations

import logging
import re
from datetime import date, datetime, timedelta
from typing import Any, Sequence

from lumberjack.compiler import CompiledEvent, MatcherSet
from lumberjack.errors import (
    CaptureTypeMismatch,
    InvalidObjectId,
    LineError,
    MissingLevel,
    TimestampParseError,
    UnrecognizedLevel,
)
from lumberjack.models import CaptureType, Level, LineStatus, ObjectRef, ParsedLine

logger = logging.getLogger(__name__)

INT64_MIN = -(2 ** 63)
INT64_MAX = 2 ** 63 - 1

ROLLOVER_THRESHOLD = 12 * 3600  # seconds of backwards jump treated as midnight

_INT_RE = re.compile(r"[+-]?[0-9]+")
_DIGITS_RE = re.compile(r"[0-9]+")
_LONG_FRACTION_RE = re.compile(r"(\.\d{6})\d+")
_JNI_CLASS_RE = re.compile(r"^N\d+litecore\d+(?:\w+\d)?(?P<object>\w+)E$")


# ---------------------------------------------------------------------------
# Field helpers
# ---------------------------------------------------------------------------


def parse_timestamp(matcher_set: MatcherSet, text: str) -> datetime:
    """Parse *text* with the first accepted format that fits. Raises TimestampParseError."""
    # strptime's %f stops at microseconds
    text = _LONG_FRACTION_RE.sub(r"\1", text)
    for fmt in matcher_set.timestamp_formats:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    raise TimestampParseError(text)


def demangle_object_type(name: str) -> str:
    """'N8litecore4repl8ReplicatorE' -> 'Replicator'; other names pass through."""
    m = _JNI_CLASS_RE.match(name)
    return m.group("object") if m else name


def convert_capture(event: str, capture: str, capture_type: CaptureType, text: str | None) -> Any:
    if text is None:
        return None
    if capture_type is CaptureType.STRING:
        return text
    if capture_type is CaptureType.INT:
        if _INT_RE.fullmatch(text):
            value = int(text)
            if INT64_MIN <= value <= INT64_MAX:
                return value
        raise CaptureTypeMismatch(event, capture, capture_type.value, text)
    if capture_type is CaptureType.BOOL:
        if _DIGITS_RE.fullmatch(text):
            return int(text) != 0
        lowered = text.lower()
        if lowered in ("true", "false"):
            return lowered == "true"
        raise CaptureTypeMismatch(event, capture, capture_type.value, text)
    if capture_type is CaptureType.CHAR:
        if len(text) == 1:
            return text
        raise CaptureTypeMismatch(event, capture, capture_type.value, text)
    raise CaptureTypeMismatch(event, capture, str(capture_type), text)


def _convert_fields(event: CompiledEvent, match: re.Match) -> dict[str, Any]:
    return {
        name: convert_capture(event.name, name, capture_type, match.group(name))
        for name, capture_type in event.captures
    }


def _strip_objects(matcher_set: MatcherSet, text: str) -> tuple[tuple[ObjectRef, ...], str]:
    path = []
    pieces = []
    pos = 0
    for m in matcher_set.object_re.finditer(text):
        native_id = m.group("id")
        if not _DIGITS_RE.fullmatch(native_id):
            raise InvalidObjectId(m.group(0), native_id)
        path.append(ObjectRef(demangle_object_type(m.group("obj")), int(native_id)))
        pieces.append(text[pos:m.start()])
        pos = m.end()
    if not path:
        return (), text.strip()
    pieces.append(text[pos:])
    message = " ".join(p.strip() for p in pieces if p.strip())
    return tuple(path), message


# ---------------------------------------------------------------------------
# Extractor
# ---------------------------------------------------------------------------


class LineExtractor:
    """Turns raw lines into ParsedLines for one file.

    ``file_level`` is the level carried by the file name. When given it wins
    over per-line level tokens.
    """

    def __init__(self, matcher_set: MatcherSet, source: str = "", file_level: Level | None = None):
        if file_level is None and matcher_set.level_re is None:
            raise MissingLevel(source)
        self.matcher_set = matcher_set
        self.source = source
        self.file_level = file_level

    def _error(self, index: int, line: str, err: LineError, **kwargs) -> ParsedLine:
        logger.debug("%s:%d: %s", self.source, index + 1, err)
        return ParsedLine(
            source=self.source,
            index=index,
            status=LineStatus.ERROR,
            message=kwargs.pop("message", line),
            error=str(err),
            error_kind=err.kind,
            **kwargs,
        )

    def extract(self, index: int, line: str, anchor: date | None = None) -> ParsedLine:
        ms = self.matcher_set
        line = line.rstrip("\r\n")
        spans_end = 0

        # 1. level
        level = self.file_level
        if ms.level_re is not None:
            m = ms.level_re.search(line)
            if m:
                spans_end = m.end()
                if level is None:
                    token = m.group("level")
                    level = ms.level_tokens.get(token)
                    if level is None:
                        return self._error(index, line, UnrecognizedLevel(token))
            elif level is None:
                return ParsedLine(source=self.source, index=index, status=LineStatus.UNMATCHED, message=line)

        # 2. timestamp
        m = ms.timestamp_re.search(line)
        if not m:
            return ParsedLine(
                source=self.source, index=index, status=LineStatus.UNMATCHED, level=level, message=line,
            )
        spans_end = max(spans_end, m.end())
        try:
            timestamp = parse_timestamp(ms, m.group("ts"))
        except TimestampParseError as e:
            return self._error(index, line, e, level=level)
        if not ms.full_timestamp:
            if anchor is None:
                raise ValueError(f"{self.source}: time-only dialect '{ms.name}' needs a date anchor")
            timestamp = datetime.combine(anchor, timestamp.time())

        # 3. domain
        domain = ""
        if ms.domain_re is not None:
            m = ms.domain_re.search(line)
            if m:
                domain = m.group("domain") or ""
                spans_end = max(spans_end, m.end())

        # 4. + 5. objects, residual
        try:
            object_path, message = _strip_objects(ms, line[spans_end:])
        except InvalidObjectId as e:
            return self._error(
                index, line, e,
                level=level, timestamp=timestamp, domain=domain, message=line[spans_end:].strip(),
            )

        # 6. events, first match wins
        for event in ms.events:
            m = event.regex.search(message)
            if not m:
                continue
            try:
                fields = _convert_fields(event, m)
            except CaptureTypeMismatch as e:
                return self._error(
                    index, line, e,
                    level=level, timestamp=timestamp, domain=domain,
                    object_path=object_path, message=message,
                )
            return ParsedLine(
                source=self.source,
                index=index,
                status=LineStatus.PARSED,
                level=level,
                timestamp=timestamp,
                domain=domain,
                object_path=object_path,
                event_type=event.event_type,
                event_name=event.name,
                fields=fields,
                message=message,
            )

        # 7. unclassified
        return ParsedLine(
            source=self.source,
            index=index,
            status=LineStatus.PARSED,
            level=level,
            timestamp=timestamp,
            domain=domain,
            object_path=object_path,
            message=message,
        )


def extract_chunk(
    matcher_set: MatcherSet,
    source: str,
    file_level: Level | None,
    start: int,
    lines: Sequence[str],
    anchors: Sequence[date | None],
) -> tuple[int, list[ParsedLine]]:
    """Extract a contiguous run of lines. Module level so process pools can pickle it."""
    extractor = LineExtractor(matcher_set, source=source, file_level=file_level)
    return start, [
        extractor.extract(start + offset, line, anchors[offset])
        for offset, line in enumerate(lines)
    ]


# ---------------------------------------------------------------------------
# Sequential pre-pass
# ---------------------------------------------------------------------------


def first_timestamp(matcher_set: MatcherSet, lines: Sequence[str]) -> datetime | None:
    """First parseable line timestamp, for full-timestamp dialects."""
    for line in lines:
        m = matcher_set.timestamp_re.search(line)
        if not m:
            continue
        try:
            return parse_timestamp(matcher_set, m.group("ts"))
        except TimestampParseError:
            continue
    return None


def compute_anchors(matcher_set: MatcherSet, lines: Sequence[str], start: date) -> list[date | None]:
    """Date anchor per line. Advances one day whenever the clock jumps back past midnight."""
    if matcher_set.full_timestamp:
        return [None] * len(lines)

    anchors = []
    current = start
    previous = None
    for line in lines:
        m = matcher_set.timestamp_re.search(line)
        if m:
            try:
                t = parse_timestamp(matcher_set, m.group("ts")).time()
            except TimestampParseError:
                t = None
            if t is not None:
                seconds = t.hour * 3600 + t.minute * 60 + t.second
                if previous is not None and previous - seconds > ROLLOVER_THRESHOLD:
                    current += timedelta(days=1)
                previous = seconds
        anchors.append(current)
    return anchors
