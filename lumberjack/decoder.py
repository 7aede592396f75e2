"""Binary CBL log decoder.

Layout (all integers are unsigned LEB128 varints unless noted):

  Header:  magic CF B2 AB 1B | format version (1 byte, =1) | pointer size (1 byte, 4 or 8)
           | start time (varint, Unix seconds)
  Entry:   tick delta (varint, microseconds since previous entry)
           | level (1 byte, index into LEVEL_NAMES)
           | domain (tokenized string)
           | object (varint, 0 = none; first sighting is followed by a NUL-terminated description)
           | format (tokenized string) | encoded printf arguments

A tokenized string is a varint id; an id equal to the number of strings seen
so far introduces a new NUL-terminated string.

Decoded entries are rendered as text lines that the ``core`` dialect parses::

  2024-05-19T11:45:28.000123 Sync Info {Repl#76}{Pusher#80} Starting push from remote seq '12'
"""

from __future__ import annotations

import logging
import re
import struct
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from lumberjack.errors import DecodeError

logger = logging.getLogger(__name__)

MAGIC = b"\xcf\xb2\xab\x1b"
FORMAT_VERSION = 1
LEVEL_NAMES = ("Debug", "Verbose", "Info", "Warning", "Error")
TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%f"
VARINT_MAX_LEN = 10
EMPTY_DOMAIN = "-"

_FLAG_CHARS = "#0- +'"
_LENGTH_CHARS = "hljtzq"
_FLOAT_CHARS = "eEfFgGaA"
_OBJECT_PART_RE = re.compile(r"^[^#/\s]+#\d+$")


@dataclass(frozen=True)
class DecodedEntry:
    timestamp: datetime
    level: str
    domain: str
    object: str | None
    message: str

    def render(self) -> str:
        parts = [self.timestamp.strftime(TS_FORMAT), self.domain or EMPTY_DOMAIN, self.level]
        markers = object_markers(self.object)
        if markers:
            parts.append(markers)
        parts.append(self.message)
        return " ".join(parts)


def object_markers(description: str | None) -> str:
    """'/Repl#76/Pusher#80/' -> '{Repl#76}{Pusher#80}'."""
    if not description:
        return ""
    parts = [p for p in description.split("/") if p]
    if parts and all(_OBJECT_PART_RE.match(p) for p in parts):
        return "".join(f"{{{p}}}" for p in parts)
    return f"Obj={description}"


def is_binary(head: bytes) -> bool:
    return head[:len(MAGIC)] == MAGIC


class _Truncated(Exception):
    pass


class _Reader:
    def __init__(self, data: bytes):
        self.data = data
        self.pos = 0

    def at_end(self) -> bool:
        return self.pos >= len(self.data)

    def byte(self) -> int:
        if self.pos >= len(self.data):
            raise _Truncated()
        value = self.data[self.pos]
        self.pos += 1
        return value

    def take(self, n: int) -> bytes:
        if self.pos + n > len(self.data):
            raise _Truncated()
        chunk = self.data[self.pos:self.pos + n]
        self.pos += n
        return chunk

    def varint(self) -> int:
        result = 0
        start = self.pos
        for i in range(VARINT_MAX_LEN):
            b = self.byte()
            result |= (b & 0x7F) << (7 * i)
            if b < 0x80:
                return result
        raise DecodeError("varint longer than 10 bytes", start)

    def cstring(self) -> str:
        end = self.data.find(b"\x00", self.pos)
        if end < 0:
            raise _Truncated()
        raw = self.data[self.pos:end]
        self.pos = end + 1
        return raw.decode("utf-8", errors="replace")


class BinaryLogDecoder:
    """Stateful decoder over one binary log held in memory."""

    def __init__(self, data: bytes):
        self._r = _Reader(data)
        self._tokens: list[str] = []
        self._objects: dict[int, str] = {}
        self._elapsed = 0

        try:
            header = self._r.take(6)
        except _Truncated:
            raise DecodeError("file too short for header", 0) from None
        if header[:4] != MAGIC:
            raise DecodeError("bad magic number", 0)
        if header[4] != FORMAT_VERSION:
            raise DecodeError(f"unsupported format version {header[4]}, expected {FORMAT_VERSION}", 4)
        if header[5] not in (4, 8):
            raise DecodeError(f"invalid pointer size {header[5]}", 5)
        self.pointer_size = header[5]
        try:
            seconds = self._r.varint()
        except _Truncated:
            raise DecodeError("truncated start time", 6) from None
        self.start_time = datetime.fromtimestamp(seconds, tz=timezone.utc).replace(tzinfo=None)
        logger.debug("Binary log starts at %s, pointer size %d", self.start_time, self.pointer_size)

    def entries(self):
        while True:
            entry_start = self._r.pos
            if self._r.at_end():
                return
            try:
                delta = self._r.varint()
            except _Truncated:
                logger.debug("Binary log ends inside an entry header at byte %d", entry_start)
                return
            try:
                yield self._read_entry(delta)
            except _Truncated:
                raise DecodeError("truncated entry", entry_start) from None

    def lines(self) -> list[str]:
        return [entry.render() for entry in self.entries()]

    def _read_entry(self, delta: int) -> DecodedEntry:
        self._elapsed += delta
        timestamp = self.start_time + timedelta(microseconds=self._elapsed)

        level_pos = self._r.pos
        level_index = self._r.byte()
        if level_index >= len(LEVEL_NAMES):
            raise DecodeError(f"no log level with discriminant {level_index}", level_pos)

        domain = self._token()
        obj = self._object()
        message = self._message()
        return DecodedEntry(
            timestamp=timestamp,
            level=LEVEL_NAMES[level_index],
            domain=domain,
            object=obj,
            message=message,
        )

    def _token(self) -> str:
        pos = self._r.pos
        token_id = self._r.varint()
        if token_id < len(self._tokens):
            return self._tokens[token_id]
        if token_id == len(self._tokens):
            self._tokens.append(self._r.cstring())
            return self._tokens[token_id]
        raise DecodeError(f"invalid token string id {token_id}", pos)

    def _object(self) -> str | None:
        object_id = self._r.varint()
        if object_id == 0:
            return None
        if object_id not in self._objects:
            self._objects[object_id] = self._r.cstring()
        return self._objects[object_id]

    def _message(self) -> str:
        fmt = self._token()
        out = []
        i = 0
        n = len(fmt)

        def at(k: int) -> str:
            if k >= n:
                raise DecodeError(f"format string ends inside a specifier: '{fmt}'", self._r.pos)
            return fmt[k]

        while i < n:
            c = fmt[i]
            if c == "\0":
                break
            if c != "%":
                out.append(c)
                i += 1
                continue

            i += 1
            is_minus = at(i) == "-"
            if is_minus:
                i += 1
            while at(i) in _FLAG_CHARS:
                i += 1
            while at(i).isdigit():
                i += 1
            is_dot_star = False
            if at(i) == ".":
                i += 1
                if at(i) == "*":
                    is_dot_star = True
                    i += 1
                else:
                    while at(i).isdigit():
                        i += 1
            while at(i) in _LENGTH_CHARS:
                i += 1

            spec = at(i)
            out.append(self._argument(spec, is_minus, is_dot_star))
            i += 1

        return "".join(out)

    def _argument(self, spec: str, is_minus: bool, is_dot_star: bool) -> str:
        r = self._r
        if spec in "cdi":
            negative = r.byte() > 0
            value = r.varint()
            if negative:
                value = -value
            if spec == "c":
                return chr(value & 0xFF)
            return str(value)
        if spec in "xX":
            return format(r.varint(), "02x")
        if spec == "u":
            return str(r.varint())
        if spec in _FLOAT_CHARS:
            (value,) = struct.unpack("<d", r.take(8))
            return repr(value)
        if spec in "s@":
            if is_minus and not is_dot_star:
                return self._token()
            raw = r.take(r.varint())
            if is_minus:
                return raw.hex()
            return raw.decode("utf-8", errors="replace")
        if spec == "p":
            if self.pointer_size == 8:
                (value,) = struct.unpack("<Q", r.take(8))
                return f"{value:#018x}"
            (value,) = struct.unpack("<I", r.take(4))
            return f"{value:#010x}"
        if spec == "%":
            return "%"
        raise DecodeError(f"unknown format specifier '{spec}'", r.pos)


def decode_lines(data: bytes) -> list[str]:
    """Decode a whole binary log into text lines.

    Args:
        data: The file contents, starting with the magic number.

    Returns:
        One rendered line per entry.

    Raises:
        DecodeError: If the header or an entry is malformed.
    """
    return BinaryLogDecoder(data).lines()
