"""Shared pytest fixtures for the lumberjack test suite."""

from __future__ import annotations

import pytest

from lumberjack.catalog import load_catalog
from lumberjack.compiler import CompiledCatalog, MatcherSet, compile_catalog
from lumberjack.config import DEFAULT_CATALOG_DIR
from lumberjack.decoder import MAGIC

ANDROID_HEADER = (
    "12:00:00.000 I CouchbaseLite/DATABASE: Initialized: CouchbaseLite android v3.0.2-4 "
    "(CE/release, Commit/abc123@host Core/3.0.2 (4)) on Java; Android 13; Pixel 6;"
)


def android_line(message: str, level: str = "I", domain: str = "Sync", ts: str = "12:34:56.789") -> str:
    return f"{ts} {level} CouchbaseLite/{domain}: {message}"


@pytest.fixture(scope="session")
def compiled() -> CompiledCatalog:
    """The shipped catalog, compiled once per session."""
    return compile_catalog(load_catalog(DEFAULT_CATALOG_DIR))


@pytest.fixture(scope="session")
def android(compiled) -> MatcherSet:
    return compiled.matcher_set("android", (3, 0, 2))


@pytest.fixture(scope="session")
def core(compiled) -> MatcherSet:
    return compiled.matcher_set("core", (3, 1, 0))


# ---------------------------------------------------------------------------
# Binary log fixtures
# ---------------------------------------------------------------------------


def encode_varint(value: int) -> bytes:
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def int_arg(value: int) -> bytes:
    return bytes([1 if value < 0 else 0]) + encode_varint(abs(value))


def str_arg(value: str) -> bytes:
    raw = value.encode("utf-8")
    return encode_varint(len(raw)) + raw


class BinaryLogBuilder:
    """Writes entries in the binary log layout the decoder reads."""

    def __init__(self, start_seconds: int = 1700000000, pointer_size: int = 8, version: int = 1):
        self.data = bytearray(MAGIC + bytes([version, pointer_size]) + encode_varint(start_seconds))
        self._tokens: list[str] = []
        self._objects: set[int] = set()

    def token(self, text: str) -> bytes:
        if text in self._tokens:
            return encode_varint(self._tokens.index(text))
        self._tokens.append(text)
        return encode_varint(len(self._tokens) - 1) + text.encode("utf-8") + b"\0"

    def entry(
        self,
        fmt: str,
        args: bytes = b"",
        delta_us: int = 1000,
        level: int = 2,
        domain: str = "DB",
        obj: int = 0,
        obj_desc: str = "",
    ) -> BinaryLogBuilder:
        buf = encode_varint(delta_us) + bytes([level]) + self.token(domain)
        buf += encode_varint(obj)
        if obj and obj not in self._objects:
            self._objects.add(obj)
            buf += obj_desc.encode("utf-8") + b"\0"
        buf += self.token(fmt) + args
        self.data += buf
        return self

    def build(self) -> bytes:
        return bytes(self.data)


@pytest.fixture()
def binary_log():
    """Factory for BinaryLogBuilder instances."""
    return BinaryLogBuilder
