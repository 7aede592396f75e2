"""Log file naming conventions, discovery and rollover ordering."""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from datetime import datetime, timezone

from lumberjack.decoder import MAGIC, decode_lines, is_binary
from lumberjack.models import Level

logger = logging.getLogger(__name__)

# cbl_info_1700000000000.cbllog
_CBLLOG_NAME_RE = re.compile(r"^(?P<stem>(?:.+_)?(?P<level>[A-Za-z]+))_(?P<epoch_ms>\d+)(?:\.\w+)?$")


@dataclass(frozen=True)
class InputFile:
    """One input file and what its name says about it."""

    path: str
    sequence: str
    level: Level | None = None
    name_start: datetime | None = None

    @property
    def sort_key(self) -> tuple:
        return (self.sequence, self.name_start or datetime.min, self.path)


def _from_epoch_ms(ms: int) -> datetime | None:
    try:
        return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).replace(tzinfo=None)
    except (OverflowError, OSError, ValueError):
        return None


def describe_file(path: str) -> InputFile:
    """Derive level, start time and rollover sequence from a file name."""
    path = os.path.abspath(path)
    directory, name = os.path.split(path)
    m = _CBLLOG_NAME_RE.match(name)
    if m:
        level = Level.from_name(m.group("level"))
        start = _from_epoch_ms(int(m.group("epoch_ms")))
        if level is not None and start is not None:
            return InputFile(
                path=path,
                sequence=os.path.join(directory, m.group("stem")),
                level=level,
                name_start=start,
            )
    return InputFile(path=path, sequence=path)


def discover(paths: list[str]) -> list[InputFile]:
    """Expand directories (non recursive, hidden files skipped) and order for rollover."""
    found = []
    seen = set()
    for path in paths:
        if os.path.isdir(path):
            candidates = [
                os.path.join(path, name) for name in sorted(os.listdir(path))
                if not name.startswith(".") and os.path.isfile(os.path.join(path, name))
            ]
        elif os.path.exists(path):
            candidates = [path]
        else:
            raise FileNotFoundError(f"No such file or directory: '{path}'")
        for candidate in candidates:
            info = describe_file(candidate)
            if info.path not in seen:
                seen.add(info.path)
                found.append(info)
    found.sort(key=lambda f: f.sort_key)
    logger.info("Discovered %d log file(s)", len(found))
    return found


def file_birth_time(path: str) -> datetime:
    """Creation time where the platform records it, else modification time."""
    st = os.stat(path)
    seconds = getattr(st, "st_birthtime", None) or st.st_mtime
    return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(tzinfo=None)


def read_lines(path: str) -> list[str]:
    """Return the text lines of *path*, decoding binary logs first."""
    with open(path, "rb") as f:
        data = f.read()
    if is_binary(data[:len(MAGIC)]):
        logger.debug("Decoding binary log %s", path)
        return decode_lines(data)
    text = data.decode("utf-8", errors="replace")
    lines = [line.rstrip("\r") for line in text.split("\n")]
    if lines and lines[-1] == "":
        lines.pop()
    return lines
