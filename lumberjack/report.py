"""Run report: per-file outcome, line counters and an optional digest of unclassified lines."""

from __future__ import annotations

import json
import os
import re
import tempfile
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone

from lumberjack.models import HeaderInfo, LineStatus, ParsedLine

SUCCESS = "success"
ABORTED = "aborted"
FAILED = "failed"
CANCELLED = "cancelled"

TOP_SHAPES = 20

_DOCID_RE = re.compile(r"\w+::\w{8}-\w{4}-\w{4}-\w{4}-\w{12}")
_REVID_RE = re.compile(r"(#)?\d+-\w{32}")
_DICT_RE = re.compile(r"\{(\W\w+\W:.*,)*\W\w+\W:.*")
_QUERY_RE = re.compile(r"SELECT fl_result\(.*FROM.*")
_DIGITS_RE = re.compile(r"\d+")
_QUOTED_RE = re.compile(r"^'.*'")
_HEX_RE = re.compile(r"^[0-9a-fA-F]+$")


def _reduce_word(word: str) -> str:
    if _DOCID_RE.search(word):
        return "{DOCID}"
    if _REVID_RE.search(word):
        return "{REVID}"
    if _QUOTED_RE.match(word):
        return "{QUOTED}"
    if _HEX_RE.match(word) and not word.isdigit():
        return "{HEX}"
    if any(c.isdigit() for c in word):
        return _DIGITS_RE.sub("{NUMBER}", word)
    return word


def reduce_line(message: str) -> str:
    """Collapse a residual message into its shape, so similar lines group together.

    "Saved 'doc1' rev 2-abc as seq 12" becomes "Saved {QUOTED} rev {NUMBER}-abc as seq {NUMBER}".
    """
    m = _DICT_RE.search(message)
    if m:
        message = message[:m.start()] + "{DICT}"
    m = _QUERY_RE.search(message)
    if m:
        message = message[:m.start()] + "{QUERY}"
    return " ".join(_reduce_word(word) for word in message.split())


@dataclass
class FileReport:
    path: str
    status: str = SUCCESS
    header: HeaderInfo | None = None
    total_lines: int = 0
    recorded: int = 0
    classified: int = 0
    unclassified: int = 0
    unmatched: int = 0
    line_errors: dict[str, int] = field(default_factory=dict)
    reason: str | None = None

    @property
    def line_error_count(self) -> int:
        return sum(self.line_errors.values())

    def count(self, lines: list[ParsedLine]) -> None:
        self.total_lines = len(lines)
        for line in lines:
            if line.status is LineStatus.UNMATCHED:
                self.unmatched += 1
            if line.error_kind:
                self.line_errors[line.error_kind] = self.line_errors.get(line.error_kind, 0) + 1
            if line.recordable:
                self.recorded += 1
                if line.classified:
                    self.classified += 1
                else:
                    self.unclassified += 1

    def to_dict(self) -> dict:
        header = None
        if self.header is not None:
            header = {
                "dialect": self.header.dialect,
                "platform": self.header.platform,
                "version": self.header.version_string,
                "build": self.header.build,
                "commit": self.header.commit,
                "os": self.header.os,
            }
        return {
            "path": self.path,
            "status": self.status,
            "header": header,
            "total_lines": self.total_lines,
            "recorded": self.recorded,
            "classified": self.classified,
            "unclassified": self.unclassified,
            "unmatched": self.unmatched,
            "line_errors": dict(self.line_errors),
            "reason": self.reason,
        }


class RunReport:
    """Aggregates FileReports for one run. Re-reporting a path replaces its entry."""

    def __init__(self, reduce_lines: bool = False):
        self.reduce_lines = reduce_lines
        self._files: dict[str, FileReport] = {}
        self._shapes: Counter = Counter()

    def add(self, report: FileReport) -> None:
        self._files[report.path] = report

    def add_unclassified(self, lines: list[ParsedLine]) -> None:
        if not self.reduce_lines:
            return
        for line in lines:
            if line.recordable and not line.classified and line.message:
                self._shapes[reduce_line(line.message)] += 1

    @property
    def files(self) -> list[FileReport]:
        return list(self._files.values())

    @property
    def ok(self) -> bool:
        return all(f.status == SUCCESS for f in self._files.values())

    def totals(self) -> dict:
        totals = {
            "files": len(self._files),
            "total_lines": 0,
            "recorded": 0,
            "classified": 0,
            "unclassified": 0,
            "unmatched": 0,
            "line_errors": 0,
        }
        status_counts: dict[str, int] = {}
        error_kinds: dict[str, int] = {}
        for f in self._files.values():
            status_counts[f.status] = status_counts.get(f.status, 0) + 1
            totals["total_lines"] += f.total_lines
            totals["recorded"] += f.recorded
            totals["classified"] += f.classified
            totals["unclassified"] += f.unclassified
            totals["unmatched"] += f.unmatched
            totals["line_errors"] += f.line_error_count
            for k, v in f.line_errors.items():
                error_kinds[k] = error_kinds.get(k, 0) + v
        totals["status"] = status_counts
        totals["line_error_kinds"] = error_kinds
        return totals

    def top_shapes(self, limit: int = TOP_SHAPES) -> list[tuple[str, int]]:
        return sorted(self._shapes.items(), key=lambda kv: (-kv[1], kv[0]))[:limit]

    def to_dict(self) -> dict:
        data = {
            "files": [f.to_dict() for f in self._files.values()],
            "totals": self.totals(),
            "generated_at": datetime.now(timezone.utc).isoformat(),
        }
        if self.reduce_lines:
            data["unclassified_shapes"] = [
                {"shape": shape, "count": count} for shape, count in self.top_shapes()
            ]
        return data

    def summary(self) -> str:
        lines = []
        for f in self._files.values():
            if f.status == SUCCESS:
                lines.append(
                    f"  {f.path}: {f.status} ({f.recorded} recorded, {f.classified} classified, "
                    f"{f.unmatched} unmatched, {f.line_error_count} line error(s))"
                )
            else:
                lines.append(f"  {f.path}: {f.status} ({f.reason})")
        t = self.totals()
        lines.append(
            f"{t['files']} file(s), {t['recorded']} line(s) recorded, {t['classified']} classified, "
            f"{t['unmatched']} unmatched, {t['line_errors']} line error(s)"
        )
        if self.reduce_lines and self._shapes:
            lines.append("Most frequent unclassified lines:")
            for shape, count in self.top_shapes():
                lines.append(f"  {count:>6}  {shape}")
        return "\n".join(lines)

    def save(self, path: str) -> None:
        """Write the report as JSON via a temp file and rename."""
        directory = os.path.dirname(os.path.abspath(path))
        os.makedirs(directory, exist_ok=True)
        tmp_fd, tmp_path = tempfile.mkstemp(dir=directory, suffix=".tmp")
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as f:
                json.dump(self.to_dict(), f, indent=2)
                f.write("\n")
            os.replace(tmp_path, path)
        except Exception:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
