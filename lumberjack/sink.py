"""Record Sink interface plus the in-memory and JSON implementations."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass

from lumberjack.errors import SinkError
from lumberjack.models import LogFile, ObjectRef, ParsedLine, format_object_path

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ObjectRecord:
    object_id: int
    type_name: str
    native_id: int
    path: str
    parent_id: int | None


class ObjectRegistry:
    """Maps object hierarchy paths to ids for one run.

    Paths registered while a file is open are staged; ``commit`` keeps them,
    ``rollback`` forgets them and gives their ids back.
    """

    def __init__(self):
        self._ids: dict[tuple[ObjectRef, ...], int] = {}
        self._staged: dict[tuple[ObjectRef, ...], int] = {}
        self._next_id = 1

    def get(self, path: tuple[ObjectRef, ...]) -> int | None:
        return self._staged.get(path) or self._ids.get(path)

    def register(self, path: tuple[ObjectRef, ...]) -> tuple[int, list[ObjectRecord]]:
        """Return the id of *path* and the records created for it (ancestors first)."""
        if not path:
            raise ValueError("empty object path")
        created = []
        parent_id = None
        for depth in range(1, len(path) + 1):
            prefix = path[:depth]
            object_id = self.get(prefix)
            if object_id is None:
                object_id = self._next_id
                self._next_id += 1
                self._staged[prefix] = object_id
                ref = prefix[-1]
                created.append(ObjectRecord(
                    object_id=object_id,
                    type_name=ref.type_name,
                    native_id=ref.object_id,
                    path=format_object_path(prefix),
                    parent_id=parent_id,
                ))
            parent_id = object_id
        return parent_id, created

    def reserve(self, next_id: int) -> None:
        """Hand out ids from *next_id* on (ids below it are taken elsewhere)."""
        self._next_id = max(self._next_id, next_id)

    def commit(self) -> None:
        self._ids.update(self._staged)
        self._staged.clear()

    def rollback(self) -> None:
        if self._staged:
            self._next_id = min(self._staged.values())
        self._staged.clear()

    def __len__(self) -> int:
        return len(self._ids)


def line_record(line: ParsedLine, object_id: int | None) -> dict:
    """Persisted shape of one line."""
    return {
        "line_num": line.line_num,
        "level": line.level.name.lower(),
        "timestamp": line.timestamp.isoformat(timespec="microseconds"),
        "domain": line.domain,
        "object_id": object_id,
        "object_path": format_object_path(line.object_path) or None,
        "event_type": line.event_type,
        "event": line.event_name,
        "fields": line.fields or None,
        "message": line.message,
        "error": line.error,
    }


class RecordSink(ABC):
    """Storage boundary of the pipeline.

    Files are delivered one at a time: ``begin_file``, any number of
    ``register_object`` / ``write_batch`` calls, then ``commit_file`` or
    ``discard_file``. A discarded file must leave no trace.
    """

    def __init__(self):
        self.objects = ObjectRegistry()
        self._open_file: int | None = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    def _check_open(self, file_id: int) -> None:
        if self._open_file != file_id:
            raise SinkError(f"file {file_id} is not open (open file: {self._open_file})")

    def describe_events(self, table: list[tuple[int, str]]) -> None:
        """Receive the EventType table once per run."""

    def begin_file(self, log_file: LogFile) -> int:
        if self._open_file is not None:
            raise SinkError(f"file {self._open_file} is still open")
        file_id = self._begin(log_file)
        self._open_file = file_id
        return file_id

    def register_object(self, path: tuple[ObjectRef, ...]) -> int:
        if self._open_file is None:
            raise SinkError("no file is open")
        object_id, created = self.objects.register(path)
        for record in created:
            self._store_object(record)
        return object_id

    def write_batch(self, file_id: int, lines: list[ParsedLine]) -> None:
        self._check_open(file_id)
        rows = []
        for line in lines:
            if not line.recordable or line.line_num is None:
                raise SinkError(f"line {line.index + 1} of {line.source} is not recordable")
            object_id = self.register_object(line.object_path) if line.object_path else None
            rows.append((line, object_id))
        self._store_lines(file_id, rows)

    def commit_file(self, file_id: int) -> None:
        self._check_open(file_id)
        self._commit(file_id)
        self.objects.commit()
        self._open_file = None

    def discard_file(self, file_id: int) -> None:
        if self._open_file != file_id:
            return
        try:
            self._rollback(file_id)
        finally:
            self.objects.rollback()
            self._open_file = None

    def close(self) -> None:
        if self._open_file is not None:
            self.discard_file(self._open_file)

    @abstractmethod
    def _begin(self, log_file: LogFile) -> int: ...

    @abstractmethod
    def _store_object(self, record: ObjectRecord) -> None: ...

    @abstractmethod
    def _store_lines(self, file_id: int, rows: list[tuple[ParsedLine, int | None]]) -> None: ...

    @abstractmethod
    def _commit(self, file_id: int) -> None: ...

    @abstractmethod
    def _rollback(self, file_id: int) -> None: ...


class MemorySink(RecordSink):
    """Keeps committed files in memory."""

    def __init__(self):
        super().__init__()
        self.event_table: list[tuple[int, str]] = []
        self.files: dict[int, LogFile] = {}
        self.lines: dict[int, list[tuple[ParsedLine, int | None]]] = {}
        self.object_records: dict[int, ObjectRecord] = {}
        self._next_file_id = 1
        self._pending: tuple[int, LogFile] | None = None
        self._pending_lines: list[tuple[ParsedLine, int | None]] = []
        self._pending_objects: list[ObjectRecord] = []

    def describe_events(self, table):
        self.event_table = list(table)

    def _begin(self, log_file):
        file_id = self._next_file_id
        self._pending = (file_id, log_file)
        self._pending_lines = []
        self._pending_objects = []
        return file_id

    def _store_object(self, record):
        self._pending_objects.append(record)

    def _store_lines(self, file_id, rows):
        self._pending_lines.extend(rows)

    def _commit(self, file_id):
        _, log_file = self._pending
        self.files[file_id] = log_file
        self.lines[file_id] = self._pending_lines
        for record in self._pending_objects:
            self.object_records[record.object_id] = record
        self._next_file_id += 1
        self._pending = None

    def _rollback(self, file_id):
        self._pending = None
        self._pending_lines = []
        self._pending_objects = []

    def all_lines(self) -> list[ParsedLine]:
        return [line for file_id in sorted(self.lines) for line, _ in self.lines[file_id]]


def _write_json_atomic(path: str, data) -> None:
    directory = os.path.dirname(path)
    tmp_fd, tmp_path = tempfile.mkstemp(dir=directory, suffix=".tmp")
    try:
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
            f.write("\n")
        os.replace(tmp_path, path)
    except Exception:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


class JsonSink(RecordSink):
    """One ``parsed_<file_id>_<file>.json`` document per committed file."""

    def __init__(self, output_dir: str):
        super().__init__()
        self.output_dir = output_dir
        os.makedirs(output_dir, exist_ok=True)
        self._next_file_id = 1
        self._log_file: LogFile | None = None
        self._rows: list[dict] = []
        self._objects: list[ObjectRecord] = []

    def output_path(self, file_id: int, log_file: LogFile) -> str:
        name = os.path.basename(log_file.path)
        return os.path.join(self.output_dir, f"parsed_{file_id}_{name}.json")

    def describe_events(self, table):
        _write_json_atomic(
            os.path.join(self.output_dir, "event_types.json"),
            [{"event_type": num, "name": name} for num, name in table],
        )

    def _begin(self, log_file):
        self._log_file = log_file
        self._rows = []
        self._objects = []
        return self._next_file_id

    def _store_object(self, record):
        self._objects.append(record)

    def _store_lines(self, file_id, rows):
        self._rows.extend(line_record(line, object_id) for line, object_id in rows)

    def _commit(self, file_id):
        log_file = self._log_file
        header = log_file.header
        document = {
            "file": {
                "file_id": file_id,
                "path": log_file.path,
                "level": log_file.level.name.lower() if log_file.level is not None else None,
                "start": log_file.start.isoformat(timespec="microseconds"),
                "dialect": header.dialect if header else None,
                "platform": header.platform if header else None,
                "version": header.version_string if header else None,
                "build": header.build if header else None,
                "commit": header.commit if header else None,
                "os": header.os if header else None,
            },
            "objects": [
                {
                    "object_id": r.object_id,
                    "type": r.type_name,
                    "id": r.native_id,
                    "path": r.path,
                    "parent_id": r.parent_id,
                }
                for r in self._objects
            ],
            "lines": self._rows,
        }
        path = self.output_path(file_id, log_file)
        _write_json_atomic(path, document)
        logger.debug("Wrote %s (%d line(s))", path, len(self._rows))
        self._next_file_id += 1
        self._log_file = None
        self._rows = []
        self._objects = []

    def _rollback(self, file_id):
        self._log_file = None
        self._rows = []
        self._objects = []
