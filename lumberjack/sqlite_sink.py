"""Relational Record Sink backed by SQLite. One transaction per file."""

from __future__ import annotations

import logging
import os
import sqlite3

from lumberjack.models import LogFile, ParsedLine, serialize_fields
from lumberjack.sink import ObjectRecord, RecordSink

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS event_types(
    id    INTEGER PRIMARY KEY NOT NULL,
    name  TEXT    NOT NULL UNIQUE
);

CREATE TABLE IF NOT EXISTS files(
    id        INTEGER   PRIMARY KEY NOT NULL,
    path      TEXT      NOT NULL,
    level     INTEGER,
    timestamp TIMESTAMP NOT NULL,
    dialect   TEXT,
    platform  TEXT,
    version   TEXT,
    build     INTEGER,
    commit_id TEXT,
    os        TEXT
);

CREATE TABLE IF NOT EXISTS objects(
    id        INTEGER PRIMARY KEY NOT NULL,
    ty        TEXT    NOT NULL,
    native_id INTEGER NOT NULL,
    path      TEXT    NOT NULL,
    parent_id INTEGER REFERENCES objects(id)
);

CREATE TABLE IF NOT EXISTS lines(
    file_id    INTEGER   NOT NULL REFERENCES files(id),
    level      INTEGER   NOT NULL,
    line_num   INTEGER   NOT NULL,
    timestamp  TIMESTAMP NOT NULL,
    domain     TEXT      NOT NULL,
    message    TEXT      NOT NULL,
    event_type INTEGER   NOT NULL REFERENCES event_types(id),
    event_data TEXT,
    object_id  INTEGER   REFERENCES objects(id),
    error      TEXT,
    PRIMARY KEY (file_id, level, line_num)
);
"""

TABLES = ("lines", "objects", "files", "event_types")


class SqliteSink(RecordSink):
    def __init__(self, db_path: str, reset: bool = True):
        super().__init__()
        self.db_path = db_path
        directory = os.path.dirname(os.path.abspath(db_path))
        os.makedirs(directory, exist_ok=True)
        # autocommit mode; transactions are explicit
        self._conn = sqlite3.connect(db_path, isolation_level=None, check_same_thread=False)
        self._conn.execute("PRAGMA foreign_keys = ON")
        if reset:
            for table in TABLES:
                self._conn.execute(f"DROP TABLE IF EXISTS {table}")
        self._conn.executescript(SCHEMA)
        if not reset:
            self._resume_object_ids()
        logger.info("Opened SQLite sink %s", db_path)

    def _resume_object_ids(self) -> None:
        # object identity is per run; only keep new ids clear of existing rows
        row = self._conn.execute("SELECT COALESCE(MAX(id), 0) FROM objects").fetchone()
        self.objects.reserve(row[0] + 1)

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    def describe_events(self, table):
        self._conn.execute("BEGIN")
        try:
            self._conn.executemany(
                "INSERT OR REPLACE INTO event_types(id, name) VALUES (?, ?)", table
            )
        except Exception:
            self._conn.execute("ROLLBACK")
            raise
        self._conn.execute("COMMIT")

    def _begin(self, log_file: LogFile) -> int:
        header = log_file.header
        self._conn.execute("BEGIN")
        try:
            cur = self._conn.execute(
                "INSERT INTO files(path, level, timestamp, dialect, platform, version, build, commit_id, os) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    log_file.path,
                    int(log_file.level) if log_file.level is not None else None,
                    log_file.start.isoformat(sep=" "),
                    header.dialect if header else None,
                    header.platform if header else None,
                    header.version_string if header else None,
                    header.build if header else None,
                    header.commit if header else None,
                    header.os if header else None,
                ),
            )
        except Exception:
            self._conn.execute("ROLLBACK")
            raise
        return cur.lastrowid

    def _store_object(self, record: ObjectRecord) -> None:
        self._conn.execute(
            "INSERT INTO objects(id, ty, native_id, path, parent_id) VALUES (?, ?, ?, ?, ?)",
            (record.object_id, record.type_name, record.native_id, record.path, record.parent_id),
        )

    def _store_lines(self, file_id: int, rows: list[tuple[ParsedLine, int | None]]) -> None:
        self._conn.executemany(
            "INSERT INTO lines(file_id, level, line_num, timestamp, domain, message, "
            "event_type, event_data, object_id, error) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            [
                (
                    file_id,
                    int(line.level),
                    line.line_num,
                    line.timestamp.isoformat(sep=" ", timespec="microseconds"),
                    line.domain,
                    line.message,
                    line.event_type,
                    serialize_fields(line.fields),
                    object_id,
                    line.error,
                )
                for line, object_id in rows
            ],
        )

    def _commit(self, file_id: int) -> None:
        self._conn.execute("COMMIT")

    def _rollback(self, file_id: int) -> None:
        if self._conn.in_transaction:
            self._conn.execute("ROLLBACK")

    def close(self) -> None:
        super().close()
        self._conn.close()
