"""Tests for the Record Sink implementations and the object registry."""

from __future__ import annotations

import json
import sqlite3
from dataclasses import replace
from datetime import datetime

import pytest

from lumberjack.errors import SinkError
from lumberjack.models import HeaderInfo, Level, LineStatus, LogFile, ObjectRef, ParsedLine
from lumberjack.sink import JsonSink, MemorySink, ObjectRegistry
from lumberjack.sqlite_sink import SqliteSink

REPL = (ObjectRef("Repl", 76),)
PUSHER = (ObjectRef("Repl", 76), ObjectRef("Pusher", 80))
EVENTS = [(0, "unclassified"), (1, "db_open"), (2, "db_upgrade")]


def _make_line(num: int, message: str = "Opening database", **kwargs) -> ParsedLine:
    defaults = dict(
        source="cbl_info_1.cbllog",
        index=num,
        status=LineStatus.PARSED,
        level=Level.INFO,
        timestamp=datetime(2024, 5, 19, 12, 0, 0, num),
        domain="DB",
        event_type=1,
        event_name="db_open",
        message=message,
        line_num=num,
    )
    defaults.update(kwargs)
    return ParsedLine(**defaults)


def _make_file(path: str = "/logs/cbl_info_1.cbllog") -> LogFile:
    return LogFile(
        path=path,
        sequence="/logs/cbl_info",
        start=datetime(2024, 5, 19, 12, 0, 0),
        level=Level.INFO,
        header=HeaderInfo(dialect="core", platform="C", version=(3, 1, 0), build=12, commit="abc"),
    )


class TestObjectRegistry:
    def test_ancestors_registered_first(self) -> None:
        registry = ObjectRegistry()
        object_id, created = registry.register(PUSHER)
        assert object_id == 2
        assert [(r.object_id, r.path, r.parent_id) for r in created] == [
            (1, "/Repl#76/", None),
            (2, "/Repl#76/Pusher#80/", 1),
        ]

    def test_same_path_same_id(self) -> None:
        registry = ObjectRegistry()
        first, _ = registry.register(REPL)
        second, created = registry.register(REPL)
        assert first == second
        assert created == []

    def test_rollback_returns_ids(self) -> None:
        registry = ObjectRegistry()
        registry.register(REPL)
        registry.commit()
        registry.register(PUSHER)
        registry.rollback()
        assert registry.get(PUSHER) is None
        assert registry.get(REPL) == 1
        object_id, _ = registry.register(PUSHER)
        assert object_id == 2

    def test_reserve(self) -> None:
        registry = ObjectRegistry()
        registry.reserve(10)
        assert registry.register(REPL)[0] == 10

    def test_empty_path_rejected(self) -> None:
        with pytest.raises(ValueError):
            ObjectRegistry().register(())


class TestMemorySink:
    def test_commit_keeps_lines(self) -> None:
        sink = MemorySink()
        sink.describe_events(EVENTS)
        file_id = sink.begin_file(_make_file())
        sink.write_batch(file_id, [_make_line(1, object_path=REPL), _make_line(2)])
        sink.commit_file(file_id)
        assert sink.event_table == EVENTS
        assert [(line.line_num, obj) for line, obj in sink.lines[file_id]] == [(1, 1), (2, None)]
        assert sink.object_records[1].path == "/Repl#76/"

    def test_discard_leaves_no_trace(self) -> None:
        sink = MemorySink()
        file_id = sink.begin_file(_make_file())
        sink.write_batch(file_id, [_make_line(1, object_path=PUSHER)])
        sink.discard_file(file_id)
        assert sink.files == {}
        assert sink.object_records == {}
        assert len(sink.objects) == 0
        next_id = sink.begin_file(_make_file())
        assert next_id == file_id

    def test_one_file_at_a_time(self) -> None:
        sink = MemorySink()
        sink.begin_file(_make_file())
        with pytest.raises(SinkError):
            sink.begin_file(_make_file())

    def test_write_to_closed_file(self) -> None:
        sink = MemorySink()
        with pytest.raises(SinkError):
            sink.write_batch(1, [_make_line(1)])

    def test_unrecordable_line_rejected(self) -> None:
        sink = MemorySink()
        file_id = sink.begin_file(_make_file())
        with pytest.raises(SinkError):
            sink.write_batch(file_id, [_make_line(1, timestamp=None)])
        with pytest.raises(SinkError):
            sink.write_batch(file_id, [_make_line(1, line_num=None)])

    def test_close_discards_open_file(self) -> None:
        with MemorySink() as sink:
            sink.begin_file(_make_file())
        assert sink.files == {}


class TestSqliteSink:
    def _rows(self, sink: SqliteSink, sql: str) -> list:
        return sink.connection.execute(sql).fetchall()

    def test_full_file(self, tmp_path) -> None:
        with SqliteSink(str(tmp_path / "out.sqlite")) as sink:
            sink.describe_events(EVENTS)
            file_id = sink.begin_file(_make_file())
            upgrade = _make_line(
                2, "SCHEMA UPGRADE (3-4)", event_type=2, event_name="db_upgrade",
                fields={"old_ver": 3, "new_ver": 4}, object_path=PUSHER,
            )
            sink.write_batch(file_id, [_make_line(1), upgrade])
            sink.commit_file(file_id)

            assert self._rows(sink, "SELECT id, name FROM event_types ORDER BY id") == EVENTS
            assert self._rows(sink, "SELECT path, level, dialect, version, build FROM files") == [
                ("/logs/cbl_info_1.cbllog", 2, "core", "3.1.0", 12),
            ]
            assert self._rows(sink, "SELECT id, ty, native_id, path, parent_id FROM objects ORDER BY id") == [
                (1, "Repl", 76, "/Repl#76/", None),
                (2, "Pusher", 80, "/Repl#76/Pusher#80/", 1),
            ]
            rows = self._rows(sink, "SELECT line_num, event_type, event_data, object_id FROM lines ORDER BY line_num")
            assert rows[0] == (1, 1, None, None)
            assert rows[1][:2] == (2, 2)
            assert json.loads(rows[1][2]) == {"old_ver": 3, "new_ver": 4}
            assert rows[1][3] == 2

    def test_discard_rolls_back(self, tmp_path) -> None:
        with SqliteSink(str(tmp_path / "out.sqlite")) as sink:
            sink.describe_events(EVENTS)
            file_id = sink.begin_file(_make_file())
            sink.write_batch(file_id, [_make_line(1, object_path=REPL)])
            sink.discard_file(file_id)
            assert self._rows(sink, "SELECT COUNT(*) FROM files") == [(0,)]
            assert self._rows(sink, "SELECT COUNT(*) FROM lines") == [(0,)]
            assert self._rows(sink, "SELECT COUNT(*) FROM objects") == [(0,)]

    def test_duplicate_line_key_fails(self, tmp_path) -> None:
        with SqliteSink(str(tmp_path / "out.sqlite")) as sink:
            sink.describe_events(EVENTS)
            file_id = sink.begin_file(_make_file())
            with pytest.raises(sqlite3.IntegrityError):
                sink.write_batch(file_id, [_make_line(1), _make_line(1)])
            sink.discard_file(file_id)
            assert self._rows(sink, "SELECT COUNT(*) FROM lines") == [(0,)]

    def test_same_line_num_on_other_level_is_fine(self, tmp_path) -> None:
        with SqliteSink(str(tmp_path / "out.sqlite")) as sink:
            sink.describe_events(EVENTS)
            file_id = sink.begin_file(_make_file())
            sink.write_batch(file_id, [_make_line(1), _make_line(1, level=Level.ERROR)])
            sink.commit_file(file_id)
            assert self._rows(sink, "SELECT COUNT(*) FROM lines") == [(2,)]

    def test_reset_and_append(self, tmp_path) -> None:
        db = str(tmp_path / "out.sqlite")
        with SqliteSink(db) as sink:
            sink.describe_events(EVENTS)
            file_id = sink.begin_file(_make_file())
            sink.write_batch(file_id, [_make_line(1, object_path=REPL)])
            sink.commit_file(file_id)

        with SqliteSink(db, reset=False) as sink:
            sink.describe_events(EVENTS)
            file_id = sink.begin_file(_make_file("/logs/cbl_info_2.cbllog"))
            sink.write_batch(file_id, [_make_line(1, object_path=REPL)])
            sink.commit_file(file_id)
            assert file_id == 2
            assert self._rows(sink, "SELECT id FROM objects ORDER BY id") == [(1,), (2,)]

        with SqliteSink(db) as sink:
            assert self._rows(sink, "SELECT COUNT(*) FROM files") == [(0,)]

    def test_unknown_event_type_violates_foreign_key(self, tmp_path) -> None:
        with SqliteSink(str(tmp_path / "out.sqlite")) as sink:
            sink.describe_events(EVENTS)
            file_id = sink.begin_file(_make_file())
            with pytest.raises(sqlite3.IntegrityError):
                sink.write_batch(file_id, [_make_line(1, event_type=99)])
            sink.discard_file(file_id)


class TestJsonSink:
    def test_documents(self, tmp_path) -> None:
        out = tmp_path / "parsed"
        sink = JsonSink(str(out))
        sink.describe_events(EVENTS)
        file_id = sink.begin_file(_make_file())
        sink.write_batch(file_id, [_make_line(1, object_path=REPL)])
        sink.commit_file(file_id)

        events = json.loads((out / "event_types.json").read_text())
        assert events[1] == {"event_type": 1, "name": "db_open"}
        doc = json.loads((out / "parsed_1_cbl_info_1.cbllog.json").read_text())
        assert doc["file"]["version"] == "3.1.0"
        assert doc["file"]["level"] == "info"
        assert doc["objects"] == [
            {"object_id": 1, "type": "Repl", "id": 76, "path": "/Repl#76/", "parent_id": None},
        ]
        line = doc["lines"][0]
        assert line["line_num"] == 1
        assert line["event"] == "db_open"
        assert line["object_path"] == "/Repl#76/"
        assert line["timestamp"] == "2024-05-19T12:00:00.000001"

    def test_same_name_in_two_directories(self, tmp_path) -> None:
        out = tmp_path / "parsed"
        sink = JsonSink(str(out))
        for path in ("/deviceA/device.log", "/deviceB/device.log"):
            file_id = sink.begin_file(_make_file(path))
            sink.write_batch(file_id, [_make_line(1)])
            sink.commit_file(file_id)

        assert sorted(p.name for p in out.iterdir()) == ["parsed_1_device.log.json", "parsed_2_device.log.json"]
        paths = [json.loads((out / name).read_text())["file"]["path"]
                 for name in ("parsed_1_device.log.json", "parsed_2_device.log.json")]
        assert paths == ["/deviceA/device.log", "/deviceB/device.log"]

    def test_discarded_file_writes_nothing(self, tmp_path) -> None:
        sink = JsonSink(str(tmp_path))
        file_id = sink.begin_file(_make_file())
        sink.write_batch(file_id, [_make_line(1)])
        sink.discard_file(file_id)
        assert list(tmp_path.iterdir()) == []

    def test_no_temp_files_left(self, tmp_path) -> None:
        sink = JsonSink(str(tmp_path))
        file_id = sink.begin_file(replace(_make_file(), header=None, level=None))
        sink.write_batch(file_id, [_make_line(1)])
        sink.commit_file(file_id)
        assert [p.name for p in tmp_path.iterdir()] == ["parsed_1_cbl_info_1.cbllog.json"]
