"""Tests for the lumberjack command line entry point."""

from __future__ import annotations

import json
import sqlite3

import pytest

from conftest import ANDROID_HEADER, android_line
from lumberjack.config import load_config
from lumberjack.main import build_cli_parser, main, make_sink
from lumberjack.sink import JsonSink, MemorySink
from lumberjack.sqlite_sink import SqliteSink


@pytest.fixture()
def log_dir(tmp_path):
    directory = tmp_path / "logs"
    directory.mkdir()
    (directory / "cbl_info_1700000000000.cbllog").write_text(
        "\n".join([ANDROID_HEADER, android_line("Opening database"), android_line("Connected!")]) + "\n",
        encoding="utf-8",
    )
    return directory


class TestParser:
    def test_defaults_are_none(self) -> None:
        args = build_cli_parser().parse_args(["logs"])
        assert args.paths == ["logs"]
        assert args.sink is None
        assert args.workers is None
        assert args.reduce_lines is None

    def test_rejects_unknown_sink(self) -> None:
        with pytest.raises(SystemExit):
            build_cli_parser().parse_args(["logs", "--sink", "postgres"])


class TestMakeSink:
    def test_kinds(self, tmp_path) -> None:
        assert isinstance(make_sink(load_config({"sink": "memory"}, env={})), MemorySink)
        json_sink = make_sink(load_config({"sink": "json", "output": str(tmp_path / "j")}, env={}))
        assert isinstance(json_sink, JsonSink)
        sqlite_sink = make_sink(load_config({"output": str(tmp_path / "db.sqlite")}, env={}))
        assert isinstance(sqlite_sink, SqliteSink)
        sqlite_sink.close()


class TestMain:
    def test_sqlite_run(self, log_dir, tmp_path, capsys) -> None:
        db = tmp_path / "out.sqlite"
        report = tmp_path / "report.json"
        code = main([str(log_dir), "--output", str(db), "--workers", "2", "--report", str(report)])
        assert code == 0
        with sqlite3.connect(db) as conn:
            assert conn.execute("SELECT COUNT(*) FROM lines").fetchone() == (3,)
            names = [row[0] for row in conn.execute(
                "SELECT e.name FROM lines l JOIN event_types e ON e.id = l.event_type ORDER BY l.line_num"
            )]
        assert names == ["unclassified", "db_open", "repl_connected"]
        assert json.loads(report.read_text())["totals"]["recorded"] == 3
        assert "1 file(s), 3 line(s) recorded" in capsys.readouterr().out

    def test_json_run(self, log_dir, tmp_path) -> None:
        out = tmp_path / "parsed"
        assert main([str(log_dir), "--sink", "json", "--output", str(out)]) == 0
        assert (out / "event_types.json").exists()
        assert (out / "parsed_1_cbl_info_1700000000000.cbllog.json").exists()

    def test_config_file(self, log_dir, tmp_path) -> None:
        config = tmp_path / "lumberjack.yml"
        config.write_text("sink: memory\nworkers: 1\nreduce_lines: true\n", encoding="utf-8")
        assert main([str(log_dir), "--config", str(config)]) == 0

    def test_bad_catalog_exits_2(self, log_dir, tmp_path) -> None:
        empty = tmp_path / "catalog"
        empty.mkdir()
        assert main([str(log_dir), "--sink", "memory", "--catalog", str(empty)]) == 2

    def test_aborted_file_exits_1(self, log_dir) -> None:
        (log_dir / "junk.log").write_text("nothing to see\n", encoding="utf-8")
        assert main([str(log_dir), "--sink", "memory"]) == 1

    def test_missing_path_exits_1(self, tmp_path) -> None:
        assert main([str(tmp_path / "nope"), "--sink", "memory"]) == 1

    def test_invalid_setting_is_usage_error(self, log_dir) -> None:
        with pytest.raises(SystemExit) as exc:
            main([str(log_dir), "--sink", "memory", "--workers", "0"])
        assert exc.value.code == 2
