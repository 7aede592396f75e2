#!/usr/bin/env python3
"""Lumberjack entry point.

Parses CouchbaseLite logs into structured records:

    lumberjack ./logs --sink sqlite --output cbl.sqlite --report report.json
"""

import argparse
import logging
import signal
import sys
import threading

from lumberjack.catalog import load_catalog
from lumberjack.compiler import compile_catalog
from lumberjack.config import EXECUTORS, SINKS, load_config, load_yaml_config
from lumberjack.errors import CatalogError
from lumberjack.pipeline import ExtractionPipeline
from lumberjack.sink import JsonSink, MemorySink
from lumberjack.sqlite_sink import SqliteSink

LOG_FORMAT = "%(asctime)s [lumberjack] %(levelname)s %(message)s"

logger = logging.getLogger(__name__)

_cancel = threading.Event()


def _signal_handler(sig, frame):
    logger.info("Shutdown signal received, cancelling after the current batch...")
    _cancel.set()


def build_cli_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Parse CouchbaseLite logs into structured records")
    parser.add_argument("paths", nargs="+", help="Log files or directories of log files")
    parser.add_argument("--config", default=None, help="Path to YAML config file")
    parser.add_argument("--catalog", dest="catalog_dir", default=None,
                        help="Pattern catalog directory (default: shipped patterns)")
    parser.add_argument("--sink", choices=SINKS, default=None, help="Record sink (default: sqlite)")
    parser.add_argument("--output", default=None,
                        help="SQLite database file, or output directory for the json sink")
    parser.add_argument("--workers", type=int, default=None, help="Parallelism degree (default: CPU count)")
    parser.add_argument("--executor", choices=EXECUTORS, default=None,
                        help="Line extraction executor (default: thread)")
    parser.add_argument("--report", dest="report_path", default=None, help="Write the run report as JSON")
    parser.add_argument("--reduce-lines", dest="reduce_lines", action="store_true", default=None,
                        help="Include the most frequent unclassified line shapes in the report")
    parser.add_argument("--verbose", action="store_true", help="Debug logging")
    return parser


def make_sink(config):
    if config.sink == "json":
        return JsonSink(config.output)
    if config.sink == "memory":
        return MemorySink()
    return SqliteSink(config.output)


def main(argv=None) -> int:
    parser = build_cli_parser()
    args = parser.parse_args(argv)

    overrides = {
        "catalog_dir": args.catalog_dir,
        "sink": args.sink,
        "output": args.output,
        "workers": args.workers,
        "executor": args.executor,
        "report_path": args.report_path,
        "reduce_lines": args.reduce_lines,
        "log_level": "DEBUG" if args.verbose else None,
    }
    try:
        config = load_config(overrides, load_yaml_config(args.config))
    except ValueError as e:
        parser.error(str(e))

    logging.basicConfig(
        level=getattr(logging, config.log_level.upper()),
        format=LOG_FORMAT,
        stream=sys.stderr,
    )
    logger.info("Config: sink=%s, output=%s, workers=%d, executor=%s",
                config.sink, config.output, config.workers, config.executor)

    try:
        compiled = compile_catalog(load_catalog(config.catalog_dir))
    except CatalogError as e:
        logger.error("%s", e)
        return 2

    _cancel.clear()
    signal.signal(signal.SIGINT, _signal_handler)
    signal.signal(signal.SIGTERM, _signal_handler)

    try:
        with make_sink(config) as sink:
            pipeline = ExtractionPipeline.from_config(compiled, sink, config, cancel_event=_cancel)
            report = pipeline.run(args.paths)
    except FileNotFoundError as e:
        logger.error("%s", e)
        return 1

    print(report.summary())
    if config.report_path:
        report.save(config.report_path)
        logger.info("Report written to %s", config.report_path)

    return 0 if report.ok else 1


if __name__ == "__main__":
    sys.exit(main())
