"""Parallel Extraction Pipeline.

Files are extracted concurrently on a file pool; within a file, line chunks
fan out to a chunk pool (threads or processes) after a sequential pre-pass
has fixed every line's date anchor. Chunk results are re-sorted by their
first line index, and files are handed to the Record Sink one at a time in
rollover order, so numbering never depends on completion order.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
from collections import deque
from concurrent.futures import Executor, Future, ProcessPoolExecutor, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from itertools import islice

from lumberjack.compiler import CompiledCatalog, MatcherSet
from lumberjack.errors import (
    DecodeError,
    MissingLevel,
    PipelineCancelled,
    ResolutionError,
    SinkError,
)
from lumberjack.extractor import compute_anchors, extract_chunk, first_timestamp
from lumberjack.files import InputFile, discover, file_birth_time, read_lines
from lumberjack.models import Level, LogFile, ParsedLine
from lumberjack.report import ABORTED, CANCELLED, FAILED, SUCCESS, FileReport, RunReport
from lumberjack.resolver import DEFAULT_SCAN_WINDOW, resolve
from lumberjack.sink import RecordSink

logger = logging.getLogger(__name__)


@dataclass
class ExtractedFile:
    input: InputFile
    report: FileReport
    log_file: LogFile | None = None
    lines: list[ParsedLine] = field(default_factory=list)


def _batches(items: list, size: int):
    for i in range(0, len(items), size):
        yield items[i:i + size]


def number_lines(
    lines: list[ParsedLine], sequence: str, counters: dict[tuple[str, Level], int]
) -> tuple[list[ParsedLine], dict[tuple[str, Level], int]]:
    """Assign per-(sequence, level) line numbers to the recordable lines.

    *counters* holds the last number committed for each stream and is not
    modified; the advanced counters are returned for the caller to keep once
    the file is committed.
    """
    advanced: dict[tuple[str, Level], int] = {}
    numbered = []
    for line in lines:
        if not line.recordable:
            continue
        key = (sequence, line.level)
        n = advanced.get(key, counters.get(key, 0)) + 1
        advanced[key] = n
        numbered.append(dataclasses.replace(line, line_num=n))
    return numbered, advanced


class ExtractionPipeline:
    def __init__(
        self,
        compiled: CompiledCatalog,
        sink: RecordSink,
        workers: int = 1,
        chunk_size: int = 2000,
        batch_size: int = 500,
        scan_window: int = DEFAULT_SCAN_WINDOW,
        executor: str = "thread",
        reduce_lines: bool = False,
        cancel_event: threading.Event | None = None,
    ):
        if workers < 1 or chunk_size < 1 or batch_size < 1 or scan_window < 1:
            raise ValueError("workers, chunk_size, batch_size and scan_window must be positive")
        if executor not in ("thread", "process"):
            raise ValueError(f"Unknown executor '{executor}'")
        self.compiled = compiled
        self.sink = sink
        self.workers = workers
        self.chunk_size = chunk_size
        self.batch_size = batch_size
        self.scan_window = scan_window
        self.executor = executor
        self.reduce_lines = reduce_lines
        self._cancel = cancel_event or threading.Event()

    @classmethod
    def from_config(cls, compiled: CompiledCatalog, sink: RecordSink, config, cancel_event=None):
        return cls(
            compiled,
            sink,
            workers=config.workers,
            chunk_size=config.chunk_size,
            batch_size=config.batch_size,
            scan_window=config.scan_window,
            executor=config.executor,
            reduce_lines=config.reduce_lines,
            cancel_event=cancel_event,
        )

    def cancel(self) -> None:
        """Request cooperative cancellation. Honoured between chunks and batches."""
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def run(self, paths: list[str]) -> RunReport:
        return self.run_files(discover(paths))

    def run_files(self, inputs: list[InputFile]) -> RunReport:
        report = RunReport(reduce_lines=self.reduce_lines)
        inputs = sorted(inputs, key=lambda f: f.sort_key)
        self.sink.describe_events(self.compiled.event_table)
        counters: dict[tuple[str, Level], int] = {}

        chunk_pool = self._make_chunk_pool()
        try:
            with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="lumberjack-file") as file_pool:
                remaining = iter(inputs)
                pending: deque[Future] = deque(
                    file_pool.submit(self._extract_file, inp, chunk_pool)
                    for inp in islice(remaining, self.workers)
                )
                # at most `workers` files are extracted ahead of delivery, which
                # stays in rollover order whatever order extraction finishes in
                while pending:
                    extracted = pending.popleft().result()
                    inp = next(remaining, None)
                    if inp is not None:
                        pending.append(file_pool.submit(self._extract_file, inp, chunk_pool))
                    if extracted.report.status == SUCCESS:
                        self._deliver(extracted, counters, report)
                    self._log_outcome(extracted.report)
                    report.add(extracted.report)
                    del extracted
        finally:
            chunk_pool.shutdown(wait=True, cancel_futures=True)
        return report

    def _make_chunk_pool(self) -> Executor:
        if self.executor == "process":
            return ProcessPoolExecutor(max_workers=self.workers)
        return ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="lumberjack-chunk")

    @staticmethod
    def _log_outcome(file_report: FileReport) -> None:
        if file_report.status == SUCCESS:
            logger.info(
                "Processed %s: %d line(s), %d recorded, %d classified, %d unmatched, %d line error(s)",
                file_report.path, file_report.total_lines, file_report.recorded,
                file_report.classified, file_report.unmatched, file_report.line_error_count,
            )
        elif file_report.status == CANCELLED:
            logger.warning("Cancelled %s", file_report.path)
        else:
            logger.error("%s %s: %s", file_report.status.capitalize(), file_report.path, file_report.reason)

    # ------------------------------------------------------------------
    # Extraction (runs on the file pool)
    # ------------------------------------------------------------------

    def _extract_file(self, inp: InputFile, chunk_pool: Executor) -> ExtractedFile:
        file_report = FileReport(path=inp.path)
        if self._cancel.is_set():
            file_report.status = CANCELLED
            file_report.reason = "cancelled before extraction"
            return ExtractedFile(inp, file_report)

        try:
            lines = read_lines(inp.path)
            resolution = resolve(lines, self.compiled, self.scan_window)
            matcher_set = resolution.matcher_set
            if inp.level is None and matcher_set.level_re is None:
                raise MissingLevel(inp.path)
            start = self._start_time(inp, matcher_set, lines)
            anchors = compute_anchors(matcher_set, lines, start.date())
            parsed = self._extract_lines(inp, matcher_set, lines, anchors, chunk_pool)
        except (ResolutionError, DecodeError, OSError) as e:
            file_report.status = ABORTED
            file_report.reason = str(e)
            return ExtractedFile(inp, file_report)
        except PipelineCancelled as e:
            file_report.status = CANCELLED
            file_report.reason = str(e)
            return ExtractedFile(inp, file_report)

        file_report.header = resolution.header
        file_report.count(parsed)
        log_file = LogFile(
            path=inp.path,
            sequence=inp.sequence,
            start=start,
            level=inp.level,
            header=resolution.header,
        )
        return ExtractedFile(inp, file_report, log_file, parsed)

    @staticmethod
    def _start_time(inp: InputFile, matcher_set: MatcherSet, lines: list[str]):
        if inp.name_start is not None:
            return inp.name_start
        if matcher_set.full_timestamp:
            first = first_timestamp(matcher_set, lines)
            if first is not None:
                return first
        return file_birth_time(inp.path)

    def _extract_lines(
        self,
        inp: InputFile,
        matcher_set: MatcherSet,
        lines: list[str],
        anchors: list,
        chunk_pool: Executor,
    ) -> list[ParsedLine]:
        futures = []
        for start in range(0, len(lines), self.chunk_size):
            if self._cancel.is_set():
                break
            end = start + self.chunk_size
            futures.append(chunk_pool.submit(
                extract_chunk, matcher_set, inp.path, inp.level, start, lines[start:end], anchors[start:end],
            ))

        results: dict[int, list[ParsedLine]] = {}
        for future in as_completed(futures):
            if self._cancel.is_set():
                for f in futures:
                    f.cancel()
                raise PipelineCancelled(f"cancelled while extracting {inp.path}")
            start, chunk = future.result()
            results[start] = chunk
        if self._cancel.is_set():
            raise PipelineCancelled(f"cancelled while extracting {inp.path}")

        parsed: list[ParsedLine] = []
        for start in sorted(results):
            parsed.extend(results[start])
        return parsed

    # ------------------------------------------------------------------
    # Delivery (runs on the caller's thread, one file at a time)
    # ------------------------------------------------------------------

    def _deliver(self, extracted: ExtractedFile, counters: dict, report: RunReport) -> None:
        file_report = extracted.report
        numbered, advanced = number_lines(extracted.lines, extracted.input.sequence, counters)

        file_id = None
        try:
            file_id = self.sink.begin_file(extracted.log_file)
            for path in dict.fromkeys(line.object_path for line in numbered if line.object_path):
                self.sink.register_object(path)
            for batch in _batches(numbered, self.batch_size):
                if self._cancel.is_set():
                    raise PipelineCancelled(f"cancelled while writing {extracted.input.path}")
                self.sink.write_batch(file_id, batch)
            self.sink.commit_file(file_id)
        except PipelineCancelled as e:
            self._discard(file_id)
            file_report.status = CANCELLED
            file_report.reason = str(e)
            return
        except Exception as e:
            error = e if isinstance(e, SinkError) else SinkError(f"{type(e).__name__}: {e}")
            self._discard(file_id)
            file_report.status = FAILED
            file_report.reason = str(error)
            return

        counters.update(advanced)
        report.add_unclassified(numbered)

    def _discard(self, file_id: int | None) -> None:
        if file_id is None:
            return
        try:
            self.sink.discard_file(file_id)
        except Exception:
            logger.exception("Could not discard file %s from the sink", file_id)
