from __future__ import annotations

import queue
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Deque, Dict, List, Optional, Tuple, Union

from .checksum_logging import logger
from .checksum_manifest import FileEntry


DEFAULT_PROGRESS_INTERVAL = 0.1
DEFAULT_SPEED_WINDOW = 5
_MEBIBYTE = 1024 * 1024


class VerificationOutcome(str, Enum):
    OK = "OK"
    CORRUPTED = "CORRUPTED"
    MISSING = "MISSING"
    SIZE_ERROR = "SIZE_ERROR"
    OPEN_ERROR = "OPEN_ERROR"
    CANCELED = "CANCELED"
    UNSUPPORTED_ALGORITHM = "UNSUPPORTED_ALGORITHM"

    @property
    def bucket(self) -> Optional[str]:
        """Reporting bucket: ``ok``, ``corrupted`` or ``missing``."""
        if self is VerificationOutcome.OK:
            return "ok"
        if self is VerificationOutcome.MISSING:
            return "missing"
        if self is VerificationOutcome.CANCELED:
            return None
        return "corrupted"


class Severity(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class VerificationResult:
    entry: FileEntry
    outcome: VerificationOutcome
    size: int = 0
    digest: Optional[str] = None
    detail: str = ""


@dataclass
class OutcomeTally:
    ok: int = 0
    corrupted: int = 0
    missing: int = 0
    outcomes: Dict[str, int] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return self.ok + self.corrupted + self.missing

    def as_dict(self) -> Dict[str, object]:
        return {
            "ok": self.ok,
            "corrupted": self.corrupted,
            "missing": self.missing,
            "outcomes": dict(self.outcomes),
        }


@dataclass(frozen=True)
class RunSummary:
    total_files: int
    elapsed_seconds: int
    was_canceled: bool
    tally: OutcomeTally = field(default_factory=OutcomeTally)

    def as_dict(self) -> Dict[str, object]:
        payload: Dict[str, object] = {
            "total": self.total_files,
            "elapsed_seconds": self.elapsed_seconds,
            "canceled": self.was_canceled,
        }
        payload.update(self.tally.as_dict())
        return payload


@dataclass(frozen=True)
class FileProgress:
    file_name: str
    percent: int
    speed_mbps: float


@dataclass(frozen=True)
class GlobalProgress:
    files_done: int
    files_total: int

    @property
    def percent(self) -> int:
        return self.files_done * 100 // self.files_total if self.files_total else 0


@dataclass(frozen=True)
class LogLine:
    text: str
    severity: Severity = Severity.INFO


@dataclass(frozen=True)
class RunComplete:
    summary: RunSummary

    @property
    def total_files(self) -> int:
        return self.summary.total_files

    @property
    def elapsed_seconds(self) -> int:
        return self.summary.elapsed_seconds

    @property
    def was_canceled(self) -> bool:
        return self.summary.was_canceled


@dataclass(frozen=True)
class RunFailed:
    reason: str


VerificationEvent = Union[FileProgress, GlobalProgress, LogLine, RunComplete, RunFailed]
EventSink = Callable[[VerificationEvent], None]


class EventChannel:
    """Thread-safe hand-off of events from the workers to one consumer."""

    def __init__(self, maxsize: int = 0) -> None:
        self._queue: "queue.Queue[VerificationEvent]" = queue.Queue(maxsize)

    def publish(self, event: VerificationEvent) -> None:
        self._queue.put(event)

    __call__ = publish

    def get(self, timeout: Optional[float] = None) -> Optional[VerificationEvent]:
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> List[VerificationEvent]:
        events: List[VerificationEvent] = []
        try:
            while True:
                events.append(self._queue.get_nowait())
        except queue.Empty:
            pass
        return events


class SpeedWindow:
    """Trailing throughput over the last few ``(timestamp, bytes)`` samples."""

    def __init__(self, max_samples: int = DEFAULT_SPEED_WINDOW, clock: Callable[[], float] = time.monotonic) -> None:
        if max_samples < 2:
            raise ValueError("max_samples must be at least 2")
        self._clock = clock
        self._samples: Deque[Tuple[float, int]] = deque(maxlen=max_samples)

    def add_sample(self, nbytes: int) -> None:
        self._samples.append((self._clock(), nbytes))

    def speed_mbps(self) -> float:
        if len(self._samples) < 2:
            return 0.0
        elapsed = self._samples[-1][0] - self._samples[0][0]
        if elapsed <= 0:
            return 0.0
        # Bytes of the oldest sample were read before the window opened.
        window_bytes = sum(nbytes for _, nbytes in list(self._samples)[1:])
        return (window_bytes / _MEBIBYTE) / elapsed


class ProgressThrottle:
    def __init__(self, interval: float = DEFAULT_PROGRESS_INTERVAL, clock: Callable[[], float] = time.monotonic) -> None:
        self.interval = interval
        self._clock = clock
        self._lock = threading.Lock()
        self._last: Optional[float] = None

    def should_forward(self) -> bool:
        with self._lock:
            now = self._clock()
            if self._last is None or now - self._last >= self.interval:
                self._last = now
                return True
            return False


def format_file_size(num_bytes: int) -> str:
    units = ("B", "KB", "MB", "GB")
    size = float(num_bytes)
    index = 0
    while size >= 1024 and index < len(units) - 1:
        size /= 1024
        index += 1
    return f"{size:.2f} {units[index]}"


_LOG_STYLE: Dict[VerificationOutcome, Tuple[str, str, Severity]] = {
    VerificationOutcome.OK: ("[OK]", "OK", Severity.SUCCESS),
    VerificationOutcome.CORRUPTED: ("[ERR]", "CORRUPTED", Severity.ERROR),
    VerificationOutcome.SIZE_ERROR: ("[ERR]", "ERROR", Severity.ERROR),
    VerificationOutcome.OPEN_ERROR: ("[ERR]", "ERROR", Severity.ERROR),
    VerificationOutcome.UNSUPPORTED_ALGORITHM: ("[ERR]", "ERROR", Severity.ERROR),
    VerificationOutcome.MISSING: ("[?]", "MISSING", Severity.WARNING),
}


def result_log_line(result: VerificationResult) -> LogLine:
    prefix, label, severity = _LOG_STYLE[result.outcome]
    text = f"{prefix} {result.entry.path} ({format_file_size(result.size)}) - {label}"
    return LogLine(text, severity)


def report_lines(summary: RunSummary) -> List[LogLine]:
    if summary.was_canceled:
        return [LogLine("Canceled by user.", Severity.ERROR)]
    total = summary.total_files
    tally = summary.tally

    def _line(label: str, count: int, severity: Severity) -> LogLine:
        share = (count / total * 100.0) if total else 0.0
        return LogLine(f"  {label}: {count} ({share:.2f}%)", severity)

    return [
        LogLine("--- FINAL REPORT ---"),
        LogLine(f"Files: {total}"),
        _line("[OK] Valid", tally.ok, Severity.SUCCESS),
        _line("[ERR] Corrupted", tally.corrupted, Severity.ERROR),
        _line("[?] Missing", tally.missing, Severity.WARNING),
        LogLine(f"Completed ({summary.elapsed_seconds} sec)", Severity.SUCCESS),
    ]


class ProgressAggregator:
    """Forwards worker progress to the sink without flooding it.

    Per-file updates share one throttle across all workers; the 0% and 100%
    updates of a file always go through. Files are named by their manifest
    path so entries sharing a basename stay distinguishable.
    """

    def __init__(
        self,
        sink: EventSink,
        interval: float = DEFAULT_PROGRESS_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._sink = sink
        self._throttle = ProgressThrottle(interval, clock)

    def file_progress(self, path: str, percent: int, speed_mbps: float = 0.0, force: bool = False) -> bool:
        if not force and not self._throttle.should_forward():
            return False
        percent = max(0, min(100, int(percent)))
        self._sink(FileProgress(path, percent, max(0.0, speed_mbps)))
        return True

    def global_progress(self, files_done: int, files_total: int) -> None:
        self._sink(GlobalProgress(files_done, files_total))

    def log(self, text: str, severity: Severity = Severity.INFO) -> None:
        logger.debug(text)
        self._sink(LogLine(text, severity))

    def file_finished(self, result: VerificationResult, files_done: int, files_total: int) -> None:
        self.global_progress(files_done, files_total)
        line = result_log_line(result)
        logger.debug(line.text)
        self._sink(line)

    def run_complete(self, summary: RunSummary) -> None:
        if summary.was_canceled:
            logger.info(f"Verification canceled after {summary.tally.total}/{summary.total_files} files")
        else:
            logger.info(
                f"Verified {summary.total_files} files in {summary.elapsed_seconds}s: "
                f"{summary.tally.ok} ok, {summary.tally.corrupted} corrupted, {summary.tally.missing} missing"
            )
        self._sink(RunComplete(summary))

    def run_failed(self, reason: str) -> None:
        logger.error(f"Error: {reason}.")
        self._sink(RunFailed(reason))


__all__ = [
    "EventChannel",
    "EventSink",
    "FileProgress",
    "GlobalProgress",
    "LogLine",
    "OutcomeTally",
    "ProgressAggregator",
    "ProgressThrottle",
    "RunComplete",
    "RunFailed",
    "RunSummary",
    "Severity",
    "SpeedWindow",
    "VerificationEvent",
    "VerificationOutcome",
    "VerificationResult",
    "format_file_size",
    "report_lines",
    "result_log_line",
]
