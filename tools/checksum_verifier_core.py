from __future__ import annotations

import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

from .checksum_hashing import (
    DEFAULT_CHUNK_SIZE,
    HashAlgorithmKind,
    crc32c_hardware_available,
    digests_match,
    is_supported,
    new_hasher,
)
from .checksum_logging import logger
from .checksum_manifest import (
    MANIFEST_CANDIDATES,
    FileEntry,
    Manifest,
    ManifestError,
    ManifestNotFoundError,
    find_manifest,
    load_manifest,
    require_entries,
)
from .checksum_progress import (
    DEFAULT_PROGRESS_INTERVAL,
    DEFAULT_SPEED_WINDOW,
    EventSink,
    OutcomeTally,
    ProgressAggregator,
    RunSummary,
    SpeedWindow,
    VerificationOutcome,
    VerificationResult,
)


_MAX_WORKERS = 4
_MIN_WORKERS = 2


def default_worker_count() -> int:
    cpus = os.cpu_count() or _MIN_WORKERS
    return max(_MIN_WORKERS, min(cpus, _MAX_WORKERS))


class AtomicCounter:
    def __init__(self, start: int = 0) -> None:
        self._value = start
        self._lock = threading.Lock()

    def fetch_add(self, amount: int = 1) -> int:
        with self._lock:
            previous = self._value
            self._value += amount
            return previous

    def increment(self) -> int:
        return self.fetch_add(1) + 1

    @property
    def value(self) -> int:
        with self._lock:
            return self._value


class RunContext:
    """Mutable state shared by the workers of one verification run."""

    def __init__(self, total_files: int, cancel_event: threading.Event) -> None:
        self.total_files = total_files
        self.cancel_event = cancel_event
        self.cursor = AtomicCounter()
        self.processed = AtomicCounter()
        self._lock = threading.Lock()
        self._counts: Dict[VerificationOutcome, int] = {}
        self._results: List[VerificationResult] = []

    @property
    def canceled(self) -> bool:
        return self.cancel_event.is_set()

    def claim(self) -> Optional[int]:
        index = self.cursor.fetch_add(1)
        if index >= self.total_files:
            return None
        return index

    def record(self, result: VerificationResult) -> None:
        if result.outcome is VerificationOutcome.CANCELED:
            return
        with self._lock:
            self._counts[result.outcome] = self._counts.get(result.outcome, 0) + 1
            self._results.append(result)

    @property
    def results(self) -> List[VerificationResult]:
        with self._lock:
            return list(self._results)

    def tally(self) -> OutcomeTally:
        with self._lock:
            counts = dict(self._counts)
        tally = OutcomeTally(outcomes={outcome.value: count for outcome, count in counts.items()})
        for outcome, count in counts.items():
            bucket = outcome.bucket
            setattr(tally, bucket, getattr(tally, bucket) + count)
        return tally


class Verifier:
    def __init__(
        self,
        context: RunContext,
        aggregator: ProgressAggregator,
        base_dir: Path,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        speed_window: int = DEFAULT_SPEED_WINDOW,
        crc32c_engine: str = "auto",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self.context = context
        self.aggregator = aggregator
        self.base_dir = base_dir
        self.chunk_size = chunk_size
        self.speed_window = speed_window
        self.crc32c_engine = crc32c_engine
        self._clock = clock

    def resolve(self, entry: FileEntry) -> Path:
        path = Path(entry.path)
        if path.is_absolute():
            return path
        return self.base_dir / path

    def verify(
        self,
        entry: FileEntry,
        algorithm: HashAlgorithmKind,
        cancel_event: threading.Event,
    ) -> VerificationResult:
        path = self.resolve(entry)
        self.aggregator.file_progress(entry.path, 0, 0.0, force=True)

        if not os.path.exists(path):
            return self._finish(entry, VerificationOutcome.MISSING)
        try:
            size = os.path.getsize(path)
        except OSError as exc:
            return self._finish(entry, VerificationOutcome.SIZE_ERROR, detail=str(exc))
        if not is_supported(algorithm):
            return self._finish(
                entry, VerificationOutcome.UNSUPPORTED_ALGORITHM, size, detail=f"Unsupported algorithm: {algorithm.value}"
            )
        try:
            handle = open(path, "rb")
        except OSError as exc:
            return self._finish(entry, VerificationOutcome.OPEN_ERROR, size, detail=str(exc))

        hasher = new_hasher(algorithm, self.crc32c_engine)
        speed = SpeedWindow(self.speed_window, self._clock)
        read_total = 0
        with handle:
            while True:
                # Once every byte is read only the EOF read is left; finish the file.
                if cancel_event.is_set() and not (size and read_total == size):
                    return VerificationResult(entry, VerificationOutcome.CANCELED, size)
                try:
                    chunk = handle.read(self.chunk_size)
                except OSError as exc:
                    return self._finish(entry, VerificationOutcome.OPEN_ERROR, size, detail=str(exc))
                if not chunk:
                    break
                hasher.update(chunk)
                read_total += len(chunk)
                speed.add_sample(len(chunk))
                percent = min(100, read_total * 100 // size) if size else 0
                self.aggregator.file_progress(entry.path, percent, speed.speed_mbps())

        digest = hasher.finalize()
        if digests_match(digest, entry.expected_digest):
            outcome = VerificationOutcome.OK
        else:
            outcome = VerificationOutcome.CORRUPTED
        result = self._finish(entry, outcome, size, digest)
        self.aggregator.file_progress(entry.path, 100, speed.speed_mbps(), force=True)
        return result

    def _finish(
        self,
        entry: FileEntry,
        outcome: VerificationOutcome,
        size: int = 0,
        digest: Optional[str] = None,
        detail: str = "",
    ) -> VerificationResult:
        result = VerificationResult(entry, outcome, size, digest, detail)
        self.context.record(result)
        return result


class WorkerPool:
    """Fixed number of threads; the executor exit is the join barrier."""

    def __init__(self, worker_count: Optional[int] = None) -> None:
        self.worker_count = worker_count if worker_count and worker_count > 0 else default_worker_count()

    def run(self, worker: Callable[[int], None]) -> None:
        with ThreadPoolExecutor(max_workers=self.worker_count, thread_name_prefix="checksum-verify") as executor:
            futures = [executor.submit(worker, worker_id) for worker_id in range(self.worker_count)]
        for future in futures:
            future.result()


@dataclass
class ChecksumVerifierConfig:
    directory: Path = field(default_factory=Path.cwd)
    manifest: Optional[Path] = None
    candidates: Sequence[str] = MANIFEST_CANDIDATES
    thread_count: Optional[int] = None
    chunk_size: int = DEFAULT_CHUNK_SIZE
    progress_interval: float = DEFAULT_PROGRESS_INTERVAL
    speed_window: int = DEFAULT_SPEED_WINDOW
    crc32c_engine: str = "auto"


@dataclass
class RunReport:
    manifest: Optional[Manifest] = None
    summary: Optional[RunSummary] = None
    results: List[VerificationResult] = field(default_factory=list)
    failure: Optional[str] = None

    @property
    def all_ok(self) -> bool:
        if self.failure or self.summary is None or self.summary.was_canceled:
            return False
        return self.summary.tally.ok == self.summary.total_files


class ChecksumVerifierCore:
    def __init__(
        self,
        config: ChecksumVerifierConfig,
        stop_event: threading.Event,
        sink: EventSink,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.stop_event = stop_event
        self.aggregator = ProgressAggregator(sink, config.progress_interval, clock)
        self._clock = clock

    def load_manifest(self) -> Manifest:
        if self.config.manifest is None:
            return find_manifest(Path(self.config.directory), self.config.candidates)
        path = Path(self.config.manifest)
        if not path.is_absolute():
            path = Path(self.config.directory) / path
        if not path.is_file():
            raise ManifestNotFoundError(f"No manifest found: {path}")
        return require_entries(load_manifest(path))

    def run(self) -> RunReport:
        try:
            manifest = self.load_manifest()
        except ManifestError as exc:
            self.aggregator.run_failed(str(exc))
            return RunReport(failure=str(exc))

        self.aggregator.log(f"Manifest: {manifest.path.name if manifest.path else '<memory>'}")
        return self.run_manifest(manifest)

    def run_manifest(self, manifest: Manifest) -> RunReport:
        total = len(manifest)
        context = RunContext(total, self.stop_event)
        pool = WorkerPool(self.config.thread_count)
        verifier = Verifier(
            context,
            self.aggregator,
            manifest.base_dir,
            chunk_size=self.config.chunk_size,
            speed_window=self.config.speed_window,
            crc32c_engine=self.config.crc32c_engine,
            clock=self._clock,
        )
        logger.info(f"Verifying {total} files ({manifest.algorithm.value}) with {pool.worker_count} workers")
        if manifest.algorithm is HashAlgorithmKind.CRC32C:
            logger.debug(
                f"CRC32C engine: {self.config.crc32c_engine} (hardware available: {crc32c_hardware_available()})"
            )
        self.aggregator.global_progress(0, total)

        def _worker(worker_id: int) -> None:
            self._drain(worker_id, manifest, context, verifier)

        start = self._clock()
        pool.run(_worker)
        elapsed = int(self._clock() - start)

        summary = RunSummary(total, elapsed, context.canceled, context.tally())
        self.aggregator.run_complete(summary)
        return RunReport(manifest=manifest, summary=summary, results=context.results)

    def _drain(self, worker_id: int, manifest: Manifest, context: RunContext, verifier: Verifier) -> None:
        logger.debug(f"Worker {worker_id} started")
        while not context.canceled:
            index = context.claim()
            if index is None:
                break
            result = verifier.verify(manifest.entries[index], manifest.algorithm, context.cancel_event)
            if result.outcome is VerificationOutcome.CANCELED:
                break
            files_done = context.processed.increment()
            self.aggregator.file_finished(result, files_done, context.total_files)
        logger.debug(f"Worker {worker_id} stopped")


__all__ = [
    "AtomicCounter",
    "ChecksumVerifierConfig",
    "ChecksumVerifierCore",
    "RunContext",
    "RunReport",
    "Verifier",
    "WorkerPool",
    "default_worker_count",
]
