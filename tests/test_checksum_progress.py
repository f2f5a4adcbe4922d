from __future__ import annotations

import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from tools.checksum_manifest import FileEntry
from tools.checksum_progress import (
    EventChannel,
    FileProgress,
    GlobalProgress,
    LogLine,
    OutcomeTally,
    ProgressAggregator,
    ProgressThrottle,
    RunComplete,
    RunFailed,
    RunSummary,
    Severity,
    SpeedWindow,
    VerificationOutcome,
    VerificationResult,
    format_file_size,
    report_lines,
    result_log_line,
)


class FakeClock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def test_throttle_forwards_first_then_waits_for_interval():
    clock = FakeClock(10.0)
    throttle = ProgressThrottle(0.5, clock)
    assert throttle.should_forward()
    clock.advance(0.25)
    assert not throttle.should_forward()
    clock.advance(0.25)
    assert throttle.should_forward()
    assert not throttle.should_forward()


def test_aggregator_forced_updates_bypass_throttle():
    clock = FakeClock()
    events = []
    aggregator = ProgressAggregator(events.append, 0.1, clock)
    assert aggregator.file_progress("dir/a.bin", 0, force=True)
    assert aggregator.file_progress("dir/a.bin", 10)
    assert not aggregator.file_progress("dir/a.bin", 20)
    assert aggregator.file_progress("dir/a.bin", 100, force=True)
    assert [e.percent for e in events] == [0, 10, 100]
    assert all(e.file_name == "dir/a.bin" for e in events)


def test_aggregator_clamps_percent_and_speed():
    events = []
    aggregator = ProgressAggregator(events.append, 0.0, FakeClock())
    aggregator.file_progress("a.bin", 150, -3.0)
    aggregator.file_progress("a.bin", -5, 2.5)
    assert events == [FileProgress("a.bin", 100, 0.0), FileProgress("a.bin", 0, 2.5)]


def test_throttle_is_shared_between_files():
    clock = FakeClock()
    events = []
    aggregator = ProgressAggregator(events.append, 1.0, clock)
    assert aggregator.file_progress("a.bin", 5)
    assert not aggregator.file_progress("b.bin", 5)
    clock.advance(1.0)
    assert aggregator.file_progress("b.bin", 7)
    assert [e.file_name for e in events] == ["a.bin", "b.bin"]


def test_speed_window_needs_two_samples():
    clock = FakeClock()
    window = SpeedWindow(5, clock)
    assert window.speed_mbps() == 0.0
    window.add_sample(1024 * 1024)
    assert window.speed_mbps() == 0.0


def test_speed_window_excludes_oldest_sample_bytes():
    clock = FakeClock()
    window = SpeedWindow(5, clock)
    window.add_sample(1024 * 1024)
    clock.advance(1.0)
    window.add_sample(2 * 1024 * 1024)
    assert window.speed_mbps() == pytest.approx(2.0)


def test_speed_window_drops_old_samples():
    clock = FakeClock()
    window = SpeedWindow(2, clock)
    window.add_sample(100 * 1024 * 1024)
    clock.advance(1.0)
    window.add_sample(1024 * 1024)
    clock.advance(1.0)
    window.add_sample(1024 * 1024)
    assert window.speed_mbps() == pytest.approx(1.0)


def test_speed_window_zero_elapsed_is_zero():
    window = SpeedWindow(5, FakeClock())
    window.add_sample(10)
    window.add_sample(10)
    assert window.speed_mbps() == 0.0


def test_speed_window_rejects_tiny_window():
    with pytest.raises(ValueError):
        SpeedWindow(1)


def test_global_progress_percent():
    assert GlobalProgress(1, 3).percent == 33
    assert GlobalProgress(0, 0).percent == 0
    assert GlobalProgress(4, 4).percent == 100


@pytest.mark.parametrize(
    "size, text",
    [(0, "0.00 B"), (1023, "1023.00 B"), (1536, "1.50 KB"), (5 * 1024 * 1024, "5.00 MB"), (3 * 1024 ** 4, "3072.00 GB")],
)
def test_format_file_size(size, text):
    assert format_file_size(size) == text


def test_result_log_lines_by_outcome():
    entry = FileEntry("a.bin", "00")
    ok = result_log_line(VerificationResult(entry, VerificationOutcome.OK, 2048))
    assert ok == LogLine("[OK] a.bin (2.00 KB) - OK", Severity.SUCCESS)
    bad = result_log_line(VerificationResult(entry, VerificationOutcome.CORRUPTED, 10))
    assert bad.text.endswith("- CORRUPTED") and bad.severity is Severity.ERROR
    missing = result_log_line(VerificationResult(entry, VerificationOutcome.MISSING))
    assert missing.text.startswith("[?]") and missing.severity is Severity.WARNING
    failed = result_log_line(VerificationResult(entry, VerificationOutcome.OPEN_ERROR))
    assert failed.text.endswith("- ERROR")


def test_outcome_buckets():
    assert VerificationOutcome.OK.bucket == "ok"
    assert VerificationOutcome.MISSING.bucket == "missing"
    assert VerificationOutcome.CANCELED.bucket is None
    for outcome in (
        VerificationOutcome.CORRUPTED,
        VerificationOutcome.SIZE_ERROR,
        VerificationOutcome.OPEN_ERROR,
        VerificationOutcome.UNSUPPORTED_ALGORITHM,
    ):
        assert outcome.bucket == "corrupted"


def test_report_lines_final_report():
    summary = RunSummary(4, 3, False, OutcomeTally(ok=2, corrupted=1, missing=1))
    texts = [line.text for line in report_lines(summary)]
    assert texts == [
        "--- FINAL REPORT ---",
        "Files: 4",
        "  [OK] Valid: 2 (50.00%)",
        "  [ERR] Corrupted: 1 (25.00%)",
        "  [?] Missing: 1 (25.00%)",
        "Completed (3 sec)",
    ]


def test_report_lines_canceled():
    lines = report_lines(RunSummary(4, 1, True, OutcomeTally(ok=1)))
    assert lines == [LogLine("Canceled by user.", Severity.ERROR)]


def test_summary_as_dict():
    summary = RunSummary(2, 0, False, OutcomeTally(ok=1, missing=1, outcomes={"OK": 1, "MISSING": 1}))
    assert summary.as_dict() == {
        "total": 2,
        "elapsed_seconds": 0,
        "canceled": False,
        "ok": 1,
        "corrupted": 0,
        "missing": 1,
        "outcomes": {"OK": 1, "MISSING": 1},
    }


def test_aggregator_file_finished_emits_global_then_log():
    events = []
    aggregator = ProgressAggregator(events.append, 0.1, FakeClock())
    result = VerificationResult(FileEntry("x.bin", "0"), VerificationOutcome.OK, 1)
    aggregator.file_finished(result, 1, 2)
    assert isinstance(events[0], GlobalProgress) and events[0] == GlobalProgress(1, 2)
    assert isinstance(events[1], LogLine) and events[1].severity is Severity.SUCCESS


def test_aggregator_terminal_events():
    events = []
    aggregator = ProgressAggregator(events.append)
    aggregator.run_failed("No manifest found")
    summary = RunSummary(1, 0, False, OutcomeTally(ok=1))
    aggregator.run_complete(summary)
    assert events[0] == RunFailed("No manifest found")
    assert isinstance(events[1], RunComplete)
    assert events[1].total_files == 1 and not events[1].was_canceled


def test_event_channel_get_and_drain():
    channel = EventChannel()
    assert channel.get(timeout=0.01) is None
    channel(LogLine("one"))
    channel.publish(LogLine("two"))
    channel.publish(LogLine("three"))
    assert channel.get(timeout=0.01) == LogLine("one")
    assert [e.text for e in channel.drain()] == ["two", "three"]
    assert channel.drain() == []
