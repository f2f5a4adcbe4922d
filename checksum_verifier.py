from __future__ import annotations

import argparse
import json
import sys
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

from tools.checksum_hashing import CRC32C_ENGINES
from tools.checksum_logging import setup_logging
from tools.checksum_progress import (
    EventChannel,
    FileProgress,
    GlobalProgress,
    LogLine,
    RunComplete,
    VerificationEvent,
    report_lines,
)
from tools.checksum_verifier_core import (
    ChecksumVerifierConfig,
    ChecksumVerifierCore,
    RunReport,
)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_MISMATCH = 2
EXIT_CANCELED = 130

_MIB = 1024 * 1024


def _positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Expected an integer: {value}")
    if number < 1:
        raise argparse.ArgumentTypeError(f"Expected a positive integer: {value}")
    return number


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Verify files against a checksum manifest")
    parser.add_argument("--directory", default=".", help="Directory searched for CRC.* manifests")
    parser.add_argument("--manifest", default=None, help="Explicit manifest file (extension selects the algorithm)")
    parser.add_argument("--threads", type=_positive_int, default=None, help="Worker thread count (default: CPUs, 2-4)")
    parser.add_argument("--chunk-size", type=_positive_int, default=8, help="Read chunk size in MiB")
    parser.add_argument("--interval", type=_positive_int, default=100, help="Minimum milliseconds between progress updates")
    parser.add_argument("--crc32c", choices=CRC32C_ENGINES, default="auto", help="CRC32C engine")
    parser.add_argument("--out", choices=["JSON", "TEXT"], default="TEXT", help="Output format")
    parser.add_argument("--progress", action="store_true", help="Show per-file progress on stderr")
    parser.add_argument("--log-file", default=None, help="Write a debug log to this file")
    parser.add_argument("--verbose", action="store_true", help="Verbose console logging")
    parser.add_argument("--gui", action="store_true", help="Open the desktop window instead")
    parser.add_argument("-v", "--verify-now", action="store_true", help="Start verifying as soon as the window opens")
    return parser


def _validate_directory(raw: str) -> Path:
    path = Path(raw).expanduser()
    if not path.is_dir():
        raise SystemExit(f"Directory does not exist: {path}")
    return path


def build_config(args: argparse.Namespace) -> ChecksumVerifierConfig:
    directory = _validate_directory(args.directory)
    return ChecksumVerifierConfig(
        directory=directory,
        manifest=Path(args.manifest).expanduser() if args.manifest else None,
        thread_count=args.threads,
        chunk_size=args.chunk_size * _MIB,
        progress_interval=args.interval / 1000.0,
        crc32c_engine=args.crc32c,
    )


def _render_text(event: VerificationEvent, show_progress: bool) -> None:
    if isinstance(event, LogLine):
        print(event.text)
    elif isinstance(event, FileProgress) and show_progress:
        if event.speed_mbps > 0.0:
            sys.stderr.write(f"File: {event.file_name} - {event.percent}% ({event.speed_mbps:.2f} MB/s)\n")
        else:
            sys.stderr.write(f"File: {event.file_name} - {event.percent}%\n")
    elif isinstance(event, GlobalProgress) and show_progress:
        sys.stderr.write(f"Progress: {event.files_done}/{event.files_total} ({event.percent}%)\n")
    elif isinstance(event, RunComplete):
        print()
        for line in report_lines(event.summary):
            print(line.text)


def _report_payload(report: RunReport) -> Dict[str, Any]:
    summary: Dict[str, Any] = report.summary.as_dict() if report.summary else {}
    if report.manifest is not None:
        summary["algorithm"] = report.manifest.algorithm.value
        summary["manifest"] = str(report.manifest.path) if report.manifest.path else None
    if report.failure:
        summary["error"] = report.failure
    items: List[Dict[str, Any]] = [
        {
            "status": result.outcome.value,
            "path": result.entry.path,
            "size": result.size,
            "digest": result.digest,
            "expected": result.entry.expected_digest,
            "detail": result.detail,
        }
        for result in report.results
    ]
    return {"summary": summary, "items": items}


def run_verification(
    config: ChecksumVerifierConfig,
    stop_event: threading.Event,
    on_event: Optional[Callable[[VerificationEvent], None]] = None,
) -> RunReport:
    """Run the core on a worker thread, feeding events to ``on_event``.

    Ctrl+C sets ``stop_event`` and keeps draining until the workers exit.
    """

    channel = EventChannel()
    outcome: Dict[str, RunReport] = {}

    def _target() -> None:
        outcome["report"] = ChecksumVerifierCore(config, stop_event, channel).run()

    runner = threading.Thread(target=_target, name="checksum-verifier", daemon=True)
    runner.start()
    while True:
        try:
            event = channel.get(timeout=0.1)
            if event is not None and on_event is not None:
                on_event(event)
            if event is None and not runner.is_alive():
                break
        except KeyboardInterrupt:
            stop_event.set()
    runner.join()
    for event in channel.drain():
        if on_event is not None:
            on_event(event)
    return outcome.get("report", RunReport(failure="Verification did not complete"))


def _launch_gui(config: ChecksumVerifierConfig, verify_now: bool) -> int:
    from plugins.base import run_plugin_standalone
    from tools.checksum_verifier_tool import PLUGIN

    PLUGIN.use_config(config)
    argv = [str(config.directory)]
    if verify_now:
        argv.append("-v")
    run_plugin_standalone(PLUGIN, argv)
    return EXIT_OK


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    setup_logging(
        level="DEBUG" if args.verbose else "WARNING",
        log_file=Path(args.log_file).expanduser() if args.log_file else None,
        verbose=args.verbose,
    )
    config = build_config(args)

    if args.gui:
        return _launch_gui(config, args.verify_now)

    stop_event = threading.Event()
    text_mode = args.out == "TEXT"
    report = run_verification(
        config,
        stop_event,
        on_event=(lambda event: _render_text(event, args.progress)) if text_mode else None,
    )

    if not text_mode:
        json.dump(_report_payload(report), sys.stdout, ensure_ascii=False, indent=2)
        sys.stdout.write("\n")

    if report.failure:
        return EXIT_FAILED
    if report.summary is not None and report.summary.was_canceled:
        return EXIT_CANCELED
    return EXIT_OK if report.all_ok else EXIT_MISMATCH


if __name__ == "__main__":
    sys.exit(main())
