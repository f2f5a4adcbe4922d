from __future__ import annotations

import json
import threading
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, List, Optional

import tkinter as tk

import ttkbootstrap as tb
from ttkbootstrap.dialogs import Messagebox

from plugins.base import AppContext
from .checksum_hashing import CRC32C_ENGINES
from .checksum_progress import (
    EventChannel,
    FileProgress,
    GlobalProgress,
    LogLine,
    RunComplete,
    RunFailed,
    Severity,
    report_lines,
)
from .checksum_verifier_core import ChecksumVerifierConfig, ChecksumVerifierCore, default_worker_count

_SEVERITY_COLORS = {
    Severity.INFO: "#000000",
    Severity.SUCCESS: "#009600",
    Severity.WARNING: "#ffa500",
    Severity.ERROR: "#c80000",
}

_POLL_MS = 50

# =============== Storage ===============

def _state_path() -> Path:
    base = Path.home() / ".rct"
    base.mkdir(parents=True, exist_ok=True)
    return base / "checksum_verifier.json"

def _load_state() -> Dict[str, Any]:
    p = _state_path()
    if p.exists():
        try:
            return json.loads(p.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return {}
    return {}

def _save_state(data: Dict[str, Any]) -> None:
    try:
        _state_path().write_text(json.dumps(data, indent=2), encoding="utf-8")
    except OSError:
        pass

# =============== Tool ===============

class ChecksumVerifierTool:
    key = "checksum_verifier"
    title = "Checksum Verifier"
    version = "1.0.0"
    description = "Verify files against a CRC.* checksum manifest."

    def __init__(self) -> None:
        self.ctx: Optional[AppContext] = None
        self.panel: Optional[tb.Frame] = None
        self.log = None
        self.directory_var: Optional[tb.StringVar] = None
        self.threads_var: Optional[tb.IntVar] = None
        self.engine_var: Optional[tb.StringVar] = None
        self.file_label_var: Optional[tb.StringVar] = None
        self.global_label_var: Optional[tb.StringVar] = None
        self.file_bar = None
        self.global_bar = None
        self.start_button = None

        self.base_config: Optional[ChecksumVerifierConfig] = None
        self._worker: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._channel = EventChannel()

    def use_config(self, config: ChecksumVerifierConfig) -> None:
        """Start runs from ``config`` instead of the defaults.

        The panel still owns the folder, thread count and CRC32C engine; the
        manifest, chunk size and progress interval come from ``config``.
        """
        self.base_config = config

    @property
    def busy(self) -> bool:
        return bool(self._worker and self._worker.is_alive())

    # ------------------------------------------------------------------ UI --
    def make_panel(self, master, context: AppContext):
        from tkinter import filedialog

        self.ctx = context
        state = _load_state()

        root = tb.Frame(master)
        self.panel = root

        top = tb.Frame(root)
        top.pack(fill="x", padx=4, pady=(4, 6))
        base = self.base_config
        directory = str(base.directory) if base is not None else state.get("directory", str(Path.cwd()))
        self.directory_var = tk.StringVar(value=directory)
        tb.Label(top, text="Folder:").pack(side="left")
        tb.Entry(top, textvariable=self.directory_var).pack(side="left", fill="x", expand=True, padx=6)
        tb.Button(
            top,
            text="Browse…",
            bootstyle="secondary",
            command=lambda: self._choose_directory(filedialog.askdirectory),
        ).pack(side="left")

        options = tb.Frame(root)
        options.pack(fill="x", padx=4, pady=(0, 6))
        threads = (base.thread_count if base is not None else None) or state.get("threads") or default_worker_count()
        engine = state.get("crc32c_engine", "auto")
        if base is not None and base.crc32c_engine != "auto":
            engine = base.crc32c_engine
        self.threads_var = tk.IntVar(value=int(threads))
        self.engine_var = tk.StringVar(value=engine)
        tb.Label(options, text="Threads:").pack(side="left")
        tb.Spinbox(options, from_=1, to=16, width=4, textvariable=self.threads_var).pack(side="left", padx=(4, 12))
        tb.Label(options, text="CRC32C engine:").pack(side="left")
        tb.Combobox(options, width=10, state="readonly", values=CRC32C_ENGINES, textvariable=self.engine_var).pack(
            side="left", padx=4
        )

        self.log = tb.ScrolledText(root, height=16, wrap="none")
        self.log.pack(fill="both", expand=True, padx=4, pady=(0, 8))
        for severity, color in _SEVERITY_COLORS.items():
            self.log.tag_configure(severity.value, foreground=color)

        self.file_label_var = tk.StringVar(value="File: Ready")
        tb.Label(root, textvariable=self.file_label_var, anchor="w").pack(fill="x", padx=4)
        file_row = tb.Frame(root)
        file_row.pack(fill="x", padx=4, pady=(2, 8))
        self.file_bar = tb.Progressbar(file_row, maximum=100, bootstyle="info")
        self.file_bar.pack(side="left", fill="x", expand=True)
        self.start_button = tb.Button(file_row, text="Start", width=10, bootstyle="success", command=self._toggle_run)
        self.start_button.pack(side="left", padx=(8, 0))

        self.global_label_var = tk.StringVar(value="Progress: 0/0 (0%)")
        tb.Label(root, textvariable=self.global_label_var, anchor="w").pack(fill="x", padx=4)
        self.global_bar = tb.Progressbar(root, maximum=1, bootstyle="success")
        self.global_bar.pack(fill="x", padx=4, pady=(2, 4))

        return root

    def start(self, context: AppContext, targets: List[Path], argv: List[str]):
        for target in targets or []:
            if Path(target).is_dir() and self.directory_var is not None:
                self.directory_var.set(str(target))
                break
        if context.auto_start:
            self._start_run()

    def cleanup(self):
        self._cancel_run(wait=True)
        self._persist_settings()

    # ----------------------------------------------------------- UI helpers --
    def _choose_directory(self, chooser):
        path = chooser()
        if path and self.directory_var is not None:
            self.directory_var.set(path)

    def _append_log(self, text: str, severity: Severity = Severity.INFO):
        if not self.log:
            return
        self.log.insert("end", text + "\n", severity.value)
        self.log.see("end")

    def _persist_settings(self):
        if self.directory_var is None:
            return
        _save_state(
            {
                "directory": self.directory_var.get(),
                "threads": self._selected_threads(),
                "crc32c_engine": self.engine_var.get() if self.engine_var else "auto",
            }
        )

    def _selected_threads(self) -> Optional[int]:
        if self.threads_var is None:
            return None
        try:
            value = int(self.threads_var.get())
        except (ValueError, tk.TclError):
            return None
        return value if value > 0 else None

    # ------------------------------------------------------------- Running --
    def _toggle_run(self):
        if self.busy:
            self._stop_event.set()
            return
        self._start_run()

    def _start_run(self):
        if self.busy:
            return
        directory = Path(self.directory_var.get()).expanduser() if self.directory_var else Path.cwd()
        if not directory.is_dir():
            Messagebox.show_error(title=self.title, message=f"Folder does not exist: {directory}")
            return
        self._persist_settings()
        if self.log:
            self.log.delete("1.0", "end")
        self._stop_event.clear()
        self._channel = EventChannel()
        config = self._run_config(directory)
        self._worker = threading.Thread(
            target=self._run_core,
            args=(config, self._channel),
            name="checksum-verifier",
            daemon=True,
        )
        self._worker.start()
        self.start_button.configure(text="Stop", bootstyle="danger")
        if self.panel:
            self.panel.after(_POLL_MS, self._poll_events)

    def _run_config(self, directory: Path) -> ChecksumVerifierConfig:
        return replace(
            self.base_config or ChecksumVerifierConfig(),
            directory=directory,
            thread_count=self._selected_threads(),
            crc32c_engine=self.engine_var.get() if self.engine_var else "auto",
        )

    def _run_core(self, config: ChecksumVerifierConfig, channel: EventChannel) -> None:
        ChecksumVerifierCore(config, self._stop_event, channel).run()

    def _poll_events(self):
        if self.panel is None:
            return
        # Sampled before draining: events published by an exiting worker are
        # picked up on the next round.
        running = self.busy
        for event in self._channel.drain():
            self._dispatch(event)
        if running:
            self.panel.after(_POLL_MS, self._poll_events)
        else:
            self._finish_run()

    def _dispatch(self, event):
        if isinstance(event, FileProgress):
            self._show_file_progress(event)
        elif isinstance(event, GlobalProgress):
            self._show_global_progress(event)
        elif isinstance(event, LogLine):
            self._append_log(event.text, event.severity)
        elif isinstance(event, RunFailed):
            self._append_log(f"Error: {event.reason}.", Severity.ERROR)
            self._finish_run()
        elif isinstance(event, RunComplete):
            self._show_report(event)
            self._finish_run()

    def _show_file_progress(self, event: FileProgress):
        if event.speed_mbps > 0.0:
            text = f"File: {event.file_name} - {event.percent}% ({event.speed_mbps:.2f} MB/s)"
        else:
            text = f"File: {event.file_name} - {event.percent}%"
        self.file_label_var.set(text)
        self.file_bar.configure(value=event.percent)

    def _show_global_progress(self, event: GlobalProgress):
        self.global_label_var.set(f"Progress: {event.files_done}/{event.files_total} ({event.percent}%)")
        self.global_bar.configure(maximum=max(1, event.files_total), value=event.files_done)

    def _show_report(self, event: RunComplete):
        self.file_label_var.set("File: Ready")
        self.file_bar.configure(value=0)
        self._append_log("")
        for line in report_lines(event.summary):
            self._append_log(line.text, line.severity)

    def _finish_run(self):
        if self.start_button is not None:
            self.start_button.configure(text="Start", bootstyle="success")

    def _cancel_run(self, wait: bool = False):
        if self.busy:
            self._stop_event.set()
            if wait and self._worker is not None:
                self._worker.join()


PLUGIN = ChecksumVerifierTool()
