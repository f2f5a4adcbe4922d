from __future__ import annotations

import sys
import threading
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

pytest.importorskip("tkinter")
pytest.importorskip("ttkbootstrap")

import checksum_verifier
import plugins.base
from tools.checksum_logging import logger
from tools.checksum_progress import EventChannel, GlobalProgress, RunFailed
from tools.checksum_verifier_core import ChecksumVerifierConfig
from tools.checksum_verifier_tool import PLUGIN, ChecksumVerifierTool


class FakeVar:
    def __init__(self, value=None):
        self.value = value

    def get(self):
        return self.value

    def set(self, value):
        self.value = value


class FakeWidget:
    """Records the widget calls the panel makes without needing a display."""

    def __init__(self):
        self.options = {}
        self.lines = []
        self.scheduled = []

    def configure(self, **options):
        self.options.update(options)

    def insert(self, index, text, tag=None):
        self.lines.append(text.rstrip("\n"))

    def see(self, index):
        pass

    def after(self, ms, callback):
        self.scheduled.append(callback)


class LateChannel(EventChannel):
    """Publishes the final events and lets the worker exit right after a drain."""

    def __init__(self, release: threading.Event, worker: threading.Thread, late_events):
        super().__init__()
        self._release = release
        self._worker = worker
        self._late_events = list(late_events)

    def drain(self):
        events = super().drain()
        if self._late_events:
            for event in self._late_events:
                self.publish(event)
            self._late_events = []
            self._release.set()
            self._worker.join()
        return events


def _panel_tool() -> ChecksumVerifierTool:
    tool = ChecksumVerifierTool()
    tool.panel = FakeWidget()
    tool.log = FakeWidget()
    tool.file_bar = FakeWidget()
    tool.global_bar = FakeWidget()
    tool.start_button = FakeWidget()
    tool.file_label_var = FakeVar("File: Ready")
    tool.global_label_var = FakeVar("Progress: 0/0 (0%)")
    return tool


@pytest.fixture(autouse=True)
def _reset_logger():
    yield
    logger.handlers.clear()
    logger.setLevel("NOTSET")


def test_events_published_while_worker_exits_are_shown():
    tool = _panel_tool()
    release = threading.Event()
    worker = threading.Thread(target=release.wait, daemon=True)
    worker.start()
    tool._worker = worker
    tool._channel = LateChannel(release, worker, [GlobalProgress(3, 3), RunFailed("No manifest found")])

    tool._poll_events()
    assert tool.panel.scheduled == [tool._poll_events]
    assert tool.log.lines == []

    tool._poll_events()
    assert tool.log.lines == ["Error: No manifest found."]
    assert tool.global_label_var.get() == "Progress: 3/3 (100%)"
    assert tool.start_button.options["text"] == "Start"
    assert len(tool.panel.scheduled) == 1


def test_run_config_keeps_command_line_options(tmp_path):
    tool = _panel_tool()
    tool.use_config(
        ChecksumVerifierConfig(
            directory=Path("/ignored"),
            manifest=Path("sums.sha256"),
            chunk_size=1024,
            progress_interval=0.5,
        )
    )
    tool.threads_var = FakeVar(3)
    tool.engine_var = FakeVar("software")

    config = tool._run_config(tmp_path)

    assert config.directory == tmp_path
    assert config.manifest == Path("sums.sha256")
    assert config.chunk_size == 1024
    assert config.progress_interval == 0.5
    assert config.thread_count == 3
    assert config.crc32c_engine == "software"


def test_gui_flag_forwards_options(tmp_path, monkeypatch):
    launched = []
    monkeypatch.setattr(PLUGIN, "base_config", None)
    monkeypatch.setattr(plugins.base, "run_plugin_standalone", lambda plugin, argv: launched.append((plugin, argv)))

    code = checksum_verifier.main(
        [
            "--directory",
            str(tmp_path),
            "--gui",
            "-v",
            "--manifest",
            "sums.sha256",
            "--threads",
            "3",
            "--chunk-size",
            "2",
            "--interval",
            "250",
            "--crc32c",
            "software",
        ]
    )

    assert code == 0
    assert launched == [(PLUGIN, [str(tmp_path), "-v"])]
    config = PLUGIN.base_config
    assert config.manifest == Path("sums.sha256")
    assert config.thread_count == 3
    assert config.chunk_size == 2 * 1024 * 1024
    assert config.progress_interval == 0.25
    assert config.crc32c_engine == "software"
