from __future__ import annotations
from dataclasses import dataclass
from pathlib import Path
from typing import List, Protocol, Optional, Any, Tuple


def _parse_standalone_argv(argv: List[str]) -> Tuple[List[Path], List[str], bool]:
    """Split CLI arguments into targets, passthrough extras and the auto-start flag.

    ``--target`` arguments and raw positional paths are both accepted as
    targets. ``-v`` / ``--verify-now`` asks the tool to start immediately once
    its window is up, which is how desktop shortcuts launch a verification.
    """

    targets: List[Path] = []
    extra: List[str] = []
    auto_start = False
    it = iter(argv)
    for arg in it:
        if arg == "--target":
            value = next(it, None)
            if value:
                targets.append(Path(value).expanduser())
        elif arg in ("-v", "--verify-now"):
            auto_start = True
        elif arg.startswith("-"):
            extra.append(arg)
        else:
            targets.append(Path(arg).expanduser())
    return targets, extra, auto_start

class ToolPlugin(Protocol):
    key: str
    title: str
    description: str

    def make_panel(self, master, context: "AppContext") -> Any:
        """Build and return a GUI panel for this tool."""

    def start(self, context: "AppContext", targets: List[Path], argv: List[str]) -> None:
        """Invoked on app start with any CLI targets."""

    def cleanup(self) -> None:
        """Called on shutdown."""

@dataclass
class AppContext:
    app_name: str
    version: str
    platform: str
    resource_dir: Path
    auto_start: bool = False


def run_plugin_standalone(plugin: "ToolPlugin", argv: Optional[List[str]] = None) -> None:
    """Launch a tool plugin in its own ttkbootstrap window.

    The window stays open until the user closes it; closing calls the
    plugin's :meth:`cleanup`, which is expected to stop any running work.
    """

    import platform
    import sys

    try:
        import ttkbootstrap as tb
        from ttkbootstrap.dialogs import Messagebox
    except ImportError as exc:  # pragma: no cover - import error propagated
        raise RuntimeError(
            "Install dependencies: pip install ttkbootstrap"
        ) from exc

    argv = list(sys.argv[1:] if argv is None else argv)
    targets, extra, auto_start = _parse_standalone_argv(argv)

    resource_root = Path(getattr(sys, "_MEIPASS", Path(__file__).resolve().parent.parent))
    ctx = AppContext(
        app_name=getattr(plugin, "title", getattr(plugin, "key", "Tool")),
        version=getattr(plugin, "version", "standalone"),
        platform=platform.system(),
        resource_dir=resource_root,
        auto_start=auto_start,
    )

    window = tb.Window(title=f"{ctx.app_name} {ctx.version}", themename="flatly")
    window.geometry("700x540")
    window.resizable(False, False)

    container = tb.Frame(window, padding=8)
    container.pack(fill="both", expand=True)

    panel = plugin.make_panel(container, ctx)
    if hasattr(panel, "pack"):
        panel.pack(fill="both", expand=True)

    def _start_tool():
        try:
            plugin.start(ctx, targets, extra)
        except Exception as exc:  # pragma: no cover - GUI error path
            Messagebox.show_error(message=str(exc), title="Tool start error")

    def _on_close():
        try:
            plugin.cleanup()
        finally:
            window.destroy()

    window.after(50, _start_tool)
    window.protocol("WM_DELETE_WINDOW", _on_close)
    window.mainloop()
