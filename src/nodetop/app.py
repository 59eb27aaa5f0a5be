"""nodetop - Textual viewer for a remote node."""

import argparse
import dataclasses
from collections.abc import Sequence
from enum import Enum
from queue import Empty, Queue

from textual.app import App, ComposeResult
from textual.containers import Container, Horizontal
from textual.logging import TextualHandler
from textual.widgets import DataTable, Footer, Static

from nodetop.client import NodeClient
from nodetop.config import Settings, parse_address
from nodetop.errors import NodeError
from nodetop.inspector import ProcessInspector
from nodetop.logger import configure_logging, get_logger
from nodetop.models import MemorySample, ProcessDescriptor
from nodetop.sampler import MemorySampler, SampleWindow

logger = get_logger(__name__)

PROCESS_REFRESH = 2.0


class SortKey(Enum):
    """Sort keys for the process table."""

    REDUCTIONS = "reductions"
    MEM = "mem"
    ID = "id"
    STATUS = "status"


def format_bytes(size: int) -> str:
    """Format bytes as human-readable string."""
    for unit in ["B", "K", "M", "G", "T"]:
        if size < 1024:
            return f"{size:5.1f}{unit}" if unit != "B" else f"{size:5d}{unit}"
        size = size / 1024
    return f"{size:.1f}P"


class HeaderStats(Static):
    """Header widget showing the node and its sampled memory."""

    DEFAULT_CSS = """
    HeaderStats {
        height: auto;
        min-height: 4;
        padding: 1;
        background: $surface;
    }
    """

    def __init__(self, address: tuple[str, int], category: str, *args, **kwargs) -> None:
        """Initialize HeaderStats."""
        super().__init__(*args, **kwargs)
        self._address = address
        self._category = category
        self._samples: list[MemorySample] = []
        self._window_size: int = 0
        self._process_count: int = 0

    def compose(self) -> ComposeResult:
        """Compose the header stats layout."""
        yield Horizontal(
            Static(self._get_node_info(), id="node-info"),
            Static(self._get_mem_info(), id="mem-info"),
        )

    def update_memory(self, window: SampleWindow) -> None:
        """Update the memory panel from the sample window."""
        self._samples = window.samples()
        self._window_size = window.size
        self._refresh_display()

    def update_process_count(self, count: int) -> None:
        """Update the number of processes shown."""
        self._process_count = count
        self._refresh_display()

    def _refresh_display(self) -> None:
        """Refresh the display with current data."""
        try:
            self.query_one("#node-info", Static).update(self._get_node_info())
            self.query_one("#mem-info", Static).update(self._get_mem_info())
        except Exception:
            pass  # Widget not mounted yet

    def _get_node_info(self) -> str:
        """Get node info display."""
        host, port = self._address
        return f"Node: {host}:{port}\nProcesses: {self._process_count}"

    def _get_mem_info(self) -> str:
        """Get memory info display."""
        if not self._samples:
            return "Waiting for memory samples..."

        latest = self._samples[-1]
        sizes = [sample.bytes for sample in self._samples]
        return (
            f"Mem {self._category}: {format_bytes(latest.bytes)} "
            f"(min {format_bytes(min(sizes))}, max {format_bytes(max(sizes))})\n"
            f"Samples: {len(self._samples)}/{self._window_size}  #{latest.sequence_index}"
        )


class ProcessTable(Container):
    """Container for the process data table."""

    DEFAULT_CSS = """
    ProcessTable {
        height: 1fr;
        border: solid $primary;
    }
    """

    def __init__(self, *args, **kwargs) -> None:
        """Initialize ProcessTable."""
        super().__init__(*args, **kwargs)
        self._current_ids: set[str] = set()
        self._sort_key: SortKey = SortKey.REDUCTIONS
        self._sort_reverse: bool = True  # Default: busiest first

    @property
    def sort_key(self) -> SortKey:
        """Get current sort key."""
        return self._sort_key

    def cycle_sort(self) -> SortKey:
        """Cycle to the next sort key and return it."""
        keys = list(SortKey)
        current_index = keys.index(self._sort_key)
        next_index = (current_index + 1) % len(keys)
        self._sort_key = keys[next_index]
        self._sort_reverse = self._sort_key in (SortKey.REDUCTIONS, SortKey.MEM)
        return self._sort_key

    def compose(self) -> ComposeResult:
        """Compose the process table."""
        yield DataTable(id="process-table")

    def on_mount(self) -> None:
        """Initialize the data table when mounted."""
        table = self.query_one("#process-table", DataTable)
        table.cursor_type = "row"

        table.add_column("ID", key="id", width=10)
        table.add_column("STATUS", key="status", width=10)
        table.add_column("REDUCTIONS", key="reductions", width=14)
        table.add_column("MEM", key="mem", width=8)

    def update_processes(self, processes: list[ProcessDescriptor]) -> None:
        """
        Update the process table with new data.

        Uses update_cell for existing rows to avoid re-rendering the whole table.
        """
        table = self.query_one("#process-table", DataTable)

        sorted_processes = self.sort_processes(processes)
        new_ids = {proc.identity for proc in sorted_processes}

        # Remove rows for processes that no longer exist
        for identity in self._current_ids - new_ids:
            try:
                table.remove_row(identity)
            except Exception:
                pass  # Row may not exist

        for proc in sorted_processes:
            if proc.identity in self._current_ids:
                self._update_row(table, proc)
            else:
                self._add_row(table, proc)

        self._current_ids = new_ids

    def sort_processes(self, processes: list[ProcessDescriptor]) -> list[ProcessDescriptor]:
        """Sort processes based on the current sort key."""
        key_func = {
            SortKey.REDUCTIONS: lambda p: p.reduction_count,
            SortKey.MEM: lambda p: p.memory_bytes,
            # Identities are opaque; shorter first keeps numeric ids in order
            SortKey.ID: lambda p: (len(p.identity), p.identity),
            SortKey.STATUS: lambda p: p.status.value,
        }
        return sorted(processes, key=key_func[self._sort_key], reverse=self._sort_reverse)

    def _update_row(self, table: DataTable, proc: ProcessDescriptor) -> None:
        """Update an existing row using update_cell for performance."""
        try:
            table.update_cell(proc.identity, "status", proc.status.value)
            table.update_cell(proc.identity, "reductions", str(proc.reduction_count))
            table.update_cell(proc.identity, "mem", format_bytes(proc.memory_bytes))
        except Exception:
            pass  # Row may have been removed

    def _add_row(self, table: DataTable, proc: ProcessDescriptor) -> None:
        """Add a new row to the table."""
        try:
            table.add_row(
                proc.identity,
                proc.status.value,
                str(proc.reduction_count),
                format_bytes(proc.memory_bytes),
                key=proc.identity,
            )
        except Exception:
            pass  # Row may already exist


class NodetopApp(App):
    """Main nodetop application."""

    TITLE = "nodetop"
    SUB_TITLE = "Remote Node Monitor"

    CSS = """
    Screen {
        layout: vertical;
    }

    #header-stats {
        dock: top;
        height: auto;
        min-height: 4;
    }

    Horizontal {
        height: auto;
    }

    #node-info {
        width: 1fr;
        padding-right: 2;
    }

    #mem-info {
        width: 2fr;
        padding-left: 2;
    }
    """

    BINDINGS = [
        ("q", "quit", "Quit"),
        ("f6", "sort", "Sort"),
        ("r", "refresh", "Refresh"),
    ]

    def __init__(self, settings: Settings | None = None) -> None:
        """Initialize the NodetopApp."""
        super().__init__()
        self._settings = settings or Settings.from_env()
        cookie = self._settings.cookie or b""
        self._sample_queue: Queue[MemorySample] = Queue()
        self._window = SampleWindow.for_duration(self._settings.window, self._settings.interval)
        self._client = NodeClient(self._settings.address, cookie, timeout=self._settings.timeout)
        self._sampler = MemorySampler(
            self._client,
            self._sample_queue.put,
            interval=self._settings.interval,
        )
        self._inspector = ProcessInspector(
            self._settings.address,
            cookie,
            max_workers=self._settings.max_workers,
            timeout=self._settings.timeout,
        )
        self._reported_error: NodeError | None = None

    @property
    def window(self) -> SampleWindow:
        return self._window

    def compose(self) -> ComposeResult:
        """Compose the application layout."""
        yield HeaderStats(self._settings.address, self._sampler.category, id="header-stats")
        yield ProcessTable()
        yield Footer()

    def on_mount(self) -> None:
        """Start sampling and process refreshes when the app is mounted."""
        self._sampler.start()
        self.set_interval(0.5, self._check_for_updates)
        self.set_interval(max(PROCESS_REFRESH, self._settings.interval), self.action_refresh)
        self.action_refresh()

    def on_unmount(self) -> None:
        """Stop background sampling when the app goes away."""
        self._shutdown()

    def _shutdown(self) -> None:
        self._sampler.stop()
        self._client.close()

    def _check_for_updates(self) -> None:
        """Move queued memory samples into the window and refresh the header."""
        received = False
        while True:
            try:
                self._window.append(self._sample_queue.get_nowait())
                received = True
            except Empty:
                break

        if received:
            try:
                self.query_one("#header-stats", HeaderStats).update_memory(self._window)
            except Exception:
                pass  # Header not mounted yet

        error = self._sampler.last_error
        if error is not None and error is not self._reported_error:
            self._reported_error = error
            self.notify(f"Memory sampling stopped: {error}", severity="error")

    def _inspect_processes(self) -> None:
        """Run one inspection on a worker thread and hand the result to the UI."""
        try:
            descriptors = self._inspector.inspect()
        except NodeError as exc:
            logger.warning("Process inspection failed", error_type=type(exc).__name__, error=str(exc))
            self.call_from_thread(self.notify, f"Inspection failed: {exc}", severity="warning")
            return
        self.call_from_thread(self._update_processes, descriptors)

    def _update_processes(self, descriptors: list[ProcessDescriptor]) -> None:
        """Update the UI with a fresh process listing."""
        try:
            self.query_one(ProcessTable).update_processes(descriptors)
            self.query_one("#header-stats", HeaderStats).update_process_count(len(descriptors))
        except Exception:
            pass  # App shutting down

    def action_refresh(self) -> None:
        """Start a process inspection unless one is already running."""
        self.run_worker(
            self._inspect_processes,
            thread=True,
            exclusive=True,
            group="inspect",
            exit_on_error=False,
        )

    def action_sort(self) -> None:
        """Handle sort action - cycle through sort keys."""
        try:
            process_table = self.query_one(ProcessTable)
            new_sort_key = process_table.cycle_sort()
            self.notify(f"Sort: {new_sort_key.value.upper()}")
        except Exception:
            pass

    def action_quit(self) -> None:
        """Handle quit action with graceful cleanup."""
        self._shutdown()
        self.exit()


def main(argv: Sequence[str] | None = None) -> None:
    """Entry point for the nodetop viewer."""
    parser = argparse.ArgumentParser(
        prog="nodetop",
        description="Monitor the processes and memory of a remote node.",
    )
    parser.add_argument("--address", help="host:port of the node (default: NODETOP_ADDRESS)")
    parser.add_argument("--cookie", help="shared secret (default: NODETOP_COOKIE or cookie file)")
    parser.add_argument("--interval", type=float, help="memory sampling interval in seconds")
    parser.add_argument("--window", type=float, help="memory history to keep in seconds")
    args = parser.parse_args(argv)

    try:
        settings = Settings.from_env()
        overrides: dict[str, object] = {}
        if args.address:
            overrides["host"], overrides["port"] = parse_address(args.address)
    except ValueError as exc:
        parser.error(str(exc))
    if args.cookie:
        overrides["cookie"] = args.cookie.encode()
    for name in ("interval", "window"):
        value = getattr(args, name)
        if value is not None:
            if value <= 0:
                parser.error(f"--{name} must be positive")
            overrides[name] = value
    settings = dataclasses.replace(settings, **overrides)

    if settings.cookie is None:
        parser.error("no cookie: pass --cookie, set NODETOP_COOKIE or create the cookie file")

    configure_logging(handler=TextualHandler())
    app = NodetopApp(settings)
    app.run()


if __name__ == "__main__":
    main()
