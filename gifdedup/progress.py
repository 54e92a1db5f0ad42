#!/usr/bin/env python3
"""
gifdedup.progress

Rich-powered status dashboard for a scan: current stage with a progress bar,
running counters and the most recent log lines.

With enable_dash=False nothing is rendered; the reporter still counts and
still carries the quit flag, so the scanner can always talk to one.
"""

from __future__ import annotations

import threading
import time
from typing import Dict, List, Optional, Tuple

from rich.console import Console, Group
from rich.layout import Layout
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text


def _format_eta(seconds: Optional[float]) -> str:
    """Pretty-print an ETA in h/m/s."""
    if seconds is None or seconds == float("inf"):
        return "--"
    secs = max(0, int(seconds))
    minutes, sec = divmod(secs, 60)
    hours, minute = divmod(minutes, 60)
    if hours > 0:
        return f"{hours}h {minute:02d}m"
    if minute > 0:
        return f"{minute}m {sec:02d}s"
    return f"{sec}s"


class ProgressReporter:
    """Thread-safe progress reporter; workers call it from the pool."""

    def __init__(
        self,
        enable_dash: bool = False,
        *,
        refresh_rate: float = 0.5,
        banner: str = "",
        quit_event: Optional[threading.Event] = None,
        console: Optional[Console] = None,
    ):
        self.enable_dash = bool(enable_dash)
        self.refresh_rate = max(0.1, min(1.0, float(refresh_rate)))
        self.banner = banner

        self.lock = threading.Lock()
        self.start_ts = time.time()
        self.stage_start_ts = self.start_ts
        self._live: Optional[Live] = None
        self.console = console or Console(highlight=False, soft_wrap=False, stderr=True)
        self._last_print = 0.0

        self.status_line = "Initializing"
        self.stage_name = "idle"
        self.stage_total = 0
        self.stage_done = 0
        self.stages_done: List[Tuple[str, float]] = []
        self.counters: Dict[str, int] = {}

        self._quit_evt = quit_event if quit_event is not None else threading.Event()
        self._log_messages: List[Tuple[str, str, float]] = []
        self._log_page_size = 6

    # ------------------------------------------------------------------ public API

    def start(self) -> None:
        """Start dashboard rendering if enabled."""
        if self.enable_dash and self._live is None:
            self._live = Live(
                self._render_layout(),
                console=self.console,
                refresh_per_second=max(2, int(round(1 / self.refresh_rate))),
                transient=False,
            )
            self._live.start()

    def set_status(self, text: str) -> None:
        with self.lock:
            self.status_line = text
        self._print_if_due()

    def start_stage(self, name: str, total: int) -> None:
        """Begin a new stage and reset stage-local counters."""
        now = time.time()
        with self.lock:
            if self.stage_name != "idle" and self.stage_done < self.stage_total:
                self.stages_done.append((self.stage_name, now - self.stage_start_ts))
            self.stage_name = name
            self.stage_total = max(0, int(total))
            self.stage_done = 0
            self.stage_start_ts = now
            self.status_line = name
        self._print_now()

    def advance(self, n: int = 1) -> None:
        with self.lock:
            self.stage_done += n
        self._print_if_due()

    def finish_stage(self) -> None:
        now = time.time()
        with self.lock:
            self.stages_done.append((self.stage_name, now - self.stage_start_ts))
            self.stage_done = self.stage_total
        self._print_if_due()

    def inc(self, counter: str, n: int = 1) -> None:
        with self.lock:
            self.counters[counter] = self.counters.get(counter, 0) + n
        self._print_if_due()

    def add_log(self, message: str, level: str = "INFO") -> None:
        """Record a diagnostic log entry for the UI."""
        entry = (level.upper(), str(message), time.time())
        with self.lock:
            self._log_messages.append(entry)
            if len(self._log_messages) > 200:
                self._log_messages.pop(0)
        self._print_if_due()

    def recent_logs(self) -> List[Tuple[str, str, float]]:
        with self.lock:
            return list(self._log_messages[-self._log_page_size:])

    def request_quit(self) -> None:
        self._quit_evt.set()

    def should_quit(self) -> bool:
        """Return True if shutdown requested."""
        return self._quit_evt.is_set()

    def flush(self) -> None:
        """Force an immediate refresh."""
        self._print_now()

    def stop(self, summary: str = "Scan complete") -> None:
        """Stop rendering and print a closing banner."""
        if self._live is not None:
            self._live.update(self._render_layout(), refresh=True)
            self._live.stop()
            self._live = None
            style = "bold red" if self.should_quit() else "bold green"
            self.console.print(Panel(Text(summary, style=style), border_style=style.split()[-1]))

    # ------------------------------------------------------------------ rendering

    def _print_if_due(self) -> None:
        if self._live is None:
            return
        now = time.time()
        if (now - self._last_print) >= self.refresh_rate:
            self._print_now()

    def _print_now(self) -> None:
        if self._live is None:
            return
        self._last_print = time.time()
        self._live.update(self._render_layout(), refresh=True)

    def _render_layout(self) -> Layout:
        with self.lock:
            elapsed = max(0.0, time.time() - self.start_ts)
            stage_elapsed = max(0.0, time.time() - self.stage_start_ts)
            pct = (self.stage_done / self.stage_total * 100.0) if self.stage_total > 0 else 0.0
            eta = None
            if self.stage_total and self.stage_done and stage_elapsed > 0:
                rate = self.stage_done / stage_elapsed
                eta = (self.stage_total - self.stage_done) / rate if rate > 0 else None
            counters = dict(self.counters)
            stages = list(self.stages_done)
            logs = list(self._log_messages[-self._log_page_size:])
            stage_name, done, total, status = self.stage_name, self.stage_done, self.stage_total, self.status_line

        header = Table.grid(expand=True)
        header.add_column(ratio=3)
        header.add_column(justify="right", ratio=2)
        header.add_row(Text(stage_name.upper(), style="bold cyan"), Text(f"ETA: {_format_eta(eta)}", style="bold magenta"))
        header.add_row(self._progress_bar(pct), Text(f"{done:,}/{total:,}" if total else f"{done:,}", style="bold"))
        status_text = Text()
        if self.should_quit():
            status_text.append("STOPPING ", style="bold red")
        status_text.append(status, style="italic magenta")
        header.add_row(status_text, Text(f"Elapsed: {int(elapsed)}s", style="bold"))

        stats = Table.grid(expand=True)
        stats.add_column(justify="left")
        stats.add_column(justify="right")
        for name, secs in stages:
            stats.add_row(Text(name, style="green"), Text(f"{secs:.1f}s", style="green"))
        for key in sorted(counters):
            stats.add_row(key.replace("_", " ").title(), Text(f"{counters[key]:,}", style="bold"))

        log_table = Table.grid(expand=True)
        log_table.add_column(width=8)
        log_table.add_column(ratio=1)
        style_map = {"ERROR": "bold red", "WARNING": "yellow", "INFO": "white", "DEBUG": "grey62"}
        for level, message, _ts in logs:
            log_table.add_row(Text(level, style=style_map.get(level, "white")), Text(message, overflow="ellipsis"))

        layout = Layout()
        layout.split_column(
            Layout(Panel(header, title=self.banner or "GIF Deduplication", border_style="cyan"), size=5),
            Layout(Panel(Group(stats), title="Stats", border_style="magenta"), ratio=1),
            Layout(Panel(log_table, title="Log", border_style="blue"), size=self._log_page_size + 2),
        )
        return layout

    def _progress_bar(self, pct: float) -> Text:
        width = 30
        filled = int(round(width * max(0.0, min(100.0, pct)) / 100.0))
        bar = Text("[", style="bold")
        bar.append("#" * filled, style="bold green")
        bar.append("-" * (width - filled), style="grey37")
        bar.append(f"] {pct:5.1f}%", style="bold")
        return bar
