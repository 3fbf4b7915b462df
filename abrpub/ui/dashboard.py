import threading
import time
from datetime import datetime
from typing import Optional
from rich.console import Console, Group
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from abrpub.ui.state import UIState
from abrpub.domain.models import JobStatus

STAGE_STYLES = {
    JobStatus.PENDING: "dim",
    JobStatus.DOWNLOADING: "cyan",
    JobStatus.ENCODING: "yellow",
    JobStatus.PUBLISHING: "magenta",
}

class Dashboard:
    """Renders the live batch dashboard."""

    def __init__(self, state: UIState, console: Optional[Console] = None):
        self.state = state
        self.console = console or Console()
        self._live: Optional[Live] = None
        self._refresh_thread: Optional[threading.Thread] = None
        self._stop_refresh = threading.Event()
        self._ui_lock = threading.Lock()

    def format_time(self, seconds: float) -> str:
        """Format seconds to human readable time"""
        if seconds < 60:
            return f"{int(seconds):02d}s"
        elif seconds < 3600:
            return f"{int(seconds / 60):02d}m {int(seconds % 60):02d}s"
        else:
            return f"{int(seconds / 3600)}h {int((seconds % 3600) / 60):02d}m"

    def _generate_progress_panel(self) -> Panel:
        with self.state._lock:
            total = self.state.total_assets
            done = self.state.finished_count
            elapsed = 0.0
            if self.state.batch_start_time:
                elapsed = (datetime.now() - self.state.batch_start_time).total_seconds()
            line = (
                f"{done}/{total} assets  |  batch size {self.state.batch_size}  |  "
                f"elapsed {self.format_time(elapsed)}"
            )
        return Panel(line, title="PROGRESS", border_style="cyan")

    def _generate_active_panel(self) -> Panel:
        with self.state._lock:
            jobs = list(self.state.active_jobs.values())
            if not jobs:
                return Panel("[dim]No active jobs[/dim]", title="ACTIVE", border_style="yellow")
            table = Table(show_header=False, box=None, padding=(0, 1))
            table.add_column("Asset", style="yellow", width=24, no_wrap=True, overflow="ellipsis")
            table.add_column("Stage", width=12)
            table.add_column("Upload", justify="right")
            table.add_column("Time", justify="right")
            for job in jobs:
                stage = self.state.stages.get(job.asset_id, job.status)
                style = STAGE_STYLES.get(stage, "white")
                table.add_row(
                    job.asset_id,
                    f"[{style}]{stage.value}[/{style}]",
                    self.state.upload_progress.get(job.asset_id, ""),
                    self.format_time(time.time() - job.started_at),
                )
        return Panel(table, title="ACTIVE", border_style="yellow")

    def _generate_recent_panel(self) -> Panel:
        with self.state._lock:
            jobs = list(self.state.recent_jobs)
            if not jobs:
                return Panel("[dim]Nothing finished yet[/dim]", title="LAST FINISHED", border_style="green")
            table = Table(show_header=False, box=None, padding=(0, 1))
            table.add_column("", width=1)
            table.add_column("Asset", width=24, no_wrap=True, overflow="ellipsis")
            table.add_column("Result", no_wrap=True, overflow="ellipsis")
            table.add_column("Time", justify="right", style="yellow")
            for job in jobs:
                seconds = (job.processing_time_ms or 0) / 1000
                if job.status == JobStatus.COMPLETE:
                    table.add_row("[green]✓[/green]", job.asset_id, job.output_path or "", self.format_time(seconds))
                else:
                    table.add_row("[red]✗[/red]", job.asset_id, f"[red]{job.error_message or 'failed'}[/red]",
                                  self.format_time(seconds))
        return Panel(table, title="LAST FINISHED", border_style="green")

    def _generate_summary_panel(self) -> Panel:
        with self.state._lock:
            summary = (
                f"✓ {self.state.completed_count} complete  "
                f"✗ {self.state.failed_count} failed  "
                f"⊘ {self.state.skipped_count} skipped  "
                f"↻ {self.state.strategy_fallbacks} fallbacks  "
                f"⚠ {self.state.uploads_skipped} uploads skipped"
            )
            if self.state.last_message:
                summary += f"\n[dim]{self.state.last_message}[/dim]"
        return Panel(summary, title="SESSION STATUS", border_style="white")

    def create_display(self) -> Group:
        return Group(
            self._generate_progress_panel(),
            self._generate_active_panel(),
            self._generate_recent_panel(),
            self._generate_summary_panel(),
        )

    def _refresh_loop(self):
        """Background thread to update Live display."""
        while not self._stop_refresh.is_set():
            if self._live:
                display = self.create_display()
                with self._ui_lock:
                    self._live.update(display)
            time.sleep(1.0)

    def start(self):
        """Starts the Live display and refresh thread."""
        self._live = Live(self.create_display(), console=self.console, refresh_per_second=4)
        self._live.start()
        self._stop_refresh.clear()
        self._refresh_thread = threading.Thread(target=self._refresh_loop, daemon=True)
        self._refresh_thread.start()
        return self

    def stop(self):
        """Stops the Live display and refresh thread."""
        self._stop_refresh.set()
        if self._refresh_thread:
            self._refresh_thread.join(timeout=1.0)
        if self._live:
            with self._ui_lock:
                self._live.update(self.create_display())
            self._live.stop()

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()
