# src/sluice_core/logging_utils.py

import logging
import time
from datetime import datetime
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.text import Text

console = Console()


def configure_logging(level: str = "INFO"):
    """Route stdlib logging through rich for the worker and CLI."""
    logging.basicConfig(
        level=level.upper(),
        format="%(name)s: %(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
        force=True,
    )


class SyncLogger:
    """Operator-facing narration of one sync job."""

    def __init__(self, dataset_label: str, job_id=None):
        self.dataset_label = dataset_label
        self.job_id = job_id
        self.start_time = None

    def _get_timestamp(self) -> str:
        return datetime.now().strftime("%H:%M:%S")

    def _line(self) -> Text:
        text = Text()
        text.append(f"{self._get_timestamp()} ", style="dim")
        return text

    def start_job(self, action: str, strategy: str):
        self.start_time = time.time()
        text = self._line()
        text.append("START ", style="bold cyan")
        text.append(f"job {self.job_id} ", style="bold")
        text.append(f"{self.dataset_label} ({action}, {strategy})")
        console.print(text)

    def info(self, message: str, prefix: str = ""):
        text = self._line()
        if prefix:
            text.append(f"{prefix} ", style="cyan")
        text.append(message)
        console.print(text)

    def debug(self, message: str, prefix: str = "DEBUG"):
        """Dimmed detail line."""
        text = self._line()
        if prefix:
            text.append(f"[{prefix}] ", style="dim cyan")
        text.append(message, style="dim")
        console.print(text)

    def success(self, message: str, timing: Optional[float] = None):
        text = self._line()
        text.append("OK ", style="bold green")
        text.append(message)
        if timing:
            text.append(f" [in {timing:.2f}s]", style="dim green")
        console.print(text)

    def warning(self, message: str):
        text = self._line()
        text.append("WARN ", style="bold yellow")
        text.append(message, style="yellow")
        console.print(text)

    def error(self, message: str, exc_info: bool = False):
        text = self._line()
        text.append("ERROR ", style="bold red")
        text.append(message, style="red")
        console.print(text)
        if exc_info:
            console.print_exception(show_locals=False)

    def batch_progress(self, batch_num: int, records_in_batch: int, total_so_far: int):
        text = self._line()
        text.append(f"Batch {batch_num} ", style="cyan")
        text.append(f"flushed {records_in_batch} rows ", style="white")
        text.append(f"(total: {total_so_far})", style="dim")
        console.print(text)

    def complete_job(self, status: str, rows: int, message: Optional[str] = None):
        elapsed = time.time() - self.start_time if self.start_time else 0.0
        styles = {
            "completed": ("[OK]", "bold green"),
            "cancelled": ("[CANCELLED]", "bold yellow"),
            "skipped": ("-", "dim"),
        }
        icon, style = styles.get(status, ("[FAIL]", "bold red"))

        text = self._line()
        text.append(f"{icon} DONE ", style=style)
        text.append(f"job {self.job_id} {self.dataset_label} ", style="bold")
        text.append(f"[in {elapsed:.2f}s]", style="dim")
        console.print(text)

        summary = self._line()
        summary.append("      -> ", style="dim")
        summary.append(f"{rows} rows {status}", style="white")
        if message:
            summary.append(f": {message}", style="red" if status == "failed" else "dim")
        console.print(summary)
