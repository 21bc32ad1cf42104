"""
Run log for conversion batches.

Console lines go through tqdm.write so they do not break an active
progress bar; the same lines are mirrored into a log file in the output
directory.
"""

import time
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Optional, TextIO

from tqdm import tqdm

from .models import BatchTask, ConversionResult


class RunLogger:
    """Logger with elapsed time tracking and file output."""

    def __init__(self, output_dir: Optional[Path] = None, run_name: str = "convert",
                 echo: bool = True):
        self.start_time = time.time()
        self.log_file: Optional[TextIO] = None
        self.log_path: Optional[Path] = None
        self.output_dir = output_dir
        self.run_name = run_name
        self.echo = echo

        if output_dir:
            self._init_log_file(output_dir, run_name)

    def _init_log_file(self, output_dir: Path, run_name: str) -> None:
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        self.log_path = output_dir / f"convert_log_{run_name}_{timestamp}.txt"
        self.log_file = open(self.log_path, "w", encoding="utf-8")  # noqa: SIM115
        self._write_to_file(f"Run started: {datetime.now().isoformat()}")
        self._write_to_file(f"Run name: {run_name}")
        self._write_to_file("-" * 60)

    def _elapsed(self) -> str:
        """Elapsed time as [MM:SS]."""
        elapsed = int(time.time() - self.start_time)
        minutes = elapsed // 60
        seconds = elapsed % 60
        return f"[{minutes:02d}:{seconds:02d}]"

    def _write_to_file(self, message: str) -> None:
        if self.log_file:
            self.log_file.write(message + "\n")
            self.log_file.flush()

    def _output(self, message: str, indent: int = 0) -> None:
        prefix = "  " * indent
        timestamped = f"{self._elapsed()} {prefix}{message}"
        if self.echo:
            tqdm.write(timestamped)
        self._write_to_file(timestamped)

    def info(self, message: str) -> None:
        self._output(message)

    def step(self, message: str) -> None:
        self._output(message)

    def substep(self, message: str) -> None:
        self._output(message, indent=1)

    def warning(self, message: str) -> None:
        self._output(f"WARNING: {message}")

    def error(self, message: str) -> None:
        self._output(f"ERROR: {message}")

    def success(self, message: str) -> None:
        self._output(f"OK: {message}")

    def file_result(self, result: ConversionResult) -> None:
        """Log the outcome of one file."""
        name = result.input_path.name
        if result.success:
            self.success(f"{name} -> {result.output_path.name} ({result.bytes_written} bytes)")
        elif result.skipped:
            self.substep(f"Skipped {name} ({result.skip_reason})")
        else:
            self.error(f"{name}: {result.error}")
        for warning in result.warnings:
            self.substep(f"{name}: {warning}")

    def task_status(self, task: BatchTask) -> None:
        self.step(
            f"Task {task.id} {task.status}: {task.completed} converted, "
            f"{task.skipped} skipped, {task.failed} failed of {task.total}"
        )

    def table(self, headers: list[str], rows: list[list[str]]) -> None:
        """Log a simple table."""
        widths = [len(h) for h in headers]
        for row in rows:
            for i, cell in enumerate(row):
                if i < len(widths):
                    widths[i] = max(widths[i], len(str(cell)))

        header_line = " | ".join(h.ljust(widths[i]) for i, h in enumerate(headers))
        separator = "-+-".join("-" * w for w in widths)

        self._output(header_line)
        self._output(separator)
        for row in rows:
            self._output(" | ".join(str(cell).ljust(widths[i]) for i, cell in enumerate(row)))

    def results_table(self, results: list[ConversionResult]) -> None:
        rows = []
        for r in results:
            status = "ok" if r.success else ("skip" if r.skipped else "FAIL")
            output = r.output_path.name if r.output_path else "-"
            rows.append([r.input_path.name, status, output, str(r.bytes_written)])
        self.table(["Input", "Status", "Output", "Bytes"], rows)

    @contextmanager
    def timed_operation(self, name: str):
        self.step(f"{name}...")
        op_start = time.time()
        try:
            yield
        finally:
            self.substep(f"completed in {time.time() - op_start:.1f}s")

    def close(self) -> None:
        if self.log_file:
            self._write_to_file("-" * 60)
            self._write_to_file(f"Run completed: {datetime.now().isoformat()}")
            self._write_to_file(f"Total time: {time.time() - self.start_time:.1f}s")
            self.log_file.close()
            self.log_file = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type:
            self.error(f"Run failed: {exc_val}")
        self.close()
        return False


def create_logger(output_dir: Optional[Path] = None, run_name: str = "convert",
                  echo: bool = True) -> RunLogger:
    """Create a new RunLogger instance."""
    return RunLogger(output_dir, run_name, echo)
