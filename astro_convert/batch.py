"""Batch conversion tasks with progress, cancellation and retry."""

import copy
import fnmatch
import logging
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Optional, Union

from .config import DEFAULTS, ExportOptions, validate_options
from .converter import convert_file
from .detect import is_supported_filename
from .errors import Cancelled
from .models import (
    TASK_CANCELLED,
    TASK_COMPLETED,
    TASK_FAILED,
    TASK_PENDING,
    TASK_RUNNING,
    BatchTask,
    CancellationToken,
    ConversionResult,
)
from .naming import NamingOptions

ProgressCallback = Callable[[BatchTask], None]


def find_images(root_dir: Path, recursive: bool = True,
                pattern: Optional[str] = None,
                exclude: Optional[list[str]] = None) -> list[Path]:
    """Find all supported image files in a directory tree."""
    glob_pattern = "**/*" if recursive else "*"
    files = [f for f in root_dir.glob(glob_pattern) if f.is_file() and is_supported_filename(f.name)]

    if pattern:
        files = [f for f in files if fnmatch.fnmatch(f.name, pattern)]

    if exclude:
        files = [f for f in files if not any(ex in str(f) for ex in exclude)]

    return sorted(files)


class _Run:
    """Inputs and cancellation state of one task execution."""

    def __init__(self, files: list[Path], options: ExportOptions,
                 naming: Optional[NamingOptions]):
        self.files = files
        self.options = options
        self.naming = naming
        self.token = CancellationToken()
        self.generation = 0
        self.done = threading.Event()
        self.results: list[ConversionResult] = []


class BatchOrchestrator:
    """
    Runs conversion tasks on a concurrent.futures executor.

    Each task processes its files sequentially in one worker; several tasks
    may run at once. A per-file lock keeps two tasks from converting the same
    source file concurrently. Task state is only read through snapshots.
    """

    def __init__(self, output_dir: Optional[Union[str, Path]] = None,
                 options: ExportOptions = DEFAULTS,
                 naming: Optional[NamingOptions] = None,
                 executor=None,
                 on_progress: Optional[ProgressCallback] = None,
                 max_workers: int = 2):
        self.output_dir = Path(output_dir) if output_dir is not None else None
        self.options = options
        self._naming = naming or NamingOptions()
        self._executor = executor or ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="astro-convert"
        )
        self._owns_executor = executor is None

        self._lock = threading.RLock()
        self._tasks: dict[str, BatchTask] = {}
        self._runs: dict[str, _Run] = {}
        self._file_locks: dict[str, list] = {}  # path -> [lock, holders]
        self._listeners: list[ProgressCallback] = []
        if on_progress is not None:
            self._listeners.append(on_progress)

    # Configuration

    @property
    def naming(self) -> NamingOptions:
        with self._lock:
            return self._naming

    @naming.setter
    def naming(self, value: NamingOptions) -> None:
        """Applies to every file named from now on, including running tasks."""
        with self._lock:
            self._naming = value

    def subscribe(self, callback: ProgressCallback) -> Callable[[], None]:
        """Register a progress listener; returns an unsubscribe function."""
        with self._lock:
            self._listeners.append(callback)

        def unsubscribe():
            with self._lock:
                if callback in self._listeners:
                    self._listeners.remove(callback)
        return unsubscribe

    # Task control

    def start_batch_convert(self, files: list[Union[str, Path]],
                            options: Optional[ExportOptions] = None,
                            naming: Optional[NamingOptions] = None,
                            task_type: str = "convert") -> str:
        """Create a task over files and submit it; returns the task id."""
        options = options or self.options
        validate_options(options)
        paths = [Path(f) for f in files]
        task_id = uuid.uuid4().hex[:12]

        with self._lock:
            self._tasks[task_id] = BatchTask(
                id=task_id, type=task_type, total=len(paths), files=list(paths),
                options=options,
            )
            self._runs[task_id] = _Run(paths, options, naming)
        logging.debug(f"Task {task_id}: {len(paths)} file(s) queued")
        self._submit(task_id)
        return task_id

    def cancel_task(self, task_id: str) -> bool:
        """
        Cancel a task immediately.

        Returns False when the task is already terminal.
        """
        with self._lock:
            task = self._require(task_id)
            if task.is_terminal:
                return False
            run = self._runs[task_id]
            run.token.cancel()
            task.status = TASK_CANCELLED
            task.finished_at = time.time()
            snapshot = copy.deepcopy(task)
            run.done.set()
        logging.warning(f"Task {task_id} cancelled")
        self._notify(snapshot)
        return True

    def retry_task(self, task_id: str) -> None:
        """Restart a failed or cancelled task over its original files."""
        with self._lock:
            task = self._require(task_id)
            if task.status not in (TASK_FAILED, TASK_CANCELLED):
                raise ValueError(f"Task {task_id} is {task.status}; only failed or cancelled tasks can be retried")
            previous = self._runs[task_id]
            run = _Run(previous.files, previous.options, previous.naming)
            run.generation = previous.generation + 1
            self._runs[task_id] = run
            self._tasks[task_id] = BatchTask(
                id=task_id, type=task.type, total=len(run.files),
                files=list(run.files), options=run.options, created_at=task.created_at,
            )
        logging.debug(f"Task {task_id} retried")
        self._submit(task_id)

    def clear_completed_tasks(self) -> int:
        """Forget completed and failed tasks; returns how many were removed."""
        with self._lock:
            done = [tid for tid, t in self._tasks.items() if t.status in (TASK_COMPLETED, TASK_FAILED)]
            for tid in done:
                del self._tasks[tid]
                del self._runs[tid]
        return len(done)

    # Queries

    def get_task(self, task_id: str) -> Optional[BatchTask]:
        with self._lock:
            task = self._tasks.get(task_id)
            return copy.deepcopy(task) if task else None

    def list_tasks(self) -> list[BatchTask]:
        with self._lock:
            return [copy.deepcopy(t) for t in sorted(self._tasks.values(), key=lambda t: t.created_at)]

    def get_results(self, task_id: str) -> list[ConversionResult]:
        """Per-file results of the latest run of a task."""
        with self._lock:
            self._require(task_id)
            return list(self._runs[task_id].results)

    def wait(self, task_id: str, timeout: Optional[float] = None) -> Optional[BatchTask]:
        """Block until the task is terminal (or timeout); returns a snapshot."""
        with self._lock:
            run = self._runs.get(task_id)
        if run is None:
            return None
        run.done.wait(timeout)
        return self.get_task(task_id)

    def shutdown(self, wait: bool = True) -> None:
        """Cancel running tasks and stop an executor created here."""
        with self._lock:
            active = [tid for tid, t in self._tasks.items() if not t.is_terminal]
        for tid in active:
            self.cancel_task(tid)
        if self._owns_executor:
            self._executor.shutdown(wait=wait)

    # Internals

    def _require(self, task_id: str) -> BatchTask:
        task = self._tasks.get(task_id)
        if task is None:
            raise KeyError(f"Unknown task: {task_id}")
        return task

    def _submit(self, task_id: str) -> None:
        with self._lock:
            generation = self._runs[task_id].generation
        self._executor.submit(self._run, task_id, generation)

    @contextmanager
    def _file_lock(self, path: Path):
        """Hold the lock of one source file; the entry is dropped once unused."""
        key = str(path.resolve())
        with self._lock:
            entry = self._file_locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._lock:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._file_locks[key]

    def _notify(self, snapshot: BatchTask) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(snapshot)
            except Exception as e:
                logging.warning(f"Progress listener failed: {e}")

    def _current(self, task_id: str, generation: int) -> Optional[tuple[BatchTask, _Run]]:
        """Task and run, unless the task was cleared or retried since."""
        task = self._tasks.get(task_id)
        run = self._runs.get(task_id)
        if task is None or run is None or run.generation != generation:
            return None
        return task, run

    def _record(self, task_id: str, generation: int, result: ConversionResult) -> Optional[BatchTask]:
        with self._lock:
            current = self._current(task_id, generation)
            if current is None:
                return None
            task, run = current
            if run.token.cancelled:
                return None
            run.results.append(result)
            if result.success:
                task.completed += 1
                task.outputs.append(result.output_path)
            elif result.skipped:
                task.skipped += 1
            else:
                task.failed += 1
                task.file_errors[str(result.input_path)] = result.error
            task.progress = round(task.processed / task.total * 100) if task.total else 100
            return copy.deepcopy(task)

    def _finish(self, task_id: str, generation: int, error: Optional[str] = None) -> Optional[BatchTask]:
        with self._lock:
            current = self._current(task_id, generation)
            if current is None:
                return None
            task, run = current
            if not task.is_terminal:
                if error is not None:
                    task.status = TASK_FAILED
                    task.error = error
                elif task.total > 0 and task.failed == task.total:
                    task.status = TASK_FAILED
                    task.error = f"All {task.total} file(s) failed"
                else:
                    task.status = TASK_COMPLETED
                task.finished_at = time.time()
            run.done.set()
            return copy.deepcopy(task)

    def _run(self, task_id: str, generation: int) -> None:
        with self._lock:
            current = self._current(task_id, generation)
            if current is None:
                return
            task, run = current
            if run.token.cancelled:
                run.done.set()
                return
            task.status = TASK_RUNNING
            snapshot = copy.deepcopy(task)
        self._notify(snapshot)

        try:
            for index, path in enumerate(run.files):
                run.token.raise_if_cancelled()
                naming = run.naming or self.naming
                with self._file_lock(path):
                    result = convert_file(path, run.options, self.output_dir, naming,
                                          index, run.token)
                if result.success:
                    logging.debug(f"Converted: {path}")
                elif result.skipped:
                    logging.debug(f"Skipped ({result.skip_reason}): {path}")
                else:
                    logging.error(f"Failed: {path} - {result.error}")
                snapshot = self._record(task_id, generation, result)
                if snapshot is not None:
                    self._notify(snapshot)
            snapshot = self._finish(task_id, generation)
        except Cancelled:
            logging.debug(f"Task {task_id} stopped after cancellation")
            snapshot = self._finish(task_id, generation)
        except Exception as e:
            logging.error(f"Task {task_id} failed: {e}")
            logging.debug(f"Exception details for task {task_id}:", exc_info=True)
            snapshot = self._finish(task_id, generation, error=str(e))

        if snapshot is not None:
            self._notify(snapshot)


def summarize(results: list[ConversionResult]) -> dict:
    return {
        "total": len(results),
        "converted": sum(1 for r in results if r.success),
        "skipped": sum(1 for r in results if r.skipped),
        "failed": sum(1 for r in results if not r.success and not r.skipped),
        "warnings": sum(len(r.warnings) for r in results),
        "bytes_written": sum(r.bytes_written for r in results),
    }


def print_summary(results: list[ConversionResult]) -> dict:
    """Print and return conversion summary."""
    summary = summarize(results)

    print("\n" + "=" * 50)
    print("CONVERSION SUMMARY")
    print("=" * 50)
    print(f"  Total files:  {summary['total']}")
    print(f"  Converted:    {summary['converted']}")
    print(f"  Skipped:      {summary['skipped']}")
    print(f"  Failed:       {summary['failed']}")
    print(f"  Warnings:     {summary['warnings']}")
    print(f"  Written:      {summary['bytes_written'] / 1024 / 1024:.1f} MB")

    failed = [r for r in results if not r.success and not r.skipped]
    if failed:
        print("\nFailed files:")
        for r in failed[:10]:
            print(f"  {r.input_path}: {r.error}")
        if len(failed) > 10:
            print(f"  ... and {len(failed) - 10} more")

    return summary
