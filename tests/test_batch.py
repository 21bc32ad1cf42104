"""Tests for batch module."""

from pathlib import Path

import pytest

from astro_convert.batch import BatchOrchestrator, find_images, summarize
from astro_convert.config import with_overrides
from astro_convert.models import ConversionResult


class ManualExecutor:
    """Executor that runs submitted work only when asked."""

    def __init__(self):
        self.queue = []

    def submit(self, fn, *args):
        self.queue.append((fn, args))

    def run_all(self):
        while self.queue:
            fn, args = self.queue.pop(0)
            fn(*args)


@pytest.fixture
def executor():
    return ManualExecutor()


@pytest.fixture
def inputs(tmp_path, gradient_fits):
    good_a = tmp_path / "a.fits"
    bad = tmp_path / "b.fits"
    good_c = tmp_path / "c.fits"
    good_a.write_bytes(gradient_fits)
    bad.write_bytes(b"SIMPLE  =                    T" + b" " * 50)
    good_c.write_bytes(gradient_fits)
    return [good_a, bad, good_c]


def make_orchestrator(tmp_path, executor, **kwargs):
    return BatchOrchestrator(tmp_path / "out", with_overrides({"format": "png"}),
                             executor=executor, **kwargs)


# Test task lifecycle


def test_partial_failure_completes(tmp_path, executor, inputs):
    """Test a task with some failed files still completes."""
    orch = make_orchestrator(tmp_path, executor)
    task_id = orch.start_batch_convert(inputs)
    assert orch.get_task(task_id).status == "pending"

    executor.run_all()
    task = orch.get_task(task_id)
    assert task.status == "completed"
    assert task.total == 3
    assert task.completed == 2
    assert task.failed == 1
    assert task.progress == 100
    assert str(inputs[1]) in task.file_errors
    assert sorted(p.name for p in task.outputs) == ["a.png", "c.png"]


def test_all_failed_is_failed(tmp_path, executor, inputs):
    """Test a task fails only when every file failed."""
    orch = make_orchestrator(tmp_path, executor)
    task_id = orch.start_batch_convert([inputs[1], tmp_path / "missing.fits"])
    executor.run_all()
    task = orch.get_task(task_id)
    assert task.status == "failed"
    assert task.failed == 2
    assert "All 2 file(s) failed" in task.error


def test_existing_outputs_skipped(tmp_path, executor, inputs):
    """Test existing outputs count as skipped."""
    out = tmp_path / "out"
    out.mkdir()
    (out / "a.png").write_bytes(b"old")
    orch = make_orchestrator(tmp_path, executor)
    task_id = orch.start_batch_convert([inputs[0], inputs[2]])
    executor.run_all()
    task = orch.get_task(task_id)
    assert task.skipped == 1
    assert task.completed == 1
    assert task.status == "completed"


def test_cancel_before_run(tmp_path, executor, inputs):
    """Test a cancelled task never converts anything."""
    orch = make_orchestrator(tmp_path, executor)
    task_id = orch.start_batch_convert(inputs)
    assert orch.cancel_task(task_id)
    assert not orch.cancel_task(task_id)

    executor.run_all()
    task = orch.get_task(task_id)
    assert task.status == "cancelled"
    assert task.completed == 0
    assert not (tmp_path / "out" / "a.png").exists()


def test_retry_cancelled_task(tmp_path, executor, inputs):
    """Test retry restarts a cancelled task from scratch."""
    orch = make_orchestrator(tmp_path, executor)
    task_id = orch.start_batch_convert(inputs)
    orch.cancel_task(task_id)
    orch.retry_task(task_id)
    task = orch.get_task(task_id)
    assert task.status == "pending"
    assert task.processed == 0

    # The stale submission is ignored, the retried one runs
    executor.run_all()
    task = orch.get_task(task_id)
    assert task.status == "completed"
    assert task.completed == 2
    assert len(orch.get_results(task_id)) == 3


def test_retry_failed_task_resets_state(tmp_path, executor, inputs, gradient_fits):
    """Test retrying a failed task clears counts and errors, then reruns every file."""
    late = tmp_path / "late.fits"
    files = [inputs[1], late]
    orch = make_orchestrator(tmp_path, executor)
    task_id = orch.start_batch_convert(files)
    executor.run_all()
    task = orch.get_task(task_id)
    assert task.status == "failed"
    assert task.failed == 2
    assert task.progress == 100
    assert task.file_errors

    late.write_bytes(gradient_fits)
    orch.retry_task(task_id)
    task = orch.get_task(task_id)
    assert task.status == "pending"
    assert task.completed == 0
    assert task.failed == 0
    assert task.skipped == 0
    assert task.progress == 0
    assert task.error is None
    assert task.file_errors == {}
    assert task.outputs == []
    assert task.finished_at is None
    assert task.files == files
    assert task.options.format == "png"

    executor.run_all()
    task = orch.get_task(task_id)
    assert task.status == "completed"
    assert task.completed == 1
    assert task.failed == 1
    assert list(task.file_errors) == [str(inputs[1])]
    assert [r.input_path for r in orch.get_results(task_id)] == files


def test_file_locks_released(tmp_path, executor, inputs):
    """Test per-file locks are dropped once no task holds them."""
    orch = make_orchestrator(tmp_path, executor)
    orch.start_batch_convert(inputs)
    orch.start_batch_convert(inputs[:1])
    executor.run_all()
    assert orch._file_locks == {}


def test_retry_completed_task_rejected(tmp_path, executor, inputs):
    """Test only failed or cancelled tasks can be retried."""
    orch = make_orchestrator(tmp_path, executor)
    task_id = orch.start_batch_convert(inputs[:1])
    executor.run_all()
    with pytest.raises(ValueError):
        orch.retry_task(task_id)


def test_unknown_task(tmp_path, executor):
    """Test unknown task ids."""
    orch = make_orchestrator(tmp_path, executor)
    assert orch.get_task("nope") is None
    with pytest.raises(KeyError):
        orch.cancel_task("nope")


def test_clear_completed_tasks(tmp_path, executor, inputs):
    """Test completed tasks are forgotten, cancelled ones kept."""
    orch = make_orchestrator(tmp_path, executor)
    done_id = orch.start_batch_convert(inputs[:1])
    executor.run_all()
    cancelled_id = orch.start_batch_convert(inputs[:1])
    orch.cancel_task(cancelled_id)

    assert orch.clear_completed_tasks() == 1
    assert orch.get_task(done_id) is None
    assert orch.get_task(cancelled_id) is not None
    assert [t.id for t in orch.list_tasks()] == [cancelled_id]


def test_wait_returns_terminal_snapshot(tmp_path, executor, inputs):
    """Test wait() after the work has run."""
    orch = make_orchestrator(tmp_path, executor)
    task_id = orch.start_batch_convert(inputs[:1])
    executor.run_all()
    assert orch.wait(task_id, timeout=1).status == "completed"
    assert orch.wait("nope") is None


def test_snapshots_are_copies(tmp_path, executor, inputs):
    """Test callers cannot mutate task state."""
    orch = make_orchestrator(tmp_path, executor)
    task_id = orch.start_batch_convert(inputs[:1])
    orch.get_task(task_id).status = "failed"
    assert orch.get_task(task_id).status == "pending"


def test_invalid_options_rejected(tmp_path, executor):
    """Test options are validated when a task is created."""
    orch = make_orchestrator(tmp_path, executor)
    with pytest.raises(ValueError):
        orch.start_batch_convert([], with_overrides({"format": "gif"}))


# Test progress listeners


def test_progress_listeners(tmp_path, executor, inputs):
    """Test listeners see running, per-file and final snapshots."""
    seen = []
    orch = make_orchestrator(tmp_path, executor, on_progress=lambda t: seen.append(t.status))
    extra = []
    unsubscribe = orch.subscribe(lambda t: extra.append(t.progress))

    orch.start_batch_convert(inputs)
    executor.run_all()
    assert seen[0] == "running"
    assert seen[-1] == "completed"
    assert extra[-1] == 100

    unsubscribe()
    count = len(extra)
    orch.start_batch_convert(inputs[:1])
    executor.run_all()
    assert len(extra) == count


def test_failing_listener_does_not_stop_task(tmp_path, executor, inputs):
    """Test listener exceptions are contained."""
    def broken(task):
        raise RuntimeError("listener bug")

    orch = make_orchestrator(tmp_path, executor, on_progress=broken)
    task_id = orch.start_batch_convert(inputs[:1])
    executor.run_all()
    assert orch.get_task(task_id).status == "completed"


# Test discovery and summary


def test_find_images(tmp_path):
    """Test supported files are found recursively and filtered."""
    (tmp_path / "night1").mkdir()
    for name in ("a.fits", "b.fit.gz", "night1/c.tif", "notes.txt", "night1/skip_me.png"):
        (tmp_path / name).write_bytes(b"x")

    names = [p.name for p in find_images(tmp_path)]
    assert names == ["a.fits", "b.fit.gz", "c.tif", "skip_me.png"]
    assert [p.name for p in find_images(tmp_path, recursive=False)] == ["a.fits", "b.fit.gz"]
    assert [p.name for p in find_images(tmp_path, pattern="*.fits")] == ["a.fits"]
    assert "skip_me.png" not in [p.name for p in find_images(tmp_path, exclude=["skip_"])]


def test_summarize():
    """Test summary counts."""
    results = [
        ConversionResult(Path("a"), success=True, bytes_written=10, warnings=["w"]),
        ConversionResult(Path("b"), skipped=True),
        ConversionResult(Path("c"), error="boom"),
    ]
    summary = summarize(results)
    assert summary == {
        "total": 3, "converted": 1, "skipped": 1, "failed": 1,
        "warnings": 1, "bytes_written": 10,
    }
