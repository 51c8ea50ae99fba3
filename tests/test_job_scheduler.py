from pathlib import Path

import pytest

from loyalty_engine.observability.scheduler import get_scheduler_store
from loyalty_engine.scheduling import JobScheduler, load_job_definitions, resolve_task
from loyalty_engine.scheduling import runner

SCHEDULE = """
timezone = "UTC"

[jobs.flaky]
task = "fixtures.flaky_job"
cron = "*/5 * * * *"
max_attempts = 3
base_backoff_seconds = 2
backoff_multiplier = 2
max_backoff_seconds = 60

[jobs.failing]
task = "fixtures.failing_job"
cron = "0 * * * *"
max_attempts = 2
base_backoff_seconds = 0

[jobs.collaborators]
task = "fixtures.collaborator_job"
cron = "0 3 * * *"
kwargs = { batch_size = 50 }

[jobs.disabled]
task = "fixtures.failing_job"
cron = "0 0 * * *"
enabled = false

[jobs.broken]
cron = "0 0 * * *"
"""

CALLS = {"flaky": 0}


async def flaky_job(*, session_factory):
    CALLS["flaky"] += 1
    if CALLS["flaky"] < 2:
        raise RuntimeError("boom")
    return {"ok": True}


async def failing_job(*, session_factory):
    raise RuntimeError("boom")


async def collaborator_job(*, session_factory, job_queue, batch_size):
    return {"queue": job_queue, "batch_size": batch_size, "factory": session_factory}


@pytest.fixture(autouse=True)
def fixture_tasks(monkeypatch):
    tasks = {
        "fixtures.flaky_job": flaky_job,
        "fixtures.failing_job": failing_job,
        "fixtures.collaborator_job": collaborator_job,
    }
    original = runner.resolve_task
    monkeypatch.setattr(runner, "resolve_task", lambda path: tasks.get(path) or original(path))


def _write_schedule(tmp_path: Path) -> Path:
    path = tmp_path / "schedules.toml"
    path.write_text(SCHEDULE)
    return path


class RecordingSleep:
    def __init__(self) -> None:
        self.delays = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def test_load_job_definitions(tmp_path: Path) -> None:
    config = load_job_definitions(_write_schedule(tmp_path))

    assert config.timezone == "UTC"
    assert sorted(job.id for job in config.jobs) == ["collaborators", "disabled", "failing", "flaky"]
    assert sorted(job.id for job in config.enabled_jobs()) == ["collaborators", "failing", "flaky"]
    flaky = next(job for job in config.jobs if job.id == "flaky")
    assert flaky.retry.max_attempts == 3
    assert flaky.retry.delay_for(1) == 2
    assert flaky.retry.delay_for(2) == 4


def test_load_job_definitions_missing_file(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_job_definitions(tmp_path / "missing.toml")


def test_shipped_schedule_resolves() -> None:
    path = Path(__file__).resolve().parents[1] / "config" / "schedules.toml"
    config = load_job_definitions(path)

    assert {job.id for job in config.enabled_jobs()} == {"segment_refresh", "points_expiration"}
    for job in config.jobs:
        assert callable(resolve_task(job.task))


def test_resolve_task_rejects_sync_callables() -> None:
    with pytest.raises(TypeError):
        resolve_task("loyalty_engine.core.clock.utcnow")
    with pytest.raises(ValueError):
        resolve_task("not_a_path")


@pytest.mark.asyncio
async def test_scheduler_retries_and_records_metrics(tmp_path: Path) -> None:
    CALLS["flaky"] = 0
    sleep = RecordingSleep()
    scheduler = JobScheduler(session_factory=lambda: None, config_path=_write_schedule(tmp_path), sleep=sleep)

    summary = await scheduler.run_job("flaky")

    assert summary == {"ok": True}
    assert sleep.delays == [2.0]
    snapshot = get_scheduler_store().snapshot()
    assert snapshot.totals["runs"] == 1
    assert snapshot.totals["success"] == 1
    assert snapshot.totals["attempt_failures"] == 1
    assert snapshot.totals["retries"] == 1
    job_snapshot = snapshot.jobs["flaky"]
    assert job_snapshot.last_success_at is not None
    assert job_snapshot.last_error is None


@pytest.mark.asyncio
async def test_scheduler_records_final_failure(tmp_path: Path) -> None:
    scheduler = JobScheduler(
        session_factory=lambda: None,
        config_path=_write_schedule(tmp_path),
        sleep=RecordingSleep(),
    )

    assert await scheduler.run_job("failing") is None

    snapshot = get_scheduler_store().snapshot()
    assert snapshot.totals["run_failures"] == 1
    job_snapshot = snapshot.jobs["failing"]
    assert job_snapshot.consecutive_failures == 2
    assert job_snapshot.as_dict()["totals"]["consecutive_failures"] == 2
    assert job_snapshot.last_error == "boom"


@pytest.mark.asyncio
async def test_scheduler_injects_requested_collaborators(tmp_path: Path) -> None:
    queue = object()
    factory = object()
    scheduler = JobScheduler(
        session_factory=factory,
        config_path=_write_schedule(tmp_path),
        context={"job_queue": queue, "unused": 1},
    )

    summary = await scheduler.run_job("collaborators")

    assert summary == {"queue": queue, "batch_size": 50, "factory": factory}
    with pytest.raises(KeyError):
        await scheduler.run_job("disabled")


@pytest.mark.asyncio
async def test_scheduler_start_registers_enabled_jobs(tmp_path: Path) -> None:
    scheduler = JobScheduler(session_factory=lambda: None, config_path=_write_schedule(tmp_path))

    scheduler.start()
    try:
        health = scheduler.health()
        assert health["running"] is True
        assert health["configured_jobs"] == 4
        assert {job.id for job in scheduler._scheduler.get_jobs()} == {"flaky", "failing", "collaborators"}
    finally:
        await scheduler.stop()

    assert scheduler.is_running is False
