"""Tests for the batch control service."""

import pytest

from studio.core.config import settings
from studio.core.exceptions import (
    BatchValidationError,
    InvalidTransitionError,
    JobNotFoundError,
    NotAuthorizedError,
    SchedulingFailure,
)
from studio.schemas.batch import GenerationParams

from tests.conftest import OTHER_OWNER, OWNER, FakeExecutor


@pytest.mark.parametrize("count", [0, -3, settings.MAX_BATCH_SIZE + 1, True, 2.5, "3"])
def test_start_rejects_bad_count(control, store, scheduler, count):
    with pytest.raises(BatchValidationError):
        control.start(OWNER, {"prompt": "cat"}, count)

    assert store.list_for_owner(OWNER) == []
    assert scheduler.history == []


@pytest.mark.parametrize("params", [
    {},
    {"prompt": "   "},
    {"prompt": "cat", "width": 0},
    {"prompt": "cat", "unexpected": 1},
    "cat",
])
def test_start_rejects_bad_params(control, store, params):
    with pytest.raises(BatchValidationError):
        control.start(OWNER, params, 2)

    assert store.list_for_owner(OWNER) == []


def test_start_creates_pending_job_and_schedules_first_step(control, store, scheduler):
    job_id = control.start(OWNER, {"prompt": "cat", "model": "flux", "width": 768}, 3)

    job = store.get(job_id, OWNER)
    assert job.status == "pending"
    assert job.total_count == 3
    assert job.generation_params["prompt"] == "cat"
    assert job.generation_params["width"] == 768
    assert scheduler.history == [(job_id, 0.0)]


def test_start_accepts_params_model(control, store):
    job_id = control.start(OWNER, GenerationParams(prompt="dog", seed=5), 1)
    assert store.get(job_id, OWNER).generation_params["seed"] == 5


def test_start_accepts_max_batch_size(control, store):
    job_id = control.start(OWNER, {"prompt": "cat"}, settings.MAX_BATCH_SIZE)
    assert store.get(job_id, OWNER).total_count == settings.MAX_BATCH_SIZE


def test_start_surfaces_scheduling_failure(control, scheduler):
    scheduler.fail_next = True
    with pytest.raises(SchedulingFailure):
        control.start(OWNER, {"prompt": "cat"}, 1)


def test_pause_from_pending_and_processing(control, store):
    pending = control.start(OWNER, {"prompt": "cat"}, 2)
    processing = control.start(OWNER, {"prompt": "cat"}, 2)
    store.claim_step(processing, OWNER)

    assert control.pause(OWNER, pending).status == "paused"
    assert control.pause(OWNER, processing).status == "paused"


def test_pause_twice_is_invalid(control):
    job_id = control.start(OWNER, {"prompt": "cat"}, 2)
    control.pause(OWNER, job_id)

    with pytest.raises(InvalidTransitionError):
        control.pause(OWNER, job_id)


def test_resume_only_from_paused(control, store, scheduler):
    job_id = control.start(OWNER, {"prompt": "cat"}, 2)
    with pytest.raises(InvalidTransitionError):
        control.resume(OWNER, job_id)

    store.claim_step(job_id, OWNER)
    with pytest.raises(InvalidTransitionError):
        control.resume(OWNER, job_id)

    control.pause(OWNER, job_id)
    resumed = control.resume(OWNER, job_id)

    assert resumed.status == "processing"
    # The first step is still queued and picks the job up again
    assert list(scheduler.pending) == [(job_id, 0.0)]


def test_resume_after_chain_ended_schedules_one_step(control, store, scheduler, make_driver, run_all):
    job_id = control.start(OWNER, {"prompt": "cat"}, 2)
    control.pause(OWNER, job_id)
    run_all(make_driver(FakeExecutor()))
    assert store.get(job_id, OWNER).step_outstanding is False

    control.resume(OWNER, job_id)

    assert list(scheduler.pending) == [(job_id, 0.0)]
    assert store.get(job_id, OWNER).step_outstanding is True


def test_resume_scheduling_failure_leaves_job_paused(control, store, scheduler, make_driver, run_all):
    job_id = control.start(OWNER, {"prompt": "cat"}, 2)
    control.pause(OWNER, job_id)
    run_all(make_driver(FakeExecutor()))
    scheduler.fail_next = True

    with pytest.raises(SchedulingFailure):
        control.resume(OWNER, job_id)

    job = store.get(job_id, OWNER)
    assert job.status == "paused"
    assert job.step_outstanding is False

    control.resume(OWNER, job_id)
    assert list(scheduler.pending) == [(job_id, 0.0)]


def test_start_scheduling_failure_can_be_recovered(control, store, scheduler):
    scheduler.fail_next = True
    with pytest.raises(SchedulingFailure):
        control.start(OWNER, {"prompt": "cat"}, 1)

    job = store.list_for_owner(OWNER)[0]
    assert job.status == "pending"
    assert job.step_outstanding is False

    control.pause(OWNER, job.id)
    control.resume(OWNER, job.id)
    assert list(scheduler.pending) == [(job.id, 0.0)]


@pytest.mark.parametrize("setup", ["pending", "processing", "paused"])
def test_cancel_from_every_active_status(control, store, setup):
    job_id = control.start(OWNER, {"prompt": "cat"}, 2)
    if setup != "pending":
        store.set_status(job_id, OWNER, setup)

    assert control.cancel(OWNER, job_id).status == "cancelled"


@pytest.mark.parametrize("terminal", ["completed", "cancelled", "failed"])
def test_operations_on_terminal_jobs_fail_without_mutation(control, store, scheduler, terminal):
    job_id = control.start(OWNER, {"prompt": "cat"}, 2)
    store.set_status(job_id, OWNER, terminal)
    before = store.get(job_id, OWNER).to_dict()
    scheduler.clear()

    for operation in (control.pause, control.resume, control.cancel):
        with pytest.raises(InvalidTransitionError):
            operation(OWNER, job_id)

    assert store.get(job_id, OWNER).to_dict() == before
    assert len(scheduler.pending) == 0


def test_operations_are_scoped_to_owner(control):
    job_id = control.start(OWNER, {"prompt": "cat"}, 2)

    for operation in (control.pause, control.resume, control.cancel, control.get_job, control.get_job_items):
        with pytest.raises(NotAuthorizedError):
            operation(OTHER_OWNER, job_id)
        with pytest.raises(JobNotFoundError):
            operation(OWNER, "batch_missing")


def test_list_jobs_defaults_to_ten_recent(control):
    for _ in range(12):
        control.start(OWNER, {"prompt": "cat"}, 1)

    assert len(control.list_jobs(OWNER)) == 10
    assert len(control.list_jobs(OWNER, limit=3)) == 3
    assert control.list_jobs(OTHER_OWNER) == []


def test_list_active_jobs_excludes_terminal(control):
    active = control.start(OWNER, {"prompt": "cat"}, 1)
    cancelled = control.start(OWNER, {"prompt": "cat"}, 1)
    control.cancel(OWNER, cancelled)

    assert [job.id for job in control.list_active_jobs(OWNER)] == [active]


def test_get_job_items_empty_before_any_step(control):
    job_id = control.start(OWNER, {"prompt": "cat"}, 2)
    assert control.get_job_items(OWNER, job_id) == []
