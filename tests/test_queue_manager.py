from __future__ import annotations

import threading
from datetime import timedelta

import allure
import pytest
from sqlalchemy.exc import OperationalError

from conftest import FakeClock, RecordingInvoker
from dealflow.config import QueueSettings
from dealflow.orchestrator.engines import EngineDispatcher
from dealflow.orchestrator.manager import QueueManager
from dealflow.orchestrator.models import (
    EngineConfig,
    JobView,
    JobSource,
    JobStatus,
    QueueJobOptions,
)
from dealflow.orchestrator.registry import EngineRegistry
from dealflow.orchestrator.repository import QueueRepository

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("Submission, Retries, Dead Letters"),
]

DEAL_QUEUE = "deal_analysis_queue"


def _submit(manager, **overrides):
    params = {
        "engine_id": "deal_analysis",
        "tenant_id": "T1",
        "trigger_reason": "manual",
        "related_ids": {"deal_id": "D1"},
    }
    params.update(overrides)
    return manager.queue_job(**params)


def test_duplicate_submission_returns_existing_queued_job(
    make_manager,
    queue_repository: QueueRepository,
) -> None:
    manager = make_manager({"deal_analysis": RecordingInvoker()})

    first = _submit(manager)
    second = _submit(manager, payload={"ignored": True})

    assert first.success and second.success
    assert first.duplicate is False
    assert second.duplicate is True
    assert second.job_id == first.job_id
    assert len(queue_repository.list_jobs()) == 1


def test_submission_after_first_job_left_queue_creates_new_job(
    make_manager,
    queue_repository: QueueRepository,
) -> None:
    manager = make_manager({"deal_analysis": RecordingInvoker()})
    first = _submit(manager)
    manager.process_queue(DEAL_QUEUE, "w1")

    again = _submit(manager)

    assert again.success
    assert again.duplicate is False
    assert again.job_id != first.job_id
    assert len(queue_repository.list_jobs()) == 2


def test_unknown_and_disabled_engines_are_rejected_without_rows(
    make_manager,
    queue_repository: QueueRepository,
) -> None:
    manager = make_manager()
    manager.registry.register(
        EngineConfig(
            engine_id="note_analysis",
            queue_name="note_analysis_queue",
            max_concurrency=2,
            job_ttl_minutes=60,
            enabled=False,
        ),
    )

    unknown = _submit(manager, engine_id="valuation")
    disabled = _submit(manager, engine_id="note_analysis", related_ids={"note_id": "N1"})

    assert unknown.success is False
    assert unknown.reason == "unknown_engine"
    assert "not found" in (unknown.error or "")
    assert disabled.success is False
    assert disabled.reason == "engine_disabled"
    assert "disabled" in (disabled.error or "")
    assert queue_repository.list_jobs() == []


def test_negative_delay_is_rejected(make_manager, queue_repository: QueueRepository) -> None:
    manager = make_manager()

    result = _submit(manager, options=QueueJobOptions(delay_minutes=-1))

    assert result.success is False
    assert result.reason == "invalid_request"
    assert queue_repository.list_jobs() == []


def test_submission_fills_schedule_and_expiry(
    make_manager,
    queue_repository: QueueRepository,
    clock: FakeClock,
) -> None:
    manager = make_manager()

    result = _submit(
        manager,
        options=QueueJobOptions(source=JobSource.SCHEDULER, delay_minutes=15),
    )

    job = queue_repository.get_job(result.job_id)
    assert job is not None
    assert job.status is JobStatus.QUEUED
    assert job.queue_name == DEAL_QUEUE
    assert job.source is JobSource.SCHEDULER
    assert job.retry_count == 0
    assert job.max_retries == 3
    assert job.scheduled_for == clock.now + timedelta(minutes=15)
    assert job.expires_at == clock.now + timedelta(minutes=60)


def test_delayed_job_is_not_claimed_before_due(make_manager, clock: FakeClock) -> None:
    invoker = RecordingInvoker()
    manager = make_manager({"deal_analysis": invoker})
    _submit(manager, options=QueueJobOptions(delay_minutes=10))

    early = manager.process_queue(DEAL_QUEUE, "w1")
    clock.advance(minutes=10)
    due = manager.process_queue(DEAL_QUEUE, "w1")

    assert early.processed == 0
    assert due.processed == 1
    assert len(invoker.calls) == 1


def test_failed_job_backs_off_two_four_eight_minutes_then_dead_letters(
    make_manager,
    queue_repository: QueueRepository,
    clock: FakeClock,
) -> None:
    invoker = RecordingInvoker(failures=10)
    manager = make_manager({"deal_analysis": invoker})
    job_id = _submit(manager).job_id

    for retry, backoff in ((1, 2), (2, 4), (3, 8)):
        result = manager.process_queue(DEAL_QUEUE, "w1")
        assert result.failed == 1
        job = queue_repository.get_job(job_id)
        assert job is not None
        assert job.status is JobStatus.QUEUED
        assert job.retry_count == retry
        assert job.scheduled_for == clock.now + timedelta(minutes=backoff)
        assert job.error_message is not None

        not_due = manager.process_queue(DEAL_QUEUE, "w1")
        assert (not_due.processed, not_due.failed) == (0, 0)
        clock.advance(minutes=backoff)

    final = manager.process_queue(DEAL_QUEUE, "w1")

    assert final.failed == 1
    job = queue_repository.get_job(job_id)
    assert job is not None
    assert job.status is JobStatus.FAILED
    assert queue_repository.count_dead_letters(original_job_id=job_id) == 1
    assert len(invoker.calls) == 4

    entry = manager.list_dead_letters()[0]
    assert entry.original_job_id == job_id
    assert entry.failure_context["retry_count"] == 3
    assert entry.failure_context["related_ids"] == {"deal_id": "D1"}
    assert entry.failure_context["trigger_reason"] == "manual"
    assert "engine unavailable" in entry.failure_reason

    clock.advance(minutes=30)
    assert manager.process_queue(DEAL_QUEUE, "w1").failed == 0
    assert queue_repository.count_dead_letters(original_job_id=job_id) == 1


def test_backoff_is_capped(make_manager, queue_repository: QueueRepository, clock) -> None:
    manager = make_manager(
        {"deal_analysis": RecordingInvoker(failures=1)},
        settings=QueueSettings(max_backoff_minutes=1),
    )
    job_id = _submit(manager).job_id

    manager.process_queue(DEAL_QUEUE, "w1")

    job = queue_repository.get_job(job_id)
    assert job is not None
    assert job.scheduled_for == clock.now + timedelta(minutes=1)


def test_end_to_end_deal_analysis_completes_after_two_retries(
    make_manager,
    queue_repository: QueueRepository,
    clock: FakeClock,
) -> None:
    invoker = RecordingInvoker(failures=2)
    manager = make_manager({"deal_analysis": invoker})
    job_id = _submit(manager).job_id

    assert manager.process_queue(DEAL_QUEUE, "w1").failed == 1
    clock.advance(minutes=2)
    assert manager.process_queue(DEAL_QUEUE, "w1").failed == 1
    clock.advance(minutes=4)
    last = manager.process_queue(DEAL_QUEUE, "w1")

    assert last.processed == 1
    job = queue_repository.get_job(job_id)
    assert job is not None
    assert job.status is JobStatus.COMPLETED
    assert job.retry_count == 2
    assert job.completed_at == clock.now
    assert [call.job_id for call in invoker.calls] == [job_id, job_id, job_id]
    assert invoker.calls[0].related_ids == {"deal_id": "D1"}
    assert queue_repository.get_lock_holder(DEAL_QUEUE) is None


def test_expired_job_is_never_claimed_and_cleanup_marks_it(
    make_manager,
    queue_repository: QueueRepository,
    clock: FakeClock,
) -> None:
    invoker = RecordingInvoker()
    manager = make_manager({"deal_analysis": invoker})
    job_id = _submit(manager).job_id
    clock.advance(minutes=61)

    result = manager.process_queue(DEAL_QUEUE, "w1")
    summary = manager.cleanup()

    assert result.processed == 0
    assert invoker.calls == []
    assert summary.expired_jobs == 1
    job = queue_repository.get_job(job_id)
    assert job is not None
    assert job.status is JobStatus.EXPIRED


def test_held_lock_makes_second_pass_a_no_op(
    make_manager,
    queue_repository: QueueRepository,
    clock: FakeClock,
) -> None:
    invoker = RecordingInvoker()
    manager = make_manager({"deal_analysis": invoker})
    job_id = _submit(manager).job_id
    assert queue_repository.acquire_lock(
        queue_name=DEAL_QUEUE,
        worker_id="other-worker",
        now=clock.now,
        expires_at=clock.now + timedelta(minutes=5),
    )

    blocked = manager.process_queue(DEAL_QUEUE, "w1")

    assert blocked.success is True
    assert blocked.lock_acquired is False
    assert (blocked.processed, blocked.failed) == (0, 0)
    assert invoker.calls == []
    assert queue_repository.get_lock_holder(DEAL_QUEUE) == "other-worker"

    clock.advance(minutes=6)
    resumed = manager.process_queue(DEAL_QUEUE, "w1")

    assert resumed.lock_acquired is True
    assert resumed.processed == 1
    assert queue_repository.get_job(job_id).status is JobStatus.COMPLETED



class BlockingInvoker:
    """Engine invoker that holds the first job until released."""

    def __init__(self) -> None:
        self.started = threading.Event()
        self.release = threading.Event()
        self.calls: list[str] = []

    def invoke(self, job: JobView) -> None:
        self.calls.append(job.job_id)
        self.started.set()
        if not self.release.wait(timeout=10):
            raise TimeoutError("blocking invoker was never released")


def test_overlapping_passes_on_one_queue_run_exclusively(
    make_manager,
    queue_repository: QueueRepository,
) -> None:
    invoker = BlockingInvoker()
    manager = make_manager({"deal_analysis": invoker})
    job_id = _submit(manager).job_id
    results = {}
    first = threading.Thread(
        target=lambda: results.__setitem__("w1", manager.process_queue(DEAL_QUEUE, "w1")),
    )

    first.start()
    try:
        assert invoker.started.wait(timeout=10)
        second = manager.process_queue(DEAL_QUEUE, "w2")
    finally:
        invoker.release.set()
        first.join(timeout=10)

    assert second.success is True
    assert second.lock_acquired is False
    assert (second.processed, second.failed) == (0, 0)
    assert results["w1"].lock_acquired is True
    assert results["w1"].processed == 1
    assert invoker.calls == [job_id]
    assert queue_repository.get_job(job_id).status is JobStatus.COMPLETED
    assert queue_repository.get_lock_holder(DEAL_QUEUE) is None

def test_pass_claims_at_most_max_concurrency_jobs_in_fifo_order(
    make_manager,
    queue_repository: QueueRepository,
    clock: FakeClock,
) -> None:
    invoker = RecordingInvoker()
    manager = make_manager({"deal_analysis": invoker})
    job_ids = []
    for index in range(4):
        job_ids.append(_submit(manager, related_ids={"deal_id": f"D{index}"}).job_id)
        clock.advance(seconds=1)

    first = manager.process_queue(DEAL_QUEUE, "w1")
    second = manager.process_queue(DEAL_QUEUE, "w1")

    assert first.processed == 3
    assert second.processed == 1
    assert [call.job_id for call in invoker.calls] == job_ids


def test_unknown_queue_is_reported(make_manager) -> None:
    result = make_manager().process_queue("valuation_queue", "w1")

    assert result.success is False
    assert "valuation_queue" in (result.error or "")


def test_job_for_engine_without_invoker_goes_through_retry(
    make_manager,
    queue_repository: QueueRepository,
) -> None:
    manager = make_manager({})
    job_id = _submit(manager).job_id

    result = manager.process_queue(DEAL_QUEUE, "w1")

    assert result.failed == 1
    job = queue_repository.get_job(job_id)
    assert job is not None
    assert job.retry_count == 1
    assert "Unknown engine" in (job.error_message or "")


def test_disabled_engine_queue_still_drains(
    make_manager,
    queue_repository: QueueRepository,
) -> None:
    invoker = RecordingInvoker()
    manager = make_manager({"deal_analysis": invoker})
    job_id = _submit(manager).job_id
    manager.registry.register(
        EngineConfig(
            engine_id="deal_analysis",
            queue_name=DEAL_QUEUE,
            max_concurrency=3,
            job_ttl_minutes=60,
            enabled=False,
        ),
    )

    result = manager.process_queue(DEAL_QUEUE, "w1")

    assert result.processed == 1
    assert queue_repository.get_job(job_id).status is JobStatus.COMPLETED


def test_cleanup_requeues_stuck_processing_job(
    make_manager,
    queue_repository: QueueRepository,
    clock: FakeClock,
) -> None:
    manager = make_manager()
    job_id = _submit(manager).job_id
    assert queue_repository.mark_processing(job_id=job_id, worker_id="crashed", now=clock.now)
    clock.advance(minutes=31)

    summary = manager.cleanup()

    assert summary.recovered_stuck == 1
    job = queue_repository.get_job(job_id)
    assert job is not None
    assert job.status is JobStatus.QUEUED
    assert job.retry_count == 1
    assert "exceeded 30 minutes" in (job.error_message or "")


def test_cleanup_dead_letters_stuck_job_without_retries_left(
    make_manager,
    queue_repository: QueueRepository,
    clock: FakeClock,
) -> None:
    manager = make_manager()
    job_id = _submit(manager, options=QueueJobOptions(max_retries=0)).job_id
    queue_repository.mark_processing(job_id=job_id, worker_id="crashed", now=clock.now)
    clock.advance(minutes=45)

    manager.cleanup()

    assert queue_repository.get_job(job_id).status is JobStatus.FAILED
    assert queue_repository.count_dead_letters(original_job_id=job_id) == 1


def test_cleanup_purges_old_completed_jobs_and_stale_locks(
    make_manager,
    queue_repository: QueueRepository,
    clock: FakeClock,
) -> None:
    manager = make_manager({"deal_analysis": RecordingInvoker()})
    job_id = _submit(manager).job_id
    manager.process_queue(DEAL_QUEUE, "w1")
    queue_repository.acquire_lock(
        queue_name="document_analysis_queue",
        worker_id="gone",
        now=clock.now,
        expires_at=clock.now + timedelta(minutes=5),
    )
    clock.advance(hours=25)

    summary = manager.cleanup()

    assert summary.purged_completed == 1
    assert summary.released_locks == 1
    assert queue_repository.get_job(job_id) is None
    assert queue_repository.get_lock_holder("document_analysis_queue") is None


def test_dead_letter_write_failure_falls_back_to_failed_status(
    make_manager,
    queue_repository: QueueRepository,
    monkeypatch,
) -> None:
    manager = make_manager({"deal_analysis": RecordingInvoker(failures=1)})
    job_id = _submit(manager, options=QueueJobOptions(max_retries=0)).job_id

    def _broken(**_kwargs):
        raise OperationalError("INSERT INTO dead_letter_queue", {}, Exception("disk I/O error"))

    monkeypatch.setattr(queue_repository, "dead_letter_job", _broken)
    result = manager.process_queue(DEAL_QUEUE, "w1")

    assert result.failed == 1
    job = queue_repository.get_job(job_id)
    assert job is not None
    assert job.status is JobStatus.FAILED
    assert (job.error_message or "").startswith("dead letter write failed")


def test_replay_resubmits_dead_letter_once(
    make_manager,
    queue_repository: QueueRepository,
) -> None:
    manager = make_manager({"deal_analysis": RecordingInvoker(failures=1)})
    original_id = _submit(
        manager,
        payload={"analysis_depth": "full"},
        options=QueueJobOptions(max_retries=0),
    ).job_id
    manager.process_queue(DEAL_QUEUE, "w1")
    entry = manager.list_dead_letters()[0]

    replay = manager.replay_dead_letter(entry.dlq_id)
    again = manager.replay_dead_letter(entry.dlq_id)

    assert replay.success is True
    assert replay.job_id != original_id
    job = queue_repository.get_job(replay.job_id)
    assert job is not None
    assert job.status is JobStatus.QUEUED
    assert job.source is JobSource.EVENT
    assert job.trigger_reason == "dlq_replay:manual"
    assert job.related_ids == {"deal_id": "D1"}
    assert job.retry_count == 0
    assert job.payload == {"analysis_depth": "full"}
    stamped = queue_repository.get_dead_letter(entry.dlq_id)
    assert stamped is not None
    assert stamped.replay_job_id == replay.job_id
    assert stamped.replayed_at is not None

    assert again.success is False
    assert again.reason == "already_replayed"


def test_replay_of_missing_dead_letter_is_rejected(make_manager) -> None:
    result = make_manager().replay_dead_letter("missing")

    assert result.success is False
    assert result.reason == "not_found"


def test_queue_stats_group_by_status_and_engine(
    make_manager,
    queue_repository: QueueRepository,
) -> None:
    manager = make_manager({"deal_analysis": RecordingInvoker()})
    _submit(manager)
    manager.process_queue(DEAL_QUEUE, "w1")
    _submit(manager, related_ids={"deal_id": "D2"})
    _submit(manager, engine_id="document_analysis", related_ids={"document_id": "DOC1"})

    stats = manager.queue_stats()

    assert stats.total == 3
    assert stats.by_status == {"completed": 1, "queued": 2}
    assert stats.by_engine["deal_analysis"] == {"completed": 1, "queued": 1}
    assert stats.by_engine["document_analysis"] == {"queued": 1}
    assert stats.dead_letters == 0


@pytest.mark.parametrize("pause_seconds", [0.0, 0.5])
def test_inter_job_pause_only_between_jobs(
    queue_repository: QueueRepository,
    clock: FakeClock,
    pause_seconds: float,
) -> None:
    pauses: list[float] = []
    manager = QueueManager(
        repository=queue_repository,
        registry=EngineRegistry(queue_repository),
        dispatcher=EngineDispatcher({"deal_analysis": RecordingInvoker()}),
        settings=QueueSettings(inter_job_pause_seconds=pause_seconds),
        clock=clock,
        pause=pauses.append,
    )
    for index in range(2):
        _submit(manager, related_ids={"deal_id": f"D{index}"})

    manager.process_queue(DEAL_QUEUE, "w1")

    assert pauses == ([pause_seconds] if pause_seconds else [])
