from datetime import datetime, timezone
from types import SimpleNamespace
from uuid import uuid4

import pytest

from bulk_orchestrator.domain.errors import InvalidTransition, RetryBudgetExceeded
from bulk_orchestrator.domain.retry import backoff_delay, staleness_threshold
from bulk_orchestrator.domain.states import JobStatus, Actor
from bulk_orchestrator.domain.transitions import (
    check_transition,
    plan_transition,
    plan_redispatch,
    plan_heartbeat,
)

NOW = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


def make_job(status, **overrides):
    fields = dict(
        id=uuid4(),
        status=status,
        retry_count=0,
        run=1,
        stop_requested=False,
        successful_count=0,
    )
    fields.update(overrides)
    return SimpleNamespace(**fields)


class TestStateMachine:
    """Allowed edges and who may take them"""

    @pytest.mark.parametrize("current,requested,actor", [
        (JobStatus.PENDING, JobStatus.PROCESSING, Actor.DISPATCHER),
        (JobStatus.PENDING, JobStatus.PAUSED, Actor.USER),
        (JobStatus.PENDING, JobStatus.FAILED, Actor.USER),
        (JobStatus.PAUSED, JobStatus.PENDING, Actor.USER),
        (JobStatus.PROCESSING, JobStatus.COMPLETED, Actor.WORKER),
        (JobStatus.PROCESSING, JobStatus.FAILED, Actor.WORKER),
        (JobStatus.PROCESSING, JobStatus.FAILED, Actor.RECOVERY),
        (JobStatus.PROCESSING, JobStatus.FAILED, Actor.USER),
        (JobStatus.FAILED, JobStatus.PENDING, Actor.USER),
    ])
    def test_allowed_edges(self, current, requested, actor):
        check_transition(uuid4(), current, requested, actor)

    @pytest.mark.parametrize("current,requested", [
        (JobStatus.COMPLETED, JobStatus.PENDING),
        (JobStatus.COMPLETED, JobStatus.FAILED),
        (JobStatus.FAILED, JobStatus.COMPLETED),
        (JobStatus.FAILED, JobStatus.PROCESSING),
        (JobStatus.PAUSED, JobStatus.PROCESSING),
        (JobStatus.PENDING, JobStatus.COMPLETED),
        (JobStatus.PROCESSING, JobStatus.PENDING),
        (JobStatus.PROCESSING, JobStatus.PAUSED),
    ])
    def test_disallowed_edges(self, current, requested):
        with pytest.raises(InvalidTransition) as exc_info:
            check_transition(uuid4(), current, requested, Actor.USER)
        assert exc_info.value.current == current
        assert exc_info.value.requested == requested

    def test_wrong_actor_rejected(self):
        """Only the worker completes a job; only the dispatcher starts one"""
        with pytest.raises(InvalidTransition):
            check_transition(uuid4(), JobStatus.PROCESSING, JobStatus.COMPLETED, Actor.USER)
        with pytest.raises(InvalidTransition):
            check_transition(uuid4(), JobStatus.PENDING, JobStatus.PROCESSING, Actor.WORKER)

    def test_exhausted_budget_only_allows_failed(self):
        with pytest.raises(InvalidTransition):
            check_transition(
                uuid4(), JobStatus.PENDING, JobStatus.PROCESSING, Actor.DISPATCHER,
                retry_count=4, max_retries=3,
            )
        check_transition(
            uuid4(), JobStatus.PROCESSING, JobStatus.FAILED, Actor.RECOVERY,
            retry_count=4, max_retries=3,
        )

    def test_stopped_job_cannot_be_resubmitted(self):
        with pytest.raises(InvalidTransition):
            check_transition(uuid4(), JobStatus.FAILED, JobStatus.PENDING, Actor.USER, stop_requested=True)


class TestPlans:
    """Column values produced for each transition"""

    def test_terminal_sets_completed_at(self):
        values = plan_transition(make_job(JobStatus.PROCESSING), JobStatus.COMPLETED, Actor.WORKER, NOW)
        assert values["status"] == JobStatus.COMPLETED
        assert values["completed_at"] == NOW
        assert values["updated_at"] == NOW
        assert values["error_message"] is None

    def test_failed_carries_error(self):
        values = plan_transition(
            make_job(JobStatus.PROCESSING), JobStatus.FAILED, Actor.RECOVERY, NOW,
            error_message="exceeded retry budget",
        )
        assert values["error_message"] == "exceeded retry budget"

    def test_resubmit_starts_new_run(self):
        job = make_job(JobStatus.FAILED, retry_count=3, run=1)
        values = plan_transition(job, JobStatus.PENDING, Actor.USER, NOW)
        assert values["retry_count"] == 0
        assert values["run"] == 2
        assert values["completed_at"] is None
        assert values["error_message"] is None

    def test_redispatch_bumps_retry_count(self):
        values = plan_redispatch(make_job(JobStatus.PROCESSING, retry_count=1), NOW, max_retries=3)
        assert values == {"retry_count": 2, "updated_at": NOW}

    def test_redispatch_with_spent_budget(self):
        with pytest.raises(RetryBudgetExceeded):
            plan_redispatch(make_job(JobStatus.PROCESSING, retry_count=3), NOW, max_retries=3)

    def test_redispatch_requires_processing(self):
        with pytest.raises(InvalidTransition):
            plan_redispatch(make_job(JobStatus.COMPLETED), NOW, max_retries=3)

    def test_heartbeat_only_touches_processing(self):
        assert plan_heartbeat(make_job(JobStatus.PROCESSING), NOW) == {"updated_at": NOW}
        assert plan_heartbeat(make_job(JobStatus.COMPLETED), NOW) is None
        assert plan_heartbeat(make_job(JobStatus.PAUSED), NOW) is None


class TestTiming:
    def test_staleness_grows_with_batch_and_caps(self):
        assert staleness_threshold(0, 120, 0.5, 1800) == 120
        assert staleness_threshold(100, 120, 0.5, 1800) == 170
        assert staleness_threshold(10000, 120, 0.5, 1800) == 1800

    def test_backoff_is_exponential_and_capped(self):
        assert backoff_delay(0, base_delay_seconds=0.2, jitter=False) == pytest.approx(0.2)
        assert backoff_delay(3, base_delay_seconds=0.2, jitter=False) == pytest.approx(1.6)
        assert backoff_delay(50, base_delay_seconds=0.2, max_delay_seconds=5.0, jitter=False) == 5.0
        delay = backoff_delay(1, base_delay_seconds=1.0)
        assert 2.0 <= delay <= 2.2
