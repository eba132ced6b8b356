"""Tests for the claim protocol and owner cancel."""

from __future__ import annotations

import threading
from datetime import timedelta

from claim import cancel, claim
from conftest import T0
from models import ClaimResult, JobStatus
from storage import Storage


class TestClaim:
    def test_due_job_is_claimed(self, store, make_job):
        job = make_job()
        assert claim(store, job.schedule_id, "executor-1", now=T0) == ClaimResult.CLAIMED

        claimed = store.get(job.schedule_id)
        assert claimed.status == JobStatus.PROCESSING
        assert claimed.processing_by == "executor-1"
        assert claimed.processing_started == T0

    def test_job_due_within_tolerance_is_claimed(self, store, make_job):
        job = make_job(scheduled_for=T0 + timedelta(minutes=3))
        assert claim(store, job.schedule_id, "executor-1", now=T0) == ClaimResult.CLAIMED

    def test_job_beyond_tolerance_is_not_due(self, store, make_job):
        job = make_job(scheduled_for=T0 + timedelta(hours=1))
        assert claim(store, job.schedule_id, "executor-1", now=T0) == ClaimResult.NOT_DUE
        assert store.get(job.schedule_id).status == JobStatus.ACTIVE

    def test_second_claim_loses(self, store, make_job):
        job = make_job()
        claim(store, job.schedule_id, "executor-1", now=T0)
        assert claim(store, job.schedule_id, "executor-2", now=T0) == ClaimResult.ALREADY_CLAIMED
        assert store.get(job.schedule_id).processing_by == "executor-1"

    def test_missing_job(self, store):
        assert claim(store, "sched_missing", "executor-1", now=T0) == ClaimResult.NOT_FOUND

    def test_failed_job_is_never_claimed(self, store, make_job):
        job = make_job(status=JobStatus.FAILED, next_execution=None)
        assert claim(store, job.schedule_id, "executor-1", now=T0 + timedelta(days=30)) != ClaimResult.CLAIMED
        assert store.get(job.schedule_id).status == JobStatus.FAILED


class TestConcurrentClaims:
    """Independent connections racing for the same job."""

    def test_exactly_one_claimant_wins(self, tmp_path, make_job):
        job = make_job()
        db_path = str(tmp_path / "schedules.db")
        claimants = 8
        connections = [Storage(db_path) for _ in range(claimants)]
        barrier = threading.Barrier(claimants)
        results = [None] * claimants

        def race(i):
            barrier.wait()
            results[i] = claim(connections[i], job.schedule_id, f"executor-{i}", now=T0)

        threads = [threading.Thread(target=race, args=(i,)) for i in range(claimants)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        assert results.count(ClaimResult.CLAIMED) == 1
        assert results.count(ClaimResult.ALREADY_CLAIMED) == claimants - 1
        winner = results.index(ClaimResult.CLAIMED)
        assert connections[0].get(job.schedule_id).processing_by == f"executor-{winner}"
        for conn in connections:
            conn.close()


class TestCancel:
    def test_cancel_active_job(self, store, make_job):
        job = make_job()
        assert cancel(store, job.schedule_id) is True
        cancelled = store.get(job.schedule_id)
        assert cancelled.status == JobStatus.CANCELLED
        assert cancelled.next_execution is None

    def test_cancel_then_claim(self, store, make_job):
        job = make_job()
        cancel(store, job.schedule_id)
        assert claim(store, job.schedule_id, "executor-1", now=T0) == ClaimResult.ALREADY_CLAIMED
        assert store.find_due(T0, timedelta(minutes=5)) == []

    def test_cancel_after_claim_is_refused(self, store, make_job):
        job = make_job()
        claim(store, job.schedule_id, "executor-1", now=T0)
        assert cancel(store, job.schedule_id) is False
        assert store.get(job.schedule_id).status == JobStatus.PROCESSING
