"""Tests for the SQLite job store."""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

import pytest

from conftest import OWNER, RECIPIENT, T0, TOKEN
from models import Asset, ExecutionRecord, FeeQuote, Frequency, JobStatus


class TestJobs:
    def test_round_trip(self, store, make_job):
        quote = FeeQuote(fee_per_unit=39_500_000_000, priority_fee_per_unit=2_000_000_000,
                         base_fee_per_unit=30_000_000_000, gas_units=55_000,
                         cost_in_asset=Decimal("0.0021725"), cost_in_fiat=None,
                         congestion_level="Low")
        job = make_job(asset=Asset.token("USDC", TOKEN, 6), amount=Decimal("0.000001"),
                       frequency=Frequency.MONTHLY, description="payroll", estimated_fee=quote)

        loaded = store.get(job.schedule_id)
        assert loaded.owner_address == OWNER
        assert loaded.recipient_address == RECIPIENT
        assert loaded.asset == Asset.token("USDC", TOKEN, 6)
        assert loaded.amount == Decimal("0.000001")
        assert loaded.frequency == Frequency.MONTHLY
        assert loaded.scheduled_for == T0
        assert loaded.estimated_fee == quote
        assert loaded.description == "payroll"

    def test_get_missing(self, store):
        assert store.get("sched_missing") is None

    def test_find_due_filters_and_orders(self, store, make_job):
        later = make_job(scheduled_for=T0 - timedelta(minutes=1))
        earlier = make_job(scheduled_for=T0 - timedelta(hours=1))
        make_job(scheduled_for=T0 + timedelta(hours=1))
        make_job(status=JobStatus.FAILED, next_execution=None)
        make_job(status=JobStatus.CANCELLED, next_execution=None)

        due = store.find_due(T0, timedelta(minutes=5))
        assert [j.schedule_id for j in due] == [earlier.schedule_id, later.schedule_id]
        assert len(store.find_due(T0, timedelta(minutes=5), limit=1)) == 1

    def test_conditional_update_checks_status(self, store, make_job):
        job = make_job()
        assert store.conditional_update(job.schedule_id, JobStatus.PROCESSING, {"last_error": "x"}) is False
        assert store.conditional_update(job.schedule_id, JobStatus.ACTIVE, {"description": "memo"}) is True
        assert store.get(job.schedule_id).description == "memo"

    def test_conditional_update_checks_due_time(self, store, make_job):
        job = make_job(scheduled_for=T0 + timedelta(hours=1))
        patch = {"status": JobStatus.PROCESSING, "processing_by": "e1", "processing_started": T0}
        assert store.conditional_update(job.schedule_id, JobStatus.ACTIVE, patch, due_by=T0) is False
        assert store.conditional_update(job.schedule_id, JobStatus.ACTIVE, patch,
                                        due_by=T0 + timedelta(hours=1)) is True

    def test_force_update(self, store, make_job):
        job = make_job(status=JobStatus.PROCESSING, processing_by="e1", processing_started=T0)
        assert store.force_update(job.schedule_id, {"status": JobStatus.FAILED, "last_error": "boom"}) is True
        assert store.get(job.schedule_id).status == JobStatus.FAILED
        assert store.force_update("sched_missing", {"last_error": "boom"}) is False

    def test_immutable_columns_cannot_be_patched(self, store, make_job):
        job = make_job()
        with pytest.raises(KeyError):
            store.force_update(job.schedule_id, {"amount": "1000"})

    def test_list_and_count(self, store, make_job):
        make_job()
        make_job()
        make_job(status=JobStatus.FAILED, next_execution=None)
        assert len(store.list_jobs()) == 3
        assert len(store.list_jobs(status=JobStatus.FAILED)) == 1
        assert len(store.list_jobs(status="active", limit=1)) == 1
        assert store.count_by_status() == {"active": 2, "failed": 1}

    def test_find_stuck(self, store, make_job):
        stuck = make_job(status=JobStatus.PROCESSING, processing_by="e1",
                         processing_started=T0 - timedelta(hours=1))
        make_job(status=JobStatus.PROCESSING, processing_by="e2", processing_started=T0)
        assert [j.schedule_id for j in store.find_stuck(T0 - timedelta(minutes=5))] == [stuck.schedule_id]


class TestExecutions:
    def test_record_and_list(self, store):
        store.record_execution(ExecutionRecord(
            schedule_id="sched_1", executor_id="e1", ok=True, executed_at=T0, tx_hash="0xabc",
            block_number=10, gas_used=21_000, effective_fee_per_unit=32_000_000_000,
            cost_in_asset=Decimal("0.000672"), cost_in_fiat=Decimal("1.34"),
        ))
        store.record_execution(ExecutionRecord(
            schedule_id="sched_1", executor_id="e1", ok=False, executed_at=T0 + timedelta(days=1),
            error="Broadcast rejected",
        ))
        store.record_execution(ExecutionRecord(schedule_id="sched_2", executor_id="e2", ok=True, executed_at=T0))

        records = store.list_executions("sched_1")
        assert [r.ok for r in records] == [False, True]
        assert records[1].effective_fee_per_unit == 32_000_000_000
        assert records[1].cost_in_asset == Decimal("0.000672")
        assert records[0].error == "Broadcast rejected"
        assert len(store.list_executions()) == 3

    def test_stats(self, store):
        for gas, cost in ((21_000, "0.001"), (23_000, "0.003")):
            store.record_execution(ExecutionRecord(schedule_id="s", executor_id="e", ok=True, executed_at=T0,
                                                   gas_used=gas, cost_in_asset=Decimal(cost)))
        store.record_execution(ExecutionRecord(schedule_id="s", executor_id="e", ok=False, executed_at=T0))

        stats = store.execution_stats()
        assert stats["confirmed_executions"] == 2
        assert stats["failed_executions"] == 1
        assert stats["avg_gas_used"] == 22_000
        assert stats["total_cost_in_asset"] == pytest.approx(0.004)
        assert stats["total_cost_in_fiat"] is None

    def test_stats_empty(self, store):
        stats = store.execution_stats()
        assert stats["confirmed_executions"] == 0
        assert stats["avg_gas_used"] is None


class TestConfig:
    def test_set_get_list(self, store):
        assert store.get_config("poll_interval") is None
        assert store.get_config("poll_interval", default="30") == "30"
        store.set_config("poll_interval", 5)
        store.set_config("poll_interval", 10)
        assert store.get_config("poll_interval") == "10"
        assert [r["key"] for r in store.list_config()] == ["poll_interval"]
