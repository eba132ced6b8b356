# worker.py
import logging
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from claim import DEFAULT_DUE_TOLERANCE, claim
from errors import ExecutionError, ReconciliationWriteFailure
from models import ClaimResult, ExecutionRecord, JobStatus, Receipt, ScheduledJob, utcnow
from recurrence import advance, terminal_status
from retry import WriteNotApplied, retry_with_backoff

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 2000


def success_patch(job: ScheduledJob, executed_at: datetime, tx_hash: Optional[str] = None) -> Dict[str, object]:
    """Final job state after one more confirmed execution."""
    count = job.execution_count + 1
    next_instant = advance(job.due_at, job.frequency, anchor=job.scheduled_for)
    status = terminal_status(count, job.max_executions, job.frequency, next_instant)
    patch = {
        "status": status,
        "execution_count": count,
        "last_execution_at": executed_at,
        "next_execution": next_instant if status == JobStatus.ACTIVE else None,
        "processing_by": None,
        "processing_started": None,
    }
    if tx_hash:
        patch["last_tx_hash"] = tx_hash
    return patch


def failure_patch(error: Optional[str], failed_at: datetime) -> Dict[str, object]:
    return {
        "status": JobStatus.FAILED,
        "last_error": (error or "Unknown execution error")[:MAX_ERROR_LENGTH],
        "failed_at": failed_at,
        "next_execution": None,
        "processing_by": None,
        "processing_started": None,
    }


class Executor:
    """
    Polling executor. Run as many instances as you like, in threads or
    processes, against the same store; the claim protocol keeps them from
    running a job twice.

    A failed transfer marks its job failed for good. Only the success
    write-back is retried; it always writes the same final state.
    """

    def __init__(self, store, fee_estimator, transfer_executor, key_source, executor_id=None,
                 poll_interval=30.0, due_tolerance: timedelta = DEFAULT_DUE_TOLERANCE,
                 max_jobs_per_tick=20, max_parallel=1, reconcile_attempts=3, reconcile_backoff=1.0,
                 stop_event=None, clock=utcnow):
        self.db = store
        self.fee_estimator = fee_estimator
        self.transfer_executor = transfer_executor
        self.key_source = key_source
        self.executor_id = executor_id or f"executor-{uuid.uuid4().hex[:8]}"
        self.poll_interval = float(poll_interval)
        self.due_tolerance = due_tolerance
        self.max_jobs_per_tick = int(max_jobs_per_tick)
        self.max_parallel = max(1, int(max_parallel))
        self.reconcile_attempts = max(1, int(reconcile_attempts))
        self.reconcile_backoff = float(reconcile_backoff)
        self.stop_event = stop_event or threading.Event()
        self._clock = clock

    @classmethod
    def from_config(cls, cfg, store, fee_estimator, transfer_executor, key_source, **kwargs) -> "Executor":
        kwargs.setdefault("poll_interval", cfg.poll_interval)
        kwargs.setdefault("due_tolerance", cfg.due_tolerance)
        kwargs.setdefault("max_jobs_per_tick", cfg.max_jobs_per_tick)
        kwargs.setdefault("reconcile_attempts", cfg.reconcile_attempts)
        kwargs.setdefault("reconcile_backoff", cfg.reconcile_backoff)
        return cls(store, fee_estimator, transfer_executor, key_source, **kwargs)

    def run(self):
        logger.info("Executor %s started (poll=%.1fs, tolerance=%ss)",
                    self.executor_id, self.poll_interval, int(self.due_tolerance.total_seconds()))
        while not self.stop_event.is_set():
            try:
                self.run_once()
            except Exception:  # a store outage must not kill the loop
                logger.exception("Executor %s: polling cycle failed", self.executor_id)
            self.stop_event.wait(timeout=self.poll_interval)
        logger.info("Executor %s stopped", self.executor_id)

    def stop(self):
        self.stop_event.set()

    def _now(self) -> datetime:
        return self._clock()

    def _log_transition(self, job_id, old_state, new_state, extra=""):
        logger.info("[%s] Job %s: %s → %s %s", self.executor_id, job_id, old_state, new_state, extra)

    def run_once(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """One polling cycle: fetch due jobs, claim, execute, reconcile."""
        now = now or self._now()
        due = self.db.find_due(now, self.due_tolerance, self.max_jobs_per_tick)
        summary = {"due": len(due), "claimed": 0, "executed": 0, "failed": 0, "skipped": 0}

        claimed: List[ScheduledJob] = []
        abandoned = 0
        for candidate in due:
            if self.stop_event.is_set():
                break
            won = False
            try:
                result = claim(self.db, candidate.schedule_id, self.executor_id, now, self.due_tolerance)
                if result != ClaimResult.CLAIMED:
                    logger.debug("[%s] Skipping %s: %s", self.executor_id, candidate.schedule_id, result.value)
                    summary["skipped"] += 1
                    continue
                won = True
                job = self.db.get(candidate.schedule_id)
            except Exception as e:
                if not won:
                    logger.exception("[%s] Claim of %s failed", self.executor_id, candidate.schedule_id)
                    summary["skipped"] += 1
                    continue
                # Claimed but unreadable: terminal, like any error after the claim.
                logger.exception("[%s] Could not load claimed job %s", self.executor_id, candidate.schedule_id)
                self._mark_failed(candidate, f"Store error after claim: {e}", "STORE")
                abandoned += 1
                continue
            if job is None:
                summary["skipped"] += 1
                continue
            self._log_transition(job.schedule_id, "active", "processing", f"(claimed by {self.executor_id})")
            claimed.append(job)
        summary["claimed"] = len(claimed) + abandoned

        if self.max_parallel > 1 and len(claimed) > 1:
            with ThreadPoolExecutor(max_workers=self.max_parallel,
                                    thread_name_prefix=f"{self.executor_id}-job") as pool:
                outcomes = list(pool.map(self.process_claimed, claimed))
        else:
            outcomes = [self.process_claimed(job) for job in claimed]

        summary["executed"] = sum(1 for ok in outcomes if ok)
        summary["failed"] = sum(1 for ok in outcomes if not ok) + abandoned
        return summary

    def process_claimed(self, job: ScheduledJob) -> bool:
        """Execute a job this executor holds the claim on. True on a confirmed transfer."""
        start_time = time.monotonic()
        try:
            quote = self.fee_estimator.estimate(job.asset, job.owner_address, job.recipient_address, job.amount)
            signer = self.key_source.signer_for(job.owner_address)
            receipt = self.transfer_executor.execute(
                job.asset, job.owner_address, job.recipient_address, job.amount, signer, quote
            )
        except ExecutionError as e:
            self._mark_failed(job, str(e), getattr(e, "error_code", None))
            return False
        except Exception as e:  # anything after the claim is terminal for the job
            logger.exception("[%s] Unexpected error executing %s", self.executor_id, job.schedule_id)
            self._mark_failed(job, f"Unexpected error: {e}", "UNEXPECTED")
            return False

        duration = time.monotonic() - start_time
        logger.info("[%s] %s confirmed in block %d (tx=%s, duration=%.3fs)",
                    self.executor_id, job.schedule_id, receipt.block_number, receipt.tx_hash, duration)
        try:
            self.reconcile_success(job, receipt)
        except ReconciliationWriteFailure as alarm:
            logger.critical("[%s] RECONCILIATION ALARM: %s", self.executor_id, alarm)
        return True

    def reconcile_success(self, job: ScheduledJob, receipt: Receipt) -> JobStatus:
        """
        Record a confirmed transfer. Escalates from a conditional write
        (retried with backoff) to a forced write; raises
        ReconciliationWriteFailure when neither lands.
        """
        executed_at = self._now()
        patch = success_patch(job, executed_at, receipt.tx_hash)
        new_status = patch["status"]

        @retry_with_backoff(max_attempts=self.reconcile_attempts, backoff_sec=self.reconcile_backoff)
        def conditional_write():
            if not self.db.conditional_update(job.schedule_id, JobStatus.PROCESSING, patch):
                raise WriteNotApplied(f"{job.schedule_id} is no longer processing")

        last_error: Optional[BaseException] = None
        try:
            conditional_write()
        except Exception as e:  # escalate to the forced write
            last_error = e
            logger.error("[%s] Conditional write-back failed for %s: %s; forcing update",
                         self.executor_id, job.schedule_id, e)
            try:
                if not self.db.force_update(job.schedule_id, patch):
                    raise WriteNotApplied(f"{job.schedule_id} not found for forced update")
            except Exception as forced_error:  # surfaced as an alarm below
                raise ReconciliationWriteFailure(job.schedule_id, receipt.tx_hash, forced_error) from last_error

        self._record(ExecutionRecord.from_receipt(job.schedule_id, self.executor_id, receipt, executed_at))
        extra = f"(executions={patch['execution_count']}/{job.max_executions}, tx={receipt.tx_hash}"
        if patch["next_execution"]:
            extra += f", next={patch['next_execution'].isoformat()}"
        self._log_transition(job.schedule_id, "processing", new_status.value, extra + ")")
        return new_status

    def _mark_failed(self, job: ScheduledJob, error: str, error_code: Optional[str] = None):
        now = self._now()
        patch = failure_patch(error, now)
        error = patch["last_error"]
        try:
            written = self.db.force_update(job.schedule_id, patch)
        except Exception:  # job stays in processing; it will not run again
            logger.exception("[%s] Could not mark %s failed; it stays in processing for an operator",
                             self.executor_id, job.schedule_id)
            written = False
        self._record(ExecutionRecord(
            schedule_id=job.schedule_id, executor_id=self.executor_id, ok=False, executed_at=now, error=error,
        ))
        if written:
            self._log_transition(job.schedule_id, "processing", "failed",
                                 f"(code={error_code or '-'}, error={error})")

    def _record(self, record: ExecutionRecord):
        try:
            self.db.record_execution(record)
        except Exception:  # history is informational; job state is already written
            logger.exception("[%s] Could not write execution history for %s", self.executor_id, record.schedule_id)
