# claim.py
"""
Claim protocol: the only mutual exclusion between executors.

A claim is one conditional update on the job row (active and due ->
processing). Whichever executor's update the store applies first wins; every
other claimant, and any owner cancel racing it, sees the row already left
`active` and backs off.
"""
from datetime import datetime, timedelta
from typing import Optional

from models import ClaimResult, JobStatus, utcnow

DEFAULT_DUE_TOLERANCE = timedelta(minutes=5)


def claim(store, schedule_id: str, claimant_id: str, now: Optional[datetime] = None,
          tolerance: timedelta = DEFAULT_DUE_TOLERANCE) -> ClaimResult:
    now = now or utcnow()
    won = store.conditional_update(
        schedule_id,
        JobStatus.ACTIVE,
        {
            "status": JobStatus.PROCESSING,
            "processing_by": claimant_id,
            "processing_started": now,
        },
        due_by=now + tolerance,
    )
    if won:
        return ClaimResult.CLAIMED

    # Lost the update: find out why, for the caller's bookkeeping only.
    job = store.get(schedule_id)
    if job is None:
        return ClaimResult.NOT_FOUND
    if job.status == JobStatus.ACTIVE:
        return ClaimResult.NOT_DUE
    return ClaimResult.ALREADY_CLAIMED


def cancel(store, schedule_id: str) -> bool:
    """Owner cancel, guarded like a claim: succeeds only while the job is active."""
    return store.conditional_update(
        schedule_id,
        JobStatus.ACTIVE,
        {"status": JobStatus.CANCELLED, "next_execution": None},
    )
