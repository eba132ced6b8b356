# jobs.py
"""
Job creation API: validate, preview, create and cancel scheduled transfers.

Validation happens here and only here. A job that reaches the store is
well-formed; executors never re-check addresses or amounts.
"""
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple

from web3 import Web3

import claim as claim_protocol
from errors import JobNotFoundError, ValidationError
from models import Asset, FeeQuote, Frequency, JobStatus, ScheduledJob, from_iso, to_base_units, to_iso, utcnow
from recurrence import next_instants

logger = logging.getLogger(__name__)

# Recurring jobs without an explicit limit run until cancelled, in practice.
DEFAULT_RECURRING_MAX_EXECUTIONS = 999
MAX_ASSET_DECIMALS = 36


def new_schedule_id() -> str:
    return f"sched_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


def idempotency_tag(schedule_id: str) -> str:
    """keccak256 of the schedule id, usable as an on-chain correlation tag."""
    return Web3.to_hex(Web3.keccak(text=schedule_id))


def time_until(when: datetime, now: Optional[datetime] = None) -> str:
    now = now or utcnow()
    seconds = int((when - now).total_seconds())
    if seconds <= 0:
        return "due now"
    days, rem = divmod(seconds, 86400)
    hours, rem = divmod(rem, 3600)
    minutes = rem // 60
    if days:
        return f"in {days}d {hours}h"
    if hours:
        return f"in {hours}h {minutes}m"
    return f"in {max(minutes, 1)}m"


@dataclass
class JobPreview:
    fee_quote: FeeQuote
    next_instants: List[datetime]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "feeQuote": self.fee_quote.to_dict() if self.fee_quote else None,
            "nextExecutions": [to_iso(t) for t in self.next_instants],
        }


@dataclass
class _ValidJob:
    asset: Asset
    sender: str
    recipient: str
    amount: Decimal
    scheduled_for: datetime
    frequency: Frequency
    max_executions: int


class JobService:
    def __init__(self, store, fee_estimator=None, clock=utcnow):
        self.db = store
        self.fee_estimator = fee_estimator
        self._clock = clock

    def validate(self, asset: Asset, sender: str, recipient: str, amount, scheduled_for,
                 frequency="once", max_executions: Optional[int] = None) -> _ValidJob:
        """Normalize job input. Raises ValidationError listing every problem found."""
        errors: List[Tuple[str, str]] = []

        sender = self._address(sender, "owner_address", "Invalid owner address", errors)
        recipient = self._address(recipient, "recipient_address", "Invalid recipient address", errors)

        if asset is None or not asset.symbol:
            errors.append(("asset", "Invalid token information"))
        elif not 0 <= int(asset.decimals) <= MAX_ASSET_DECIMALS:
            errors.append(("asset", f"Unsupported decimals: {asset.decimals}"))
        elif not asset.is_native:
            contract = self._address(asset.contract_address, "asset", "Invalid token contract address", errors)
            if contract:
                asset = Asset.token(asset.symbol, contract, asset.decimals)

        parsed_amount = self._amount(amount, asset, errors)

        when = self._when(scheduled_for, errors)
        if when is not None and when <= self._clock():
            errors.append(("scheduled_for", "Scheduled time must be in the future"))

        try:
            frequency = Frequency(frequency)
        except ValueError:
            errors.append(("frequency", f"Invalid frequency: {frequency}"))
            frequency = None

        if frequency == Frequency.ONCE:
            max_executions = 1
        elif max_executions is None:
            max_executions = DEFAULT_RECURRING_MAX_EXECUTIONS
        else:
            try:
                max_executions = int(max_executions)
            except (TypeError, ValueError):
                errors.append(("max_executions", f"Invalid max_executions: {max_executions}"))
            else:
                if max_executions < 1:
                    errors.append(("max_executions", "max_executions must be at least 1"))

        if errors:
            field = errors[0][0]
            raise ValidationError("; ".join(msg for _, msg in errors), field=field)

        return _ValidJob(asset, sender, recipient, parsed_amount, when, frequency, int(max_executions))

    def preview_job(self, asset: Asset, sender: str, recipient: str, amount, scheduled_for,
                    frequency="once", max_executions: Optional[int] = None, count: int = 5) -> JobPreview:
        valid = self.validate(asset, sender, recipient, amount, scheduled_for, frequency, max_executions)
        quote = self._estimate(valid)
        count = min(count, valid.max_executions)
        return JobPreview(quote, next_instants(valid.scheduled_for, valid.frequency, count))

    def create_job(self, asset: Asset, sender: str, recipient: str, amount, scheduled_for,
                   frequency="once", max_executions: Optional[int] = None,
                   description: Optional[str] = None) -> str:
        valid = self.validate(asset, sender, recipient, amount, scheduled_for, frequency, max_executions)
        now = self._clock()
        job = ScheduledJob(
            schedule_id=new_schedule_id(),
            owner_address=valid.sender,
            recipient_address=valid.recipient,
            asset=valid.asset,
            amount=valid.amount,
            frequency=valid.frequency,
            scheduled_for=valid.scheduled_for,
            next_execution=valid.scheduled_for,
            max_executions=valid.max_executions,
            status=JobStatus.ACTIVE,
            description=(description or None),
            estimated_fee=self._estimate(valid),
            created_at=now,
            updated_at=now,
        )
        self.db.insert(job)
        logger.info("Created %s: %s %s -> %s, %s from %s",
                    job.schedule_id, job.amount, job.asset.symbol, job.recipient_address,
                    job.frequency.value, to_iso(job.scheduled_for))
        return job.schedule_id

    def get_job(self, schedule_id: str) -> ScheduledJob:
        job = self.db.get(schedule_id)
        if job is None:
            raise JobNotFoundError(schedule_id)
        return job

    def cancel_job(self, schedule_id: str) -> bool:
        """Cancel an active job. False when it is already claimed or finished."""
        job = self.get_job(schedule_id)
        if claim_protocol.cancel(self.db, schedule_id):
            logger.info("Cancelled %s", schedule_id)
            return True
        logger.info("Cancel of %s refused: job is %s", schedule_id, job.status.value)
        return False

    def _estimate(self, valid: _ValidJob) -> Optional[FeeQuote]:
        if self.fee_estimator is None:
            return None
        return self.fee_estimator.estimate(valid.asset, valid.sender, valid.recipient, valid.amount)

    @staticmethod
    def _address(value, field: str, message: str, errors) -> Optional[str]:
        if not value or not Web3.is_address(str(value)):
            errors.append((field, message))
            return None
        return Web3.to_checksum_address(str(value))

    @staticmethod
    def _amount(value, asset: Optional[Asset], errors) -> Optional[Decimal]:
        try:
            amount = Decimal(str(value).strip())
        except (InvalidOperation, ValueError):
            errors.append(("amount", "Invalid amount"))
            return None
        if not amount.is_finite() or amount <= 0:
            errors.append(("amount", "Amount must be positive"))
            return None
        if asset is not None:
            try:
                to_base_units(amount, asset.decimals)
            except ValueError:
                errors.append(("amount", f"{asset.symbol} supports at most {asset.decimals} decimal places"))
                return None
        return amount

    @staticmethod
    def _when(value, errors) -> Optional[datetime]:
        if isinstance(value, datetime):
            if value.tzinfo is None:
                value = value.replace(tzinfo=timezone.utc)
            return value.astimezone(timezone.utc)
        try:
            parsed = from_iso(str(value).strip()) if value else None
        except ValueError:
            parsed = None
        if parsed is None:
            errors.append(("scheduled_for", f"Invalid scheduled time: {value}"))
        return parsed
