# errors.py
"""
Error taxonomy for scheduled transfers.

Validation errors are raised synchronously to whoever creates a job.
Execution errors are terminal for the job they happen on: the executor
marks the job failed and never runs it again.
"""
from typing import Optional


class SchedulerError(Exception):
    """Base class for every error raised by this package."""

    def __init__(self, message: str, error_code: Optional[str] = None):
        super().__init__(message)
        self.error_code = error_code


class ValidationError(SchedulerError):
    """Bad job input (address, amount, schedule time, frequency). Never persisted."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message, error_code="VALIDATION")
        self.field = field


class JobNotFoundError(SchedulerError):
    def __init__(self, schedule_id: str):
        super().__init__(f"Schedule {schedule_id} not found", error_code="NOT_FOUND")
        self.schedule_id = schedule_id


class ExecutionError(SchedulerError):
    """A transfer could not be executed. Terminal for the job, never retried."""
    pass


class InsufficientFundsError(ExecutionError):
    def __init__(self, message: str):
        super().__init__(message, error_code="INSUFFICIENT_FUNDS")


class SimulationRevertError(ExecutionError):
    def __init__(self, message: str):
        super().__init__(message, error_code="SIMULATION_REVERT")


class BroadcastRejectedError(ExecutionError):
    def __init__(self, message: str):
        super().__init__(message, error_code="BROADCAST_REJECTED")


class ConfirmationTimeoutError(ExecutionError):
    def __init__(self, message: str, tx_hash: Optional[str] = None):
        super().__init__(message, error_code="CONFIRMATION_TIMEOUT")
        self.tx_hash = tx_hash


class TransactionRevertedError(ExecutionError):
    def __init__(self, message: str, tx_hash: Optional[str] = None):
        super().__init__(message, error_code="TX_REVERTED")
        self.tx_hash = tx_hash


class SigningKeyUnavailableError(ExecutionError):
    def __init__(self, address: str):
        super().__init__(f"No signing key available for {address}", error_code="NO_SIGNER")


class ReconciliationWriteFailure(SchedulerError):
    """
    The transfer confirmed on chain but its outcome could not be written back.

    Raised to operators as an alarm. The job row is left as-is so the
    confirmed transfer is never reported as a failure.
    """

    def __init__(self, schedule_id: str, tx_hash: str, cause: Optional[BaseException] = None):
        super().__init__(
            f"Could not record confirmed transfer {tx_hash} for {schedule_id}: {cause}",
            error_code="RECONCILIATION_WRITE",
        )
        self.schedule_id = schedule_id
        self.tx_hash = tx_hash
