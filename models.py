# models.py
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

NATIVE_DECIMALS = 18
WEI_PER_GWEI = 10 ** 9


class JobStatus(str, Enum):
    ACTIVE = "active"
    PROCESSING = "processing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.CANCELLED, JobStatus.FAILED})


class Frequency(str, Enum):
    ONCE = "once"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class ClaimResult(str, Enum):
    CLAIMED = "claimed"
    NOT_DUE = "not_due"
    ALREADY_CLAIMED = "already_claimed"
    NOT_FOUND = "not_found"


class Congestion(str, Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    UNKNOWN = "Unknown"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """Fixed-width UTC ISO string, so stored timestamps compare lexically."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def to_base_units(amount: Decimal, decimals: int) -> int:
    """Human amount -> integer base units. Raises ValueError on excess precision."""
    scaled = Decimal(amount).scaleb(decimals)
    if scaled != scaled.to_integral_value():
        raise ValueError(f"{amount} has more than {decimals} decimal places")
    return int(scaled)


def from_base_units(units: int, decimals: int = NATIVE_DECIMALS) -> Decimal:
    return Decimal(int(units)).scaleb(-decimals)


@dataclass(frozen=True)
class Asset:
    symbol: str
    decimals: int = NATIVE_DECIMALS
    is_native: bool = True
    contract_address: Optional[str] = None

    @classmethod
    def native(cls, symbol: str = "ETH") -> "Asset":
        return cls(symbol=symbol, decimals=NATIVE_DECIMALS, is_native=True, contract_address=None)

    @classmethod
    def token(cls, symbol: str, contract_address: str, decimals: int = 18) -> "Asset":
        return cls(symbol=symbol, decimals=decimals, is_native=False, contract_address=contract_address)

    @property
    def asset_id(self) -> str:
        return "native" if self.is_native else (self.contract_address or "").lower()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "decimals": self.decimals,
            "isNative": self.is_native,
            "contractAddress": self.contract_address,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Asset":
        return cls(
            symbol=str(data["symbol"]),
            decimals=int(data.get("decimals", NATIVE_DECIMALS)),
            is_native=bool(data.get("isNative", data.get("is_native", True))),
            contract_address=data.get("contractAddress", data.get("contract_address")),
        )


@dataclass
class FeeQuote:
    fee_per_unit: int               # max fee per gas, wei
    priority_fee_per_unit: int      # wei
    base_fee_per_unit: int          # wei
    gas_units: int
    cost_in_asset: Decimal          # native units (e.g. ETH)
    cost_in_fiat: Optional[Decimal] # None when no spot price was available
    congestion_level: str = Congestion.UNKNOWN.value
    degraded: bool = False

    @property
    def max_cost_wei(self) -> int:
        return self.gas_units * self.fee_per_unit

    def to_dict(self) -> Dict[str, Any]:
        return {
            "feePerUnit": str(self.fee_per_unit),
            "priorityFeePerUnit": str(self.priority_fee_per_unit),
            "baseFeePerUnit": str(self.base_fee_per_unit),
            "gasUnits": self.gas_units,
            "costInAsset": str(self.cost_in_asset),
            "costInFiat": str(self.cost_in_fiat) if self.cost_in_fiat is not None else None,
            "congestionLevel": self.congestion_level,
            "degraded": self.degraded,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FeeQuote":
        fiat = data.get("costInFiat")
        return cls(
            fee_per_unit=int(data["feePerUnit"]),
            priority_fee_per_unit=int(data.get("priorityFeePerUnit", 0)),
            base_fee_per_unit=int(data.get("baseFeePerUnit", 0)),
            gas_units=int(data["gasUnits"]),
            cost_in_asset=Decimal(data["costInAsset"]),
            cost_in_fiat=Decimal(fiat) if fiat is not None else None,
            congestion_level=data.get("congestionLevel", Congestion.UNKNOWN.value),
            degraded=bool(data.get("degraded", False)),
        )


@dataclass
class Receipt:
    tx_hash: str
    block_number: int
    gas_used: int
    effective_fee_per_unit: int
    cost_in_asset: Decimal = Decimal(0)
    cost_in_fiat: Optional[Decimal] = None
    status: int = 1


@dataclass
class ScheduledJob:
    schedule_id: str
    owner_address: str
    recipient_address: str
    asset: Asset
    amount: Decimal
    frequency: Frequency
    scheduled_for: datetime
    next_execution: Optional[datetime] = None
    execution_count: int = 0
    max_executions: int = 1
    status: JobStatus = JobStatus.ACTIVE   # active | processing | completed | cancelled | failed
    processing_by: Optional[str] = None
    processing_started: Optional[datetime] = None
    last_error: Optional[str] = None
    failed_at: Optional[datetime] = None
    last_execution_at: Optional[datetime] = None
    last_tx_hash: Optional[str] = None
    description: Optional[str] = None
    estimated_fee: Optional[FeeQuote] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def due_at(self) -> datetime:
        return self.next_execution or self.scheduled_for

    def to_row(self) -> Dict[str, Any]:
        return {
            "schedule_id": self.schedule_id,
            "owner_address": self.owner_address,
            "recipient_address": self.recipient_address,
            "asset_symbol": self.asset.symbol,
            "asset_decimals": self.asset.decimals,
            "asset_is_native": 1 if self.asset.is_native else 0,
            "asset_contract": self.asset.contract_address,
            "amount": str(self.amount),
            "frequency": Frequency(self.frequency).value,
            "scheduled_for": to_iso(self.scheduled_for),
            "next_execution": to_iso(self.next_execution),
            "execution_count": self.execution_count,
            "max_executions": self.max_executions,
            "status": JobStatus(self.status).value,
            "processing_by": self.processing_by,
            "processing_started": to_iso(self.processing_started),
            "last_error": self.last_error,
            "failed_at": to_iso(self.failed_at),
            "last_execution_at": to_iso(self.last_execution_at),
            "last_tx_hash": self.last_tx_hash,
            "description": self.description,
            "estimated_fee": json.dumps(self.estimated_fee.to_dict()) if self.estimated_fee else None,
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
        }

    @classmethod
    def from_row(cls, row) -> "ScheduledJob":
        fee = row["estimated_fee"]
        return cls(
            schedule_id=row["schedule_id"],
            owner_address=row["owner_address"],
            recipient_address=row["recipient_address"],
            asset=Asset(
                symbol=row["asset_symbol"],
                decimals=int(row["asset_decimals"]),
                is_native=bool(row["asset_is_native"]),
                contract_address=row["asset_contract"],
            ),
            amount=Decimal(row["amount"]),
            frequency=Frequency(row["frequency"]),
            scheduled_for=from_iso(row["scheduled_for"]),
            next_execution=from_iso(row["next_execution"]),
            execution_count=int(row["execution_count"]),
            max_executions=int(row["max_executions"]),
            status=JobStatus(row["status"]),
            processing_by=row["processing_by"],
            processing_started=from_iso(row["processing_started"]),
            last_error=row["last_error"],
            failed_at=from_iso(row["failed_at"]),
            last_execution_at=from_iso(row["last_execution_at"]),
            last_tx_hash=row["last_tx_hash"],
            description=row["description"],
            estimated_fee=FeeQuote.from_dict(json.loads(fee)) if fee else None,
            created_at=from_iso(row["created_at"]),
            updated_at=from_iso(row["updated_at"]),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Public document layout, as served by the HTTP API."""
        return {
            "scheduleId": self.schedule_id,
            "ownerAddress": self.owner_address,
            "recipientAddress": self.recipient_address,
            "asset": self.asset.to_dict(),
            "amount": str(self.amount),
            "frequency": Frequency(self.frequency).value,
            "scheduledFor": to_iso(self.scheduled_for),
            "nextExecution": to_iso(self.next_execution),
            "executionCount": self.execution_count,
            "maxExecutions": self.max_executions,
            "status": JobStatus(self.status).value,
            "processingBy": self.processing_by,
            "processingStarted": to_iso(self.processing_started),
            "lastError": self.last_error,
            "failedAt": to_iso(self.failed_at),
            "lastExecutionAt": to_iso(self.last_execution_at),
            "lastTxHash": self.last_tx_hash,
            "description": self.description,
            "estimatedFee": self.estimated_fee.to_dict() if self.estimated_fee else None,
            "createdAt": to_iso(self.created_at),
            "updatedAt": to_iso(self.updated_at),
        }


@dataclass
class ExecutionRecord:
    schedule_id: str
    executor_id: str
    ok: bool
    executed_at: datetime = field(default_factory=utcnow)
    tx_hash: Optional[str] = None
    block_number: Optional[int] = None
    gas_used: Optional[int] = None
    effective_fee_per_unit: Optional[int] = None
    cost_in_asset: Optional[Decimal] = None
    cost_in_fiat: Optional[Decimal] = None
    error: Optional[str] = None
    id: Optional[int] = None

    @classmethod
    def from_receipt(cls, schedule_id: str, executor_id: str, receipt: Receipt,
                     executed_at: Optional[datetime] = None) -> "ExecutionRecord":
        return cls(
            schedule_id=schedule_id,
            executor_id=executor_id,
            ok=True,
            executed_at=executed_at or utcnow(),
            tx_hash=receipt.tx_hash,
            block_number=receipt.block_number,
            gas_used=receipt.gas_used,
            effective_fee_per_unit=receipt.effective_fee_per_unit,
            cost_in_asset=receipt.cost_in_asset,
            cost_in_fiat=receipt.cost_in_fiat,
        )
