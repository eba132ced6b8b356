# fees.py
import logging
from decimal import Decimal
from typing import Optional

from errors import ExecutionError
from ledger import NATIVE_TRANSFER_GAS, transfer_call
from models import WEI_PER_GWEI, Asset, Congestion, FeeQuote, from_base_units, to_base_units

logger = logging.getLogger(__name__)

# Used when a token transfer cannot be simulated. Token calls cost more than
# a plain value transfer, so this sits well above NATIVE_TRANSFER_GAS.
TOKEN_TRANSFER_FALLBACK_GAS = 80_000
# Multiplier on simulated token gas, covering state drift before broadcast.
TOKEN_GAS_BUFFER = Decimal("1.1")

# Static quote used when the fee market cannot be read at all.
FALLBACK_MAX_FEE = 50 * WEI_PER_GWEI
FALLBACK_PRIORITY_FEE = 5 * WEI_PER_GWEI
FALLBACK_BASE_FEE = 45 * WEI_PER_GWEI


def congestion_level(base_fee: int, priority_fee: int) -> Congestion:
    base_gwei = base_fee / WEI_PER_GWEI
    priority_gwei = priority_fee / WEI_PER_GWEI
    if base_gwei > 100 or priority_gwei > 20:
        return Congestion.HIGH
    if base_gwei > 50 or priority_gwei > 10:
        return Congestion.MEDIUM
    return Congestion.LOW


def fiat_value(oracle, native_amount: Decimal) -> Optional[Decimal]:
    """Native amount in fiat, or None when no price is available."""
    if oracle is None:
        return None
    try:
        price = oracle.spot_price(None)
    except Exception as e:  # oracle failures only cost us the fiat figure
        logger.warning("Spot price lookup failed: %s", e)
        return None
    if price is None:
        return None
    return (native_amount * price).quantize(Decimal("0.01"))


class FeeEstimator:
    """
    Best-effort fee quotes for a transfer.

    `estimate` never raises: an unreachable RPC yields the static fallback
    quote, a failed token simulation yields the fallback gas figure, and a
    missing spot price leaves `cost_in_fiat` as None.
    """

    def __init__(self, ledger, oracle=None, headroom_pct: int = 25):
        self.ledger = ledger
        self.oracle = oracle
        self.headroom_pct = int(headroom_pct)

    @classmethod
    def from_config(cls, cfg, ledger, oracle=None) -> "FeeEstimator":
        return cls(ledger, oracle, headroom_pct=cfg.fee_headroom_pct)

    def max_fee(self, base_fee: int, priority_fee: int) -> int:
        return base_fee + priority_fee + base_fee * self.headroom_pct // 100

    def estimate(self, asset: Asset, sender: str, recipient: str, amount) -> FeeQuote:
        try:
            market = self.ledger.get_fee_market()
        except Exception as e:  # any RPC failure degrades to the static quote
            logger.warning("Fee market unavailable, using fallback quote: %s", e)
            return self.fallback_quote(asset)

        congestion = congestion_level(market.base_fee, market.priority_fee)
        fee_per_unit = self.max_fee(market.base_fee, market.priority_fee)
        gas_units = NATIVE_TRANSFER_GAS

        if not asset.is_native:
            try:
                units = to_base_units(Decimal(amount), asset.decimals)
                simulated = self.ledger.simulate(transfer_call(asset, sender, recipient, units))
                gas_units = int(Decimal(simulated) * TOKEN_GAS_BUFFER)
            except Exception as e:  # reverts and RPC errors both fall back
                level = logging.INFO if isinstance(e, ExecutionError) else logging.WARNING
                logger.log(level, "Token transfer simulation failed for %s, using fallback gas: %s", asset.symbol, e)
                gas_units, congestion = TOKEN_TRANSFER_FALLBACK_GAS, Congestion.UNKNOWN

        return self._quote(
            fee_per_unit=fee_per_unit,
            priority_fee=market.priority_fee,
            base_fee=market.base_fee,
            gas_units=gas_units,
            congestion=congestion,
            degraded=False,
        )

    def fallback_quote(self, asset: Asset) -> FeeQuote:
        gas_units = NATIVE_TRANSFER_GAS if asset.is_native else TOKEN_TRANSFER_FALLBACK_GAS
        return self._quote(
            fee_per_unit=FALLBACK_MAX_FEE,
            priority_fee=FALLBACK_PRIORITY_FEE,
            base_fee=FALLBACK_BASE_FEE,
            gas_units=gas_units,
            congestion=Congestion.UNKNOWN,
            degraded=True,
        )

    def _quote(self, fee_per_unit, priority_fee, base_fee, gas_units, congestion, degraded) -> FeeQuote:
        cost = from_base_units(gas_units * fee_per_unit)
        return FeeQuote(
            fee_per_unit=int(fee_per_unit),
            priority_fee_per_unit=int(priority_fee),
            base_fee_per_unit=int(base_fee),
            gas_units=int(gas_units),
            cost_in_asset=cost,
            cost_in_fiat=fiat_value(self.oracle, cost),
            congestion_level=Congestion(congestion).value,
            degraded=degraded,
        )
