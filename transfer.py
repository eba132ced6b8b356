# transfer.py
import logging
from decimal import Decimal

from errors import ExecutionError, InsufficientFundsError, SimulationRevertError
from fees import TOKEN_GAS_BUFFER, fiat_value
from ledger import NATIVE_TRANSFER_GAS, transfer_call
from models import Asset, FeeQuote, Receipt, from_base_units, to_base_units

logger = logging.getLogger(__name__)


class TransferExecutor:
    """
    Builds, signs, broadcasts and confirms one transfer.

    Every failure surfaces as an ExecutionError subclass. Nothing is retried
    here; a second broadcast of the same payment is the caller's decision.
    """

    def __init__(self, ledger, oracle=None, confirmation_timeout: float = 180.0):
        self.ledger = ledger
        self.oracle = oracle
        self.confirmation_timeout = float(confirmation_timeout)

    @classmethod
    def from_config(cls, cfg, ledger, oracle=None) -> "TransferExecutor":
        return cls(ledger, oracle, confirmation_timeout=cfg.confirmation_timeout)

    def execute(self, asset: Asset, sender: str, recipient: str, amount, signer, fee_quote: FeeQuote) -> Receipt:
        try:
            units = to_base_units(Decimal(amount), asset.decimals)
        except (ValueError, ArithmeticError) as e:
            raise ExecutionError(f"Invalid amount {amount} for {asset.symbol}: {e}", error_code="BAD_AMOUNT") from e

        call = transfer_call(asset, sender, recipient, units)
        gas_limit = self._gas_limit(asset, call)
        self._check_balances(asset, sender, units, gas_limit * fee_quote.fee_per_unit)

        tx = dict(call)
        tx.update({
            "gas": gas_limit,
            "maxFeePerGas": int(fee_quote.fee_per_unit),
            "maxPriorityFeePerGas": int(fee_quote.priority_fee_per_unit),
            "nonce": self.ledger.get_nonce(sender),
            "chainId": self.ledger.chain_id,
        })

        try:
            signed = signer.sign_transaction(tx)
        except (TypeError, ValueError) as e:
            raise ExecutionError(f"Could not sign transfer: {e}", error_code="SIGNING") from e

        logger.info("Broadcasting %s %s transfer to %s (gas=%d)", amount, asset.symbol, recipient, gas_limit)
        tx_hash = self.ledger.broadcast(signed.raw_transaction)
        logger.info("Broadcast %s, waiting up to %.0fs for confirmation", tx_hash, self.confirmation_timeout)
        receipt = self.ledger.wait_confirmation(tx_hash, self.confirmation_timeout)

        return self._with_actual_cost(receipt)

    def _gas_limit(self, asset: Asset, call) -> int:
        if asset.is_native:
            return NATIVE_TRANSFER_GAS
        try:
            simulated = self.ledger.simulate(call)
        except SimulationRevertError:
            raise
        except Exception as e:  # any simulation failure blocks the transfer
            raise SimulationRevertError(f"Token transfer simulation failed: {e}") from e
        return int(Decimal(simulated) * TOKEN_GAS_BUFFER)

    def _check_balances(self, asset: Asset, sender: str, units: int, max_gas_cost: int) -> None:
        native_balance = self.ledger.get_balance(sender)
        if asset.is_native:
            required = units + max_gas_cost
            if native_balance < required:
                raise InsufficientFundsError(
                    f"Insufficient {asset.symbol} balance. Required: {from_base_units(required)}, "
                    f"Available: {from_base_units(native_balance)}"
                )
            return

        token_balance = self.ledger.get_balance(sender, asset)
        if token_balance < units:
            raise InsufficientFundsError(
                f"Insufficient token balance. Required: {from_base_units(units, asset.decimals)}, "
                f"Available: {from_base_units(token_balance, asset.decimals)} {asset.symbol}"
            )
        if native_balance < max_gas_cost:
            raise InsufficientFundsError(
                f"Insufficient native balance for gas. Required: {from_base_units(max_gas_cost)}, "
                f"Available: {from_base_units(native_balance)}"
            )

    def _with_actual_cost(self, receipt: Receipt) -> Receipt:
        cost = from_base_units(receipt.gas_used * receipt.effective_fee_per_unit)
        receipt.cost_in_asset = cost
        receipt.cost_in_fiat = fiat_value(self.oracle, cost)
        return receipt
