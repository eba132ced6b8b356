"""Tests for building, signing and confirming transfers."""

from __future__ import annotations

from decimal import Decimal

import pytest

from conftest import ETH, OWNER, RECIPIENT, TOKEN, RecordingSigner
from errors import (
    BroadcastRejectedError,
    ConfirmationTimeoutError,
    ExecutionError,
    InsufficientFundsError,
    SimulationRevertError,
    TransactionRevertedError,
)
from models import Asset

USDC = Asset.token("USDC", TOKEN, 6)


@pytest.fixture
def signer(keys):
    return RecordingSigner(keys.signer_for(OWNER))


@pytest.fixture
def quote(estimator):
    return estimator.estimate(Asset.native(), OWNER, RECIPIENT, Decimal("1.5"))


class TestNativeTransfer:
    def test_confirmed_transfer(self, transfers, ledger, signer, quote):
        receipt = transfers.execute(Asset.native(), OWNER, RECIPIENT, Decimal("1.5"), signer, quote)

        assert len(ledger.broadcasts) == 1
        assert receipt.tx_hash.startswith("0x")
        assert receipt.gas_used == 21_000
        # 21000 gas at 32 gwei effective
        assert receipt.cost_in_asset == Decimal("0.000672")
        assert receipt.cost_in_fiat == Decimal("1.34")

        tx = signer.signed[0]
        assert tx["value"] == 1_500_000_000_000_000_000
        assert tx["gas"] == 21_000
        assert tx["maxFeePerGas"] == quote.fee_per_unit
        assert tx["maxPriorityFeePerGas"] == quote.priority_fee_per_unit
        assert tx["chainId"] == 1
        assert tx["nonce"] == 0

    def test_amount_plus_gas_must_be_covered(self, transfers, ledger, signer, quote):
        ledger.fund(OWNER, 15 * ETH // 10)  # exactly the amount, nothing left for gas
        with pytest.raises(InsufficientFundsError, match="Insufficient ETH balance"):
            transfers.execute(Asset.native(), OWNER, RECIPIENT, Decimal("1.5"), signer, quote)
        assert ledger.broadcasts == []

    def test_excess_precision_is_rejected(self, transfers, signer, quote):
        with pytest.raises(ExecutionError) as exc:
            transfers.execute(Asset.token("USDC", TOKEN, 6), OWNER, RECIPIENT, Decimal("1.0000001"), signer, quote)
        assert exc.value.error_code == "BAD_AMOUNT"


class TestTokenTransfer:
    def test_confirmed_token_transfer(self, transfers, ledger, signer, quote):
        ledger.fund(OWNER, 100_000_000, USDC)
        ledger.simulated_gas = 50_000
        ledger.gas_used = 48_000

        receipt = transfers.execute(USDC, OWNER, RECIPIENT, Decimal("25.5"), signer, quote)

        tx = signer.signed[0]
        assert tx["to"] == TOKEN
        assert tx["value"] == 0
        assert tx["data"].startswith("0xa9059cbb")
        assert tx["gas"] == 55_000
        assert receipt.gas_used == 48_000

    def test_token_balance_must_cover_amount(self, transfers, ledger, signer, quote):
        ledger.fund(OWNER, 1_000_000, USDC)
        with pytest.raises(InsufficientFundsError, match="Insufficient token balance"):
            transfers.execute(USDC, OWNER, RECIPIENT, Decimal("25"), signer, quote)

    def test_native_balance_must_cover_gas(self, transfers, ledger, signer, quote):
        ledger.fund(OWNER, 100_000_000, USDC)
        ledger.fund(OWNER, 0)
        with pytest.raises(InsufficientFundsError, match="for gas"):
            transfers.execute(USDC, OWNER, RECIPIENT, Decimal("25"), signer, quote)

    def test_simulation_revert_blocks_broadcast(self, transfers, ledger, signer, quote):
        ledger.fund(OWNER, 100_000_000, USDC)
        ledger.simulate_error = SimulationRevertError("Simulation reverted: paused")
        with pytest.raises(SimulationRevertError):
            transfers.execute(USDC, OWNER, RECIPIENT, Decimal("25"), signer, quote)
        assert ledger.broadcasts == []

    def test_simulation_rpc_error_blocks_broadcast(self, transfers, ledger, signer, quote):
        ledger.fund(OWNER, 100_000_000, USDC)
        ledger.simulate_error = ValueError("node unavailable")
        with pytest.raises(SimulationRevertError):
            transfers.execute(USDC, OWNER, RECIPIENT, Decimal("25"), signer, quote)


class TestLedgerFailures:
    """Ledger errors surface unchanged and are never retried."""

    def test_broadcast_rejected(self, transfers, ledger, signer, quote):
        ledger.broadcast_error = BroadcastRejectedError("Broadcast rejected: nonce too low")
        with pytest.raises(BroadcastRejectedError):
            transfers.execute(Asset.native(), OWNER, RECIPIENT, Decimal("1"), signer, quote)
        assert len(signer.signed) == 1

    def test_confirmation_timeout(self, transfers, ledger, signer, quote):
        ledger.confirm_error = ConfirmationTimeoutError("not confirmed", tx_hash="0xabc")
        with pytest.raises(ConfirmationTimeoutError):
            transfers.execute(Asset.native(), OWNER, RECIPIENT, Decimal("1"), signer, quote)
        assert len(ledger.broadcasts) == 1

    def test_reverted_on_chain(self, transfers, ledger, signer, quote):
        ledger.confirm_error = TransactionRevertedError("reverted", tx_hash="0xabc")
        with pytest.raises(TransactionRevertedError):
            transfers.execute(Asset.native(), OWNER, RECIPIENT, Decimal("1"), signer, quote)
