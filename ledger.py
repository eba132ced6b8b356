# ledger.py
"""
Ledger RPC access for EVM-compatible chains, via web3.py.

Everything chain-facing the scheduler needs lives here: fee market reads,
call simulation, balances, broadcast and receipt waits. Signing happens
elsewhere (keys.py) so private keys never reach this module.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests
from eth_abi import decode as abi_decode
from eth_abi import encode as abi_encode
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted, TransactionNotFound, Web3Exception

from errors import (
    BroadcastRejectedError,
    ConfirmationTimeoutError,
    SimulationRevertError,
    TransactionRevertedError,
)
from models import WEI_PER_GWEI, Asset, Receipt

logger = logging.getLogger(__name__)

NATIVE_TRANSFER_GAS = 21_000
TRANSFER_SELECTOR = Web3.keccak(text="transfer(address,uint256)")[:4]
BALANCE_OF_SELECTOR = Web3.keccak(text="balanceOf(address)")[:4]


@dataclass
class FeeMarket:
    base_fee: int       # wei per gas, from the latest block
    priority_fee: int   # wei per gas


def encode_transfer(recipient: str, units: int) -> str:
    """ERC-20 transfer(address,uint256) call data."""
    payload = TRANSFER_SELECTOR + abi_encode(["address", "uint256"], [Web3.to_checksum_address(recipient), int(units)])
    return Web3.to_hex(payload)


def transfer_call(asset: Asset, sender: str, recipient: str, units: int) -> Dict[str, Any]:
    """Unsigned call dict for a native or token transfer of `units` base units."""
    sender = Web3.to_checksum_address(sender)
    if asset.is_native:
        return {"from": sender, "to": Web3.to_checksum_address(recipient), "value": int(units)}
    return {
        "from": sender,
        "to": Web3.to_checksum_address(asset.contract_address),
        "value": 0,
        "data": encode_transfer(recipient, units),
    }


def _is_revert(exc: BaseException) -> bool:
    if isinstance(exc, ContractLogicError):
        return True
    return "revert" in str(exc).lower()


class Web3Ledger:
    def __init__(self, rpc_url: str = "", chain_id: Optional[int] = None, request_timeout: float = 30.0,
                 default_priority_fee: int = 2 * WEI_PER_GWEI, w3: Optional[Web3] = None):
        if w3 is None:
            if not rpc_url:
                raise ValueError("rpc_url is required (set SCHEDCTL_RPC_URL)")
            w3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": request_timeout}))
        self.w3 = w3
        self._chain_id = chain_id
        self.default_priority_fee = int(default_priority_fee)

    @classmethod
    def from_config(cls, cfg) -> "Web3Ledger":
        return cls(
            rpc_url=cfg.rpc_url,
            chain_id=cfg.chain_id,
            default_priority_fee=int(cfg.priority_fee_gwei * WEI_PER_GWEI),
        )

    @property
    def chain_id(self) -> int:
        if self._chain_id is None:
            self._chain_id = int(self.w3.eth.chain_id)
        return self._chain_id

    # ---------------- Reads ----------------
    def get_fee_market(self) -> FeeMarket:
        block = self.w3.eth.get_block("latest")
        base_fee = block.get("baseFeePerGas")
        if base_fee is None:
            # Pre-1559 chain: the legacy gas price is the whole fee
            base_fee = int(self.w3.eth.gas_price)
        try:
            priority_fee = int(self.w3.eth.max_priority_fee)
        except (ValueError, Web3Exception, requests.RequestException) as e:
            logger.debug("max_priority_fee unavailable, using default: %s", e)
            priority_fee = self.default_priority_fee
        return FeeMarket(base_fee=int(base_fee), priority_fee=priority_fee)

    def simulate(self, call: Dict[str, Any]) -> int:
        """Gas units the call would use against current state."""
        try:
            return int(self.w3.eth.estimate_gas(call))
        except (ContractLogicError, ValueError, Web3Exception) as e:
            if _is_revert(e):
                raise SimulationRevertError(f"Simulation reverted: {e}") from e
            raise

    def get_balance(self, address: str, asset: Optional[Asset] = None) -> int:
        address = Web3.to_checksum_address(address)
        if asset is None or asset.is_native:
            return int(self.w3.eth.get_balance(address))
        data = BALANCE_OF_SELECTOR + abi_encode(["address"], [address])
        raw = self.w3.eth.call({"to": Web3.to_checksum_address(asset.contract_address), "data": Web3.to_hex(data)})
        (balance,) = abi_decode(["uint256"], bytes(raw))
        return int(balance)

    def get_nonce(self, address: str) -> int:
        return int(self.w3.eth.get_transaction_count(Web3.to_checksum_address(address), "pending"))

    def get_base_fee(self, block_number: int) -> Optional[int]:
        block = self.w3.eth.get_block(block_number)
        fee = block.get("baseFeePerGas")
        return int(fee) if fee is not None else None

    # ---------------- Writes ----------------
    def broadcast(self, raw_tx: bytes) -> str:
        try:
            tx_hash = self.w3.eth.send_raw_transaction(raw_tx)
        except (ValueError, Web3Exception, requests.RequestException) as e:
            raise BroadcastRejectedError(f"Broadcast rejected: {e}") from e
        return Web3.to_hex(tx_hash)

    def wait_confirmation(self, tx_hash: str, timeout: float) -> Receipt:
        try:
            receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout)
        except (TimeExhausted, TransactionNotFound) as e:
            raise ConfirmationTimeoutError(
                f"Transaction {tx_hash} not confirmed within {timeout:.0f}s", tx_hash=tx_hash
            ) from e

        if int(receipt.get("status", 1)) != 1:
            raise TransactionRevertedError(f"Transaction {tx_hash} reverted on chain", tx_hash=tx_hash)

        block_number = int(receipt["blockNumber"])
        effective = receipt.get("effectiveGasPrice")
        if effective is None:
            effective = self.get_base_fee(block_number) or 0
        return Receipt(
            tx_hash=Web3.to_hex(receipt["transactionHash"]),
            block_number=block_number,
            gas_used=int(receipt["gasUsed"]),
            effective_fee_per_unit=int(effective),
        )
