# keys.py
"""
Signing key sources.

A key source hands out a signer for an owner address at execution time.
Signers are used for one transfer and dropped; nothing here caches,
logs or persists key material.
"""
import os
from typing import Dict, Optional

from eth_account import Account
from eth_account.signers.local import LocalAccount
from web3 import Web3

from errors import SigningKeyUnavailableError


class KeySource:
    def signer_for(self, address: str) -> LocalAccount:
        raise NotImplementedError


def _signer(private_key: str, address: str) -> LocalAccount:
    account = Account.from_key(private_key)
    if account.address.lower() != address.lower():
        raise SigningKeyUnavailableError(address)
    return account


class EnvKeySource(KeySource):
    """Reads `<prefix><ADDRESS>` from the environment, e.g. SCHEDCTL_KEY_0XABC...."""

    def __init__(self, prefix: str = "SCHEDCTL_KEY_", environ: Optional[Dict[str, str]] = None):
        self.prefix = prefix
        self.environ = environ if environ is not None else os.environ

    def signer_for(self, address: str) -> LocalAccount:
        raw = self.environ.get(f"{self.prefix}{address.upper()}") or self.environ.get(f"{self.prefix}{address}")
        if not raw:
            raise SigningKeyUnavailableError(address)
        return _signer(raw.strip(), address)


class StaticKeySource(KeySource):
    """In-process key map. Meant for tests and local tooling."""

    def __init__(self, keys: Optional[Dict[str, str]] = None):
        self._keys = {Web3.to_checksum_address(a): k for a, k in (keys or {}).items()}

    def add(self, private_key: str) -> str:
        account = Account.from_key(private_key)
        self._keys[account.address] = private_key
        return account.address

    def signer_for(self, address: str) -> LocalAccount:
        key = self._keys.get(Web3.to_checksum_address(address))
        if not key:
            raise SigningKeyUnavailableError(address)
        return _signer(key, address)
