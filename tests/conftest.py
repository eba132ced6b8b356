"""Shared fixtures: temporary store, scripted ledger, fake oracle, test keys."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from web3 import Web3

from fees import FeeEstimator
from keys import StaticKeySource
from ledger import FeeMarket
from models import WEI_PER_GWEI, Asset, Frequency, JobStatus, Receipt, ScheduledJob
from storage import Storage
from transfer import TransferExecutor
from worker import Executor

# Well-known development key; never holds real funds.
TEST_PRIVATE_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
OWNER = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"
RECIPIENT = Web3.to_checksum_address("0x" + "a" * 40)
TOKEN = Web3.to_checksum_address("0x" + "7" * 40)
T0 = datetime(2030, 1, 31, 9, 0, tzinfo=timezone.utc)
ETH = 10 ** 18


class FakeLedger:
    """Scripted stand-in for Web3Ledger. Set *_error attributes to inject failures."""

    def __init__(self, base_fee=30 * WEI_PER_GWEI, priority_fee=2 * WEI_PER_GWEI, chain_id=1):
        self.base_fee = base_fee
        self.priority_fee = priority_fee
        self.chain_id = chain_id
        self.simulated_gas = 50_000
        self.gas_used = None
        self.block_number = 100
        self.balances = {}
        self.fee_market_error = None
        self.simulate_error = None
        self.broadcast_error = None
        self.confirm_error = None
        self.nonce_error = None
        self.simulated_calls = []
        self.broadcasts = []

    def fund(self, address, units, asset=None):
        self.balances[self._key(address, asset)] = units

    @staticmethod
    def _key(address, asset):
        return address.lower(), "native" if asset is None or asset.is_native else asset.asset_id

    def get_fee_market(self):
        if self.fee_market_error:
            raise self.fee_market_error
        return FeeMarket(base_fee=self.base_fee, priority_fee=self.priority_fee)

    def simulate(self, call):
        self.simulated_calls.append(call)
        if self.simulate_error:
            raise self.simulate_error
        return self.simulated_gas

    def get_balance(self, address, asset=None):
        return self.balances.get(self._key(address, asset), 0)

    def get_nonce(self, address):
        if self.nonce_error:
            raise self.nonce_error
        return len(self.broadcasts)

    def broadcast(self, raw_tx):
        if self.broadcast_error:
            raise self.broadcast_error
        self.broadcasts.append(raw_tx)
        return Web3.to_hex(Web3.keccak(raw_tx))

    def wait_confirmation(self, tx_hash, timeout):
        if self.confirm_error:
            raise self.confirm_error
        self.block_number += 1
        return Receipt(
            tx_hash=tx_hash,
            block_number=self.block_number,
            gas_used=self.gas_used or 21_000,
            effective_fee_per_unit=self.base_fee + self.priority_fee,
        )


class FakeOracle:
    def __init__(self, price=Decimal("2000"), error=None):
        self.price = price
        self.error = error
        self.calls = 0

    def spot_price(self, asset=None):
        self.calls += 1
        if self.error:
            raise self.error
        return self.price


class Clock:
    def __init__(self, now=T0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class RecordingSigner:
    """Wraps a LocalAccount and keeps every transaction dict it signs."""

    def __init__(self, account):
        self.account = account
        self.address = account.address
        self.signed = []

    def sign_transaction(self, tx):
        self.signed.append(dict(tx))
        return self.account.sign_transaction(tx)


@pytest.fixture
def store(tmp_path):
    db = Storage(str(tmp_path / "schedules.db"))
    yield db
    db.close()


@pytest.fixture
def ledger():
    fake = FakeLedger()
    fake.fund(OWNER, 10 * ETH)
    return fake


@pytest.fixture
def oracle():
    return FakeOracle()


@pytest.fixture
def keys():
    source = StaticKeySource()
    source.add(TEST_PRIVATE_KEY)
    return source


@pytest.fixture
def estimator(ledger, oracle):
    return FeeEstimator(ledger, oracle)


@pytest.fixture
def transfers(ledger, oracle):
    return TransferExecutor(ledger, oracle, confirmation_timeout=5)


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def make_executor(store, estimator, transfers, keys, clock):
    def _make(executor_id="executor-test", db=None, **kwargs):
        kwargs.setdefault("reconcile_backoff", 0)
        kwargs.setdefault("poll_interval", 0.01)
        return Executor(db or store, estimator, transfers, keys, executor_id=executor_id, clock=clock, **kwargs)
    return _make


@pytest.fixture
def make_job(store):
    counter = {"n": 0}

    def _make(**overrides):
        counter["n"] += 1
        scheduled_for = overrides.pop("scheduled_for", T0)
        frequency = Frequency(overrides.pop("frequency", Frequency.ONCE))
        fields = dict(
            schedule_id=f"sched_test_{counter['n']}",
            owner_address=OWNER,
            recipient_address=RECIPIENT,
            asset=Asset.native(),
            amount=Decimal("1.5"),
            frequency=frequency,
            scheduled_for=scheduled_for,
            next_execution=scheduled_for,
            max_executions=1 if frequency == Frequency.ONCE else 999,
            status=JobStatus.ACTIVE,
            created_at=T0 - timedelta(days=1) + timedelta(seconds=counter["n"]),
            updated_at=T0 - timedelta(days=1),
        )
        fields.update(overrides)
        job = ScheduledJob(**fields)
        store.insert(job)
        return job
    return _make
