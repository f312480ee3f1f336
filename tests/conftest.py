"""Shared fixtures: manual clock, in-memory backend, fake chain, agent key."""

from __future__ import annotations

import threading

import pytest
from eth_account import Account

from custodian.audit import AuditLog
from custodian.chain import Balance, GasEstimate, GasPrice, validate_address
from custodian.clock import ManualClock
from custodian.config import Settings
from custodian.memory import InMemoryBackend
from custodian.money import native_to_wei
from custodian.policy import DailyTracker, PolicyEngine, PolicyStore
from custodian.services import build_services

# 2024-06-15T12:00:00Z
START_EPOCH = 1_718_452_800
GWEI = 10**9


class FakeChain:
    """Deterministic chain collaborator for tests."""

    def __init__(self, gas_price_wei: int = 5 * GWEI, default_balance_bnb: str = "100"):
        self.gas_price_wei = gas_price_wei
        self.default_balance = native_to_wei(default_balance_bnb)
        self.balances: dict[str, int] = {}
        self.gas_limit = 21_000
        self.calls: list[str] = []
        self._lock = threading.Lock()

    def _record(self, name: str) -> None:
        with self._lock:
            self.calls.append(name)

    def get_gas_price(self) -> GasPrice:
        self._record("get_gas_price")
        return GasPrice(wei=self.gas_price_wei)

    def get_balance(self, address: str) -> Balance:
        self._record("get_balance")
        return Balance(address=address, balance_wei=self.balances.get(address.lower(), self.default_balance))

    def validate_address(self, address: str) -> bool:
        return validate_address(address)

    def estimate_gas(self, tx) -> GasEstimate:
        self._record("estimate_gas")
        return GasEstimate(gas_limit=self.gas_limit, gas_price_wei=self.gas_price_wei)


class FailingMemory(InMemoryBackend):
    """Memory backend whose writes always fail."""

    def store(self, collection, record):
        raise RuntimeError("memory service unavailable")

    def store_user_preference(self, user_id, key, value):
        raise RuntimeError("memory service unavailable")


class FlakyMemory(InMemoryBackend):
    """Memory backend that can be switched to fail every write, or writes to one collection."""

    def __init__(self):
        super().__init__()
        self.failing = False
        self.failing_collection = None

    def store(self, collection, record):
        if self.failing or collection == self.failing_collection:
            raise RuntimeError("memory service unavailable")
        return super().store(collection, record)


@pytest.fixture
def flaky():
    return FlakyMemory()


@pytest.fixture
def clock():
    return ManualClock(START_EPOCH)


@pytest.fixture
def memory():
    return InMemoryBackend()


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def agent():
    return Account.create()


@pytest.fixture
def audit(memory, clock):
    return AuditLog(memory, clock=clock)


@pytest.fixture
def tracker(clock):
    return DailyTracker(clock=clock)


@pytest.fixture
def engine(memory, tracker, audit):
    return PolicyEngine(PolicyStore(memory), tracker, audit=audit)


@pytest.fixture
def settings(tmp_path, agent):
    return Settings(home=tmp_path, agent_key=agent.key.hex())


@pytest.fixture
def services(settings, memory, chain, clock):
    return build_services(settings, memory=memory, chain=chain, clock=clock)


@pytest.fixture
def recipient():
    return Account.create().address
