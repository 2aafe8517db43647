import threading
import time
from datetime import datetime, timedelta

import pytest

from voting_power_tracker.config import Config
from voting_power_tracker.engine import VotingPowerEngine
from voting_power_tracker.exceptions import UpstreamReadError
from voting_power_tracker.models import BalanceReading


def make_address(n: int) -> str:
    return "0x" + f"{n:040x}"


class FakeReader:
    """In-memory balance reader with switchable failures and latency.

    Reads for an address in gates block until its event is set.
    """

    def __init__(self):
        self.balances = {}
        self.fail = False
        self.delay = 0.0
        self.calls = 0
        self.gates = {}
        self._lock = threading.Lock()

    def set(self, address, power, delegated=0, received=0):
        self.balances[address.lower()] = BalanceReading(
            power=power, delegated_power=delegated, received_delegations=received)

    def read_balance(self, address):
        with self._lock:
            self.calls += 1
        gate = self.gates.get(address.lower())
        if gate is not None:
            gate.wait(5)
        if self.delay:
            time.sleep(self.delay)
        if self.fail:
            raise UpstreamReadError(f"node unavailable for {address}")
        return self.balances.get(address.lower())


class FakeBlocks:
    def __init__(self, start=1000):
        self.block = start

    def current_block(self):
        self.block += 1
        return self.block


class FakeClock:
    """Deterministic clock that only moves when told to."""

    def __init__(self, start=datetime(2024, 1, 1, 12, 0, 0)):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def reader():
    return FakeReader()


@pytest.fixture
def blocks():
    return FakeBlocks()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    return Config(token_decimals=0, read_timeout=1.0, history_cap=50,
                  snapshot_retention=5, segment_breakpoints=[100, 1000, 10000, 100000])


@pytest.fixture
def engine(reader, blocks, clock, config):
    eng = VotingPowerEngine(reader=reader, blocks=blocks, config=config, clock=clock)
    yield eng
    eng.shutdown()
