import pytest

from pagechat.storage import MemoryKeyValueStore
from pagechat.timers import Scheduler


class FakeClock:
    """Millisecond clock for stores, plus a seconds view for the scheduler."""

    def __init__(self, start_ms: int = 1_700_000_000_000):
        self.ms = start_ms

    def __call__(self) -> int:
        return self.ms

    def seconds(self) -> float:
        return self.ms / 1000

    def advance(self, ms: int) -> None:
        self.ms += ms


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def kv():
    return MemoryKeyValueStore()


@pytest.fixture
def scheduler(clock):
    return Scheduler(clock=clock.seconds)
