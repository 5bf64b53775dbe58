# tests/conftest.py
import pytest

from config import RegistryConfig
from registry import ServerRegistry

T0 = 1_700_000_000.0


class FakeClock:
    """Manually advanced replacement for time.time"""

    def __init__(self, start: float = T0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def registry(clock) -> ServerRegistry:
    config = RegistryConfig(stale_timeout=60, official_servers=("10.0.0.1:9000",))
    return ServerRegistry(config, clock=clock)
