import sys
from pathlib import Path

import pytest

ROOT_DIR = str(Path(__file__).resolve().parents[1])
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

from src.filmix_gateway.services.decoder import DecodeTable  # noqa: E402

TEST_KEYS = ("k1-alpha", "k2-beta", "k3-gamma")


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def table():
    return DecodeTable.from_keys(":<:", TEST_KEYS)
