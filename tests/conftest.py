import os
import sys

import pytest

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from core.config import Settings  # noqa: E402
from core.events import MessageBus  # noqa: E402
from fakes import Recorder  # noqa: E402


@pytest.fixture
def bus():
    return MessageBus(name="test")


@pytest.fixture
def recorder(bus):
    return Recorder(bus)


@pytest.fixture
def test_settings():
    """Defaults with a fixed account and a small retry budget."""
    return Settings(
        account_balance=10_000.0,
        max_reconnect_attempts=3,
        reconnect_base_delay=1.0,
        reconnect_max_delay=30.0,
    )
