import logging
import pathlib
import sys

import pytest

root_dir = pathlib.Path(__file__).resolve().parents[1]
if str(root_dir) not in sys.path:
    sys.path.append(str(root_dir))
sys.path.append(str(pathlib.Path(__file__).parent))

from tradesync.state import TradingState  # noqa: E402


@pytest.fixture
def logger():
    return logging.getLogger("tradesync.tests")


@pytest.fixture
def state(logger):
    return TradingState("BTC/USDT", logger, user_id="u1")
