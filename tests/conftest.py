"""
Shared pytest fixtures for the StakeFlow test suite.
"""

import os
import sys

import pytest

# run_stakeflow.py lives at the project root, outside any package
ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from stakeflow_core.clock import ManualClock  # noqa: E402
from stakeflow_core.config import EngineConfig  # noqa: E402
from stakeflow_core.precision import FP_SHIFT, SECONDS_PER_DAY  # noqa: E402
from stakeflow_core.accrual import reward_rate_from_apy  # noqa: E402
from stakeflow_core.staking import StakingEngine  # noqa: E402
from stakeflow_core.storage import MemoryStore  # noqa: E402
from stakeflow_core.token_ledger import TokenLedger  # noqa: E402

ASSET = "ABC"
ONE = 10 ** 9                 # 1 ABC in base units
DAYS_30 = 30 * SECONDS_PER_DAY
T0 = 1_700_000_000


def exact_reward(apy_bps: int, amount: int, seconds: int) -> int:
    """Whole base units earned by *amount* held for *seconds* at *apy_bps*."""
    return (amount * reward_rate_from_apy(apy_bps) * seconds) >> FP_SHIFT


@pytest.fixture
def clock():
    """Manual clock starting at T0."""
    return ManualClock(start=T0)


@pytest.fixture
def tokens():
    """Token ledger with the ABC asset and four funded holders."""
    ledger = TokenLedger()
    ledger.create_asset(ASSET, decimals=9, symbol="ABC")
    for holder in ("admin", "alice", "bob", "carol"):
        ledger.mint_to(ASSET, holder, 1_000 * ONE)
    return ledger


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def engine(store, tokens, clock):
    """Engine with time warp enabled so admin offset tests can run."""
    return StakingEngine(store, tokens, clock, EngineConfig(allow_time_warp=True))


@pytest.fixture
def pool_a(engine):
    """10% APY, no lockup, 100 ABC of reward funding."""
    pool = engine.initialize_pool("admin", ASSET, 1000, 0, variant="A")
    engine.fund_rewards("admin", pool.address, 100 * ONE)
    return pool.address


@pytest.fixture
def pool_b(engine):
    """20% APY, 30-day lockup, 100 ABC of reward funding."""
    pool = engine.initialize_pool("admin", ASSET, 2000, DAYS_30, variant="B")
    engine.fund_rewards("admin", pool.address, 100 * ONE)
    return pool.address
