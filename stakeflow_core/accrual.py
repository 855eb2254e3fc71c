"""
Reward accrual for StakeFlow pools.

Reward-per-token accumulator
────────────────────────────
Each pool keeps a running total of reward earned by one base unit staked
since the pool was created:

    acc_reward_per_token += reward_rate × elapsed        (total_staked > 0)

Each position remembers the accumulator value at its last settlement.
Settling converts the gap into owed reward and re-anchors the checkpoint:

    rewards_owed += amount_staked × (acc_reward_per_token − entry_acc)
    entry_acc     = acc_reward_per_token

Because every checkpoint advances to the same global value, a position
earns exactly ``reward_rate × amount × seconds_held`` no matter how many
other participants entered or left in between.  No per-user iteration
is ever required.

All quantities are Q64.64 (see ``precision``).  The functions here mutate
only the records handed to them and never touch a store.
"""

from __future__ import annotations

import copy

from stakeflow_core.errors import ClockRegression
from stakeflow_core.precision import (
    BPS_DENOMINATOR,
    FP_ONE,
    SECONDS_PER_YEAR,
    U128_MAX,
    checked_add,
    checked_mul,
    checked_sub,
)
from stakeflow_core.state import Pool, UserStake


def reward_rate_from_apy(apy_bps: int, seconds_per_year: int = SECONDS_PER_YEAR) -> int:
    """
    Per-second reward per base unit staked, in Q64.64.

    Linear (simple) interest: ``apy_bps / 10_000 / seconds_per_year``,
    floored to the nearest fixed-point unit.
    """
    return apy_bps * FP_ONE // BPS_DENOMINATOR // seconds_per_year


def refresh(pool: Pool, now: int) -> None:
    """
    Bring ``pool.acc_reward_per_token`` up to date as of *now*.

    Time with nothing staked earns nobody anything, but still moves
    ``last_update_ts`` forward.  Calling twice with the same *now* changes
    nothing the second time.
    """
    if now < pool.last_update_ts:
        raise ClockRegression(now, pool.last_update_ts)
    elapsed = now - pool.last_update_ts
    if elapsed == 0:
        return
    if pool.total_staked > 0:
        increment = checked_mul(pool.reward_rate, elapsed)
        pool.acc_reward_per_token = checked_add(pool.acc_reward_per_token, increment)
    pool.last_update_ts = now


def settle(user_stake: UserStake, pool: Pool) -> int:
    """
    Move the user's accumulator exposure into ``rewards_owed``.

    Must follow ``refresh`` on the same pool.  Returns the Q64.64 amount
    added.
    """
    delta = checked_sub(pool.acc_reward_per_token, user_stake.entry_acc_reward_per_token)
    pending = checked_mul(user_stake.amount_staked, delta)
    user_stake.rewards_owed = checked_add(user_stake.rewards_owed, pending, U128_MAX)
    user_stake.entry_acc_reward_per_token = pool.acc_reward_per_token
    return pending


def preview_settlement(pool: Pool, user_stake: UserStake, now: int) -> int:
    """Q64.64 reward owed to *user_stake* as of *now*, without mutating anything."""
    pool_view = copy.copy(pool)
    stake_view = copy.copy(user_stake)
    refresh(pool_view, now)
    settle(stake_view, pool_view)
    return stake_view.rewards_owed
