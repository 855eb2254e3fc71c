"""
Pool invariant checks for StakeFlow.

  - Conservation: ``total_staked`` equals the sum of all positions.
  - Solvency: the vault holds exactly ``total_staked + reward_funds``.
  - Checkpoints: no position is anchored ahead of the pool accumulator.
  - Monotonicity: the accumulator and ``last_update_ts`` never move back
    between a ``capture`` and a ``verify``.

These walk every position in the pool, so they are meant for audits,
tests and the HTTP ``/audit`` endpoint, never for the operation path.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from stakeflow_core.state import Pool, UserStake


@dataclass
class PoolSnapshot:
    """Accumulator state of each pool at capture time."""
    acc_reward_per_token: dict[str, int] = field(default_factory=dict)
    last_update_ts: dict[str, int] = field(default_factory=dict)


def check_conservation(pool: Pool, stakes: list[UserStake]) -> tuple[bool, str]:
    total = sum(s.amount_staked for s in stakes)
    if total != pool.total_staked:
        return False, f"total_staked {pool.total_staked} != sum of positions {total}"
    return True, ""


def check_solvency(pool: Pool, vault_balance: int) -> tuple[bool, str]:
    expected = pool.total_staked + pool.reward_funds
    if vault_balance != expected:
        return False, f"vault holds {vault_balance}, expected {expected}"
    return True, ""


def check_checkpoints(pool: Pool, stakes: list[UserStake]) -> tuple[bool, str]:
    ahead = [s.owner for s in stakes
             if s.entry_acc_reward_per_token > pool.acc_reward_per_token]
    if ahead:
        return False, f"{len(ahead)} position(s) anchored ahead of the accumulator"
    return True, ""


class InvariantChecker:
    """
    Audits pools held by a ``StakingEngine``.

    ``capture`` records accumulator state; ``verify`` checks every
    invariant and, when a snapshot exists, monotonicity against it.
    """

    def __init__(self, engine):
        self.engine = engine
        self._snapshot: PoolSnapshot | None = None

    def capture(self, pool_addresses: list[str]) -> None:
        snap = PoolSnapshot()
        for address in pool_addresses:
            pool = self.engine.get_pool(address)
            snap.acc_reward_per_token[address] = pool.acc_reward_per_token
            snap.last_update_ts[address] = pool.last_update_ts
        self._snapshot = snap

    def verify(self, pool_address: str) -> tuple[bool, list[str]]:
        """Return ``(passed, errors)`` for one pool."""
        pool = self.engine.get_pool(pool_address)
        stakes = self.engine.list_user_stakes(pool_address)
        vault_balance = self.engine.tokens.balance(pool.asset_id, pool.vault_ref)

        errors: list[str] = []
        for ok, msg in (
            check_conservation(pool, stakes),
            check_solvency(pool, vault_balance),
            check_checkpoints(pool, stakes),
            self._check_monotonic(pool),
        ):
            if not ok:
                errors.append(msg)
        return not errors, errors

    def _check_monotonic(self, pool: Pool) -> tuple[bool, str]:
        if self._snapshot is None or pool.address not in self._snapshot.acc_reward_per_token:
            return True, ""
        before_acc = self._snapshot.acc_reward_per_token[pool.address]
        before_ts = self._snapshot.last_update_ts[pool.address]
        if pool.acc_reward_per_token < before_acc:
            return False, "acc_reward_per_token decreased"
        if pool.last_update_ts < before_ts:
            return False, "last_update_ts moved backwards"
        return True, ""
