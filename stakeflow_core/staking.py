"""
Multi-pool staking engine for StakeFlow.

Each pool pays simple (linear) interest at a fixed APY to whatever is
staked in it, optionally with a minimum holding period (lockup).
Rewards are tracked with a reward-per-token accumulator (see
``accrual``), so every operation is O(1) regardless of how many
participants a pool has.

Every state-changing handler follows the same order:

  1. read fresh copies of the pool and the caller's position
  2. ``refresh`` the pool accumulator to *now*
  3. ``settle`` the caller's pending reward
  4. validate and apply the operation-specific change
  5. move tokens, then commit both records in one versioned batch

If the commit is rejected the token move is reversed, so a failed call
leaves records and balances exactly as they were.

Entry points:
  ``initialize_pool()``  — admin creates a pool (rate + lockup)
  ``fund_rewards()``     — admin deposits reward funding into the vault
  ``stake()``            — deposit principal
  ``unstake()``          — withdraw principal after the lockup
  ``claim()``            — withdraw settled rewards
  ``set_time_offset()``  — admin clock warp, only when enabled in config
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any, Optional

from stakeflow_core.accrual import preview_settlement, refresh, reward_rate_from_apy, settle
from stakeflow_core.clock import SystemClock
from stakeflow_core.config import EngineConfig
from stakeflow_core.errors import (
    ClockRegression,
    InsufficientBalance,
    InsufficientRewardFunds,
    InvalidParameter,
    LockupActive,
    RecordNotFound,
    Unauthorized,
    ZeroAmount,
)
from stakeflow_core.precision import (
    BPS_DENOMINATOR,
    U64_MAX,
    checked_add,
    checked_sub,
    fp_to_units,
    split_units,
)
from stakeflow_core.state import (
    Pool,
    UserStake,
    derive_pool_address,
    derive_user_stake_address,
    derive_vault_address,
)

logger = logging.getLogger("stakeflow_engine")


@dataclass
class OperationReceipt:
    """Outcome of a successful state-changing call."""
    op: str
    pool: str
    owner: str
    amount: int = 0
    rewards_paid: int = 0
    timestamp: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _require_int(value: Any, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidParameter(f"{name} must be an integer")
    return value


def _check_amount(amount: Any) -> int:
    amount = _require_int(amount, "amount")
    if amount == 0:
        raise ZeroAmount("Zero amount not allowed")
    if amount < 0 or amount > U64_MAX:
        raise InvalidParameter(f"amount {amount} is outside the u64 range")
    return amount


class StakingEngine:
    """
    Operation handlers over an account store and a token ledger.

    The engine holds no state of its own and takes no locks; callers that
    share a store across threads rely on its per-key versioning.
    """

    def __init__(
        self,
        store,
        tokens,
        clock=None,
        config: Optional[EngineConfig] = None,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.clock = clock or SystemClock()
        self.config = config or EngineConfig()

    # ── pool administration ─────────────────────────────────────────

    def initialize_pool(
        self,
        admin: str,
        asset_id: str,
        apy_bps: int,
        lockup_seconds: int,
        now: Optional[int] = None,
        variant: str = "default",
    ) -> Pool:
        """Create a pool; nothing is staked so no accrual happens yet."""
        apy_bps = _require_int(apy_bps, "apy_bps")
        lockup_seconds = _require_int(lockup_seconds, "lockup_seconds")
        if not 0 <= apy_bps <= self.config.max_apy_bps:
            raise InvalidParameter(
                f"apy_bps must be within [0, {self.config.max_apy_bps}]"
            )
        if not 0 <= lockup_seconds <= self.config.max_lockup_seconds:
            raise InvalidParameter(
                f"lockup_seconds must be within [0, {self.config.max_lockup_seconds}]"
            )
        if not self.tokens.has_asset(asset_id):
            raise InvalidParameter(f"Unknown asset {asset_id}")

        address = derive_pool_address(asset_id, admin, variant)
        if self.store.read(address) is not None:
            raise InvalidParameter(f"Pool {address[:16]} already initialized")

        if now is None:
            now = self.clock.now()
        now = _require_int(now, "now")

        vault = derive_vault_address(address)
        pool = Pool(
            address=address,
            admin=admin,
            asset_id=asset_id,
            vault_ref=vault,
            variant=variant,
            apy_bps=apy_bps,
            lockup_seconds=lockup_seconds,
            reward_rate=reward_rate_from_apy(apy_bps, self.config.seconds_per_year),
            last_update_ts=now,
            created_ts=now,
        )
        self.tokens.open_account(asset_id, vault)
        self.store.write_batch({address: pool}, balances={(asset_id, vault): 0})
        logger.info(
            f"Pool initialized: {apy_bps / 100:.2f}% APY, lockup {lockup_seconds}s",
            extra={"op": "initialize_pool", "pool": address, "owner": admin},
        )
        return pool

    def fund_rewards(
        self, admin: str, pool_address: str, amount: int, now: Optional[int] = None,
    ) -> OperationReceipt:
        """Move reward funding from the admin into the pool vault."""
        amount = _check_amount(amount)
        pool = self.get_pool(pool_address)
        self._require_admin(pool, admin)
        now = self._now(pool, now)

        refresh(pool, now)
        pool.reward_funds = checked_add(pool.reward_funds, amount, U64_MAX)

        self._commit(pool, None, admin, pool.vault_ref, amount)
        return self._receipt("fund_rewards", pool, admin, amount, 0, now)

    def set_time_offset(self, admin: str, pool_address: str, offset_seconds: int) -> Pool:
        """
        Shift this pool's clock by *offset_seconds* (testing only).

        Refused unless the engine config sets ``allow_time_warp``.
        """
        if not self.config.allow_time_warp:
            raise Unauthorized("Time warp is disabled")
        offset_seconds = _require_int(offset_seconds, "offset_seconds")
        pool = self.get_pool(pool_address)
        self._require_admin(pool, admin)

        warped = self.clock.now() + offset_seconds
        if warped < pool.last_update_ts:
            raise ClockRegression(warped, pool.last_update_ts)
        pool.time_offset = offset_seconds
        self.store.write(pool.address, pool)
        logger.warning(
            f"Time offset set to {offset_seconds}s",
            extra={"op": "set_time_offset", "pool": pool.address, "owner": admin},
        )
        return pool

    # ── participant operations ──────────────────────────────────────

    def stake(
        self, user: str, pool_address: str, amount: int, now: Optional[int] = None,
    ) -> OperationReceipt:
        """
        Deposit *amount* base units.

        Adding to an open position is cumulative and re-anchors the
        lockup to this deposit for the whole position.
        """
        amount = _check_amount(amount)
        pool = self.get_pool(pool_address)
        now = self._now(pool, now)
        position = self.get_user_stake(pool.address, user) or UserStake.new(pool, user)

        refresh(pool, now)
        settle(position, pool)

        position.amount_staked = checked_add(position.amount_staked, amount, U64_MAX)
        pool.total_staked = checked_add(pool.total_staked, amount, U64_MAX)
        position.stake_ts = now

        self._commit(pool, position, user, pool.vault_ref, amount)
        return self._receipt("stake", pool, user, amount, 0, now)

    def unstake(
        self, user: str, pool_address: str, amount: int, now: Optional[int] = None,
    ) -> OperationReceipt:
        """Withdraw principal.  Settled rewards stay claimable."""
        amount = _check_amount(amount)
        pool = self.get_pool(pool_address)
        now = self._now(pool, now)
        position = self.get_user_stake(pool.address, user)
        if position is None:
            raise InsufficientBalance("No open position in this pool")

        refresh(pool, now)
        settle(position, pool)

        if amount > position.amount_staked:
            raise InsufficientBalance(
                f"Insufficient staked amount: have {position.amount_staked}, need {amount}"
            )
        unlock_ts = position.stake_ts + pool.lockup_seconds
        if now < unlock_ts:
            raise LockupActive(unlock_ts, now)

        position.amount_staked = checked_sub(position.amount_staked, amount)
        pool.total_staked = checked_sub(pool.total_staked, amount)

        self._commit(pool, position, pool.vault_ref, user, amount)
        return self._receipt("unstake", pool, user, amount, 0, now)

    def claim(
        self, user: str, pool_address: str, now: Optional[int] = None,
    ) -> OperationReceipt:
        """
        Pay out settled rewards in whole base units.

        The sub-unit fixed-point remainder stays in ``rewards_owed`` and is
        paid by a later claim once it adds up.  A user who never staked
        gets a zero payout and no record is created.
        """
        pool = self.get_pool(pool_address)
        now = self._now(pool, now)
        position = self.get_user_stake(pool.address, user)

        refresh(pool, now)
        if position is None:
            return self._receipt("claim", pool, user, 0, 0, now)
        settle(position, pool)

        payout, remainder = split_units(position.rewards_owed)
        if payout > pool.reward_funds:
            raise InsufficientRewardFunds(
                f"Reward funding {pool.reward_funds} cannot cover claim of {payout}"
            )
        position.rewards_owed = remainder
        pool.reward_funds -= payout

        self._commit(pool, position, pool.vault_ref, user, payout)
        return self._receipt("claim", pool, user, 0, payout, now)

    # ── queries ─────────────────────────────────────────────────────

    def pool_address(self, asset_id: str, admin: str, variant: str = "default") -> str:
        return derive_pool_address(asset_id, admin, variant)

    def get_pool(self, pool_address: str) -> Pool:
        record = self.store.read(pool_address)
        if not isinstance(record, Pool):
            raise RecordNotFound(f"Pool {pool_address[:16]} not found")
        return record

    def get_user_stake(self, pool_address: str, owner: str) -> UserStake | None:
        record = self.store.read(derive_user_stake_address(pool_address, owner))
        return record if isinstance(record, UserStake) else None

    def list_user_stakes(self, pool_address: str) -> list[UserStake]:
        return self.store.list_user_stakes(pool_address)

    def pending_rewards(
        self, pool_address: str, owner: str, now: Optional[int] = None,
    ) -> int:
        """Whole base units *owner* could claim at *now*."""
        pool = self.get_pool(pool_address)
        now = self._now(pool, now)
        position = self.get_user_stake(pool.address, owner)
        if position is None:
            return 0
        return fp_to_units(preview_settlement(pool, position, now))

    def pool_summary(self, pool_address: str, now: Optional[int] = None) -> dict[str, Any]:
        pool = self.get_pool(pool_address)
        now = self._now(pool, now)
        view = pool.to_dict()
        view.pop("kind")
        view.update({
            "apy_pct": f"{pool.apy_bps * 100 / BPS_DENOMINATOR:.2f}%",
            "vault_balance": self.tokens.balance(pool.asset_id, pool.vault_ref),
            "participants": len(self.store.list_user_stakes(pool.address)),
            "now": now,
        })
        return view

    def position_summary(
        self, pool_address: str, owner: str, now: Optional[int] = None,
    ) -> dict[str, Any]:
        pool = self.get_pool(pool_address)
        now = self._now(pool, now)
        position = self.get_user_stake(pool.address, owner)
        if position is None:
            raise RecordNotFound(f"No position for {owner[:16]}")
        view = position.to_dict()
        view.pop("kind")
        unlock_ts = position.stake_ts + pool.lockup_seconds
        view.update({
            "claimable": fp_to_units(preview_settlement(pool, position, now)),
            "unlock_ts": unlock_ts,
            "locked": position.is_active and now < unlock_ts,
        })
        return view

    # ── internals ───────────────────────────────────────────────────

    def _now(self, pool: Pool, now: Optional[int]) -> int:
        if now is None:
            return self.clock.now() + pool.time_offset
        return _require_int(now, "now")

    @staticmethod
    def _require_admin(pool: Pool, caller: str) -> None:
        if caller != pool.admin:
            raise Unauthorized("Caller is not the pool admin")

    def _commit(
        self,
        pool: Pool,
        position: UserStake | None,
        source: str,
        destination: str,
        amount: int,
    ) -> None:
        """
        Move tokens, then persist the records and both resulting balances in
        one batch; undo the move if persisting fails.
        """
        records: dict[str, Pool | UserStake] = {pool.address: pool}
        if position is not None:
            records[position.address] = position

        self.tokens.move(pool.asset_id, source, destination, amount)
        balances = {
            (pool.asset_id, owner): self.tokens.balance(pool.asset_id, owner)
            for owner in (source, destination)
        }
        try:
            self.store.write_batch(records, balances=balances)
        except Exception:
            self.tokens.move(pool.asset_id, destination, source, amount)
            raise

    @staticmethod
    def _receipt(
        op: str, pool: Pool, owner: str, amount: int, rewards_paid: int, now: int,
    ) -> OperationReceipt:
        receipt = OperationReceipt(
            op=op,
            pool=pool.address,
            owner=owner,
            amount=amount,
            rewards_paid=rewards_paid,
            timestamp=now,
        )
        logger.info(
            f"{op} ok at {now}",
            extra={
                "op": op, "pool": pool.address, "owner": owner,
                "amount": amount, "rewards_paid": rewards_paid,
            },
        )
        return receipt
