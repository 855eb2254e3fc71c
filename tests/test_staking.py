"""
Tests for the StakeFlow staking engine.

Covers:
  - Pool initialization and parameter validation
  - Stake / unstake / claim lifecycle on flexible and locked pools
  - Reward amounts against the linear APY formula
  - Fairness when participants enter and leave mid-interval
  - Lockup enforcement and re-anchoring on additional stakes
  - Reward funding and admin-only actions
  - All-or-nothing behaviour on every failure path
"""

import random

import pytest

from conftest import ASSET, DAYS_30, ONE, T0, exact_reward

from stakeflow_core.accrual import reward_rate_from_apy
from stakeflow_core.config import EngineConfig
from stakeflow_core.errors import (
    ArithmeticOverflow,
    ClockRegression,
    InsufficientBalance,
    InsufficientRewardFunds,
    InvalidParameter,
    LockupActive,
    RecordNotFound,
    StoreConflict,
    TransferFailed,
    Unauthorized,
    ZeroAmount,
)
from stakeflow_core.invariants import InvariantChecker
from stakeflow_core.precision import (
    FP_ONE,
    FP_SHIFT,
    SECONDS_PER_DAY,
    SECONDS_PER_YEAR,
    U64_MAX,
)
from stakeflow_core.staking import StakingEngine
from stakeflow_core.state import derive_pool_address, derive_vault_address
from stakeflow_core.storage import MemoryStore


def _linear(apy_bps, principal_tokens, seconds):
    return principal_tokens * (apy_bps / 10_000) * (seconds / SECONDS_PER_YEAR)


def _state(engine, pool_address, owner):
    """Everything a failed call must leave untouched."""
    pool = engine.get_pool(pool_address)
    position = engine.get_user_stake(pool_address, owner)
    return (
        pool.to_dict(),
        position.to_dict() if position else None,
        engine.tokens.balance(ASSET, owner),
        engine.tokens.balance(ASSET, pool.vault_ref),
    )


class _FlakyStore(MemoryStore):
    """MemoryStore whose next batch write is rejected as a conflict."""

    def __init__(self):
        super().__init__()
        self.fail_next = False

    def write_batch(self, records, balances=None):
        if self.fail_next:
            self.fail_next = False
            raise StoreConflict("simulated concurrent update")
        super().write_batch(records, balances)


# ═══════════════════════════════════════════════════════════════════
#  Pool initialization
# ═══════════════════════════════════════════════════════════════════

class TestInitializePool:
    def test_creates_zeroed_pool(self, engine, clock):
        pool = engine.initialize_pool("admin", ASSET, 1000, 0)
        assert pool.total_staked == 0
        assert pool.acc_reward_per_token == 0
        assert pool.last_update_ts == T0
        assert pool.reward_rate == reward_rate_from_apy(1000)
        assert pool.address == derive_pool_address(ASSET, "admin", "default")
        assert pool.vault_ref == derive_vault_address(pool.address)

    def test_opens_vault_account(self, engine):
        pool = engine.initialize_pool("admin", ASSET, 1000, 0)
        assert engine.tokens.has_account(ASSET, pool.vault_ref)
        assert engine.tokens.balance(ASSET, pool.vault_ref) == 0

    def test_persisted(self, engine, store):
        pool = engine.initialize_pool("admin", ASSET, 500, 3600, now=T0 + 5)
        stored = store.read(pool.address)
        assert stored == pool
        assert stored.last_update_ts == T0 + 5

    def test_variants_get_distinct_pools(self, engine):
        a = engine.initialize_pool("admin", ASSET, 1000, 0, variant="A")
        b = engine.initialize_pool("admin", ASSET, 2000, DAYS_30, variant="B")
        assert a.address != b.address
        assert a.vault_ref != b.vault_ref

    def test_duplicate_rejected(self, engine):
        engine.initialize_pool("admin", ASSET, 1000, 0)
        with pytest.raises(InvalidParameter):
            engine.initialize_pool("admin", ASSET, 2000, 0)

    def test_apy_bounds(self, engine):
        engine.initialize_pool("admin", ASSET, 0, 0, variant="zero")
        engine.initialize_pool("admin", ASSET, 65_535, 0, variant="max")
        with pytest.raises(InvalidParameter):
            engine.initialize_pool("admin", ASSET, 65_536, 0, variant="over")
        with pytest.raises(InvalidParameter):
            engine.initialize_pool("admin", ASSET, -1, 0, variant="neg")

    def test_configured_apy_cap(self, store, tokens, clock):
        eng = StakingEngine(store, tokens, clock, EngineConfig(max_apy_bps=10_000))
        with pytest.raises(InvalidParameter):
            eng.initialize_pool("admin", ASSET, 10_001, 0)

    def test_lockup_bounds(self, engine):
        limit = engine.config.max_lockup_seconds
        engine.initialize_pool("admin", ASSET, 1000, limit, variant="edge")
        with pytest.raises(InvalidParameter):
            engine.initialize_pool("admin", ASSET, 1000, limit + 1, variant="over")
        with pytest.raises(InvalidParameter):
            engine.initialize_pool("admin", ASSET, 1000, -1, variant="neg")

    def test_non_integer_params_rejected(self, engine):
        with pytest.raises(InvalidParameter):
            engine.initialize_pool("admin", ASSET, 10.5, 0)
        with pytest.raises(InvalidParameter):
            engine.initialize_pool("admin", ASSET, 1000, True)

    def test_unknown_asset(self, engine):
        with pytest.raises(InvalidParameter):
            engine.initialize_pool("admin", "XYZ", 1000, 0)

    def test_vault_balance_persisted(self, engine, store):
        pool = engine.initialize_pool("admin", ASSET, 1000, 0)
        assert store.load_balances() == {(ASSET, pool.vault_ref): 0}

    def test_vault_failure_leaves_no_pool(self, engine, store, monkeypatch):
        def refuse(asset_id, owner):
            raise RuntimeError("account table full")

        monkeypatch.setattr(engine.tokens, "open_account", refuse)
        with pytest.raises(RuntimeError):
            engine.initialize_pool("admin", ASSET, 1000, 0)
        assert store.list_pools() == []

        monkeypatch.undo()
        pool = engine.initialize_pool("admin", ASSET, 1000, 0)
        assert engine.tokens.has_account(ASSET, pool.vault_ref)


# ═══════════════════════════════════════════════════════════════════
#  Reference scenarios
# ═══════════════════════════════════════════════════════════════════

class TestReferenceScenarios:
    def test_pool_a_thirty_days(self, engine, clock, pool_a):
        engine.stake("alice", pool_a, 10 * ONE)
        clock.advance(DAYS_30)
        receipt = engine.claim("alice", pool_a)

        assert receipt.rewards_paid == exact_reward(1000, 10 * ONE, DAYS_30)
        assert abs(receipt.rewards_paid / ONE - _linear(1000, 10, DAYS_30)) < 0.0001
        assert abs(receipt.rewards_paid / ONE - 0.0821918) < 0.0001
        assert engine.tokens.balance(ASSET, "alice") == 990 * ONE + receipt.rewards_paid

    def test_pool_b_lockup_then_claim_and_unstake(self, engine, clock, pool_b):
        engine.stake("alice", pool_b, 10 * ONE)
        with pytest.raises(LockupActive):
            engine.unstake("alice", pool_b, 10 * ONE)

        clock.advance(DAYS_30)
        claim = engine.claim("alice", pool_b)
        unstake = engine.unstake("alice", pool_b, 10 * ONE)

        assert abs(claim.rewards_paid / ONE - 0.1643836) < 0.0001
        assert claim.rewards_paid == exact_reward(2000, 10 * ONE, DAYS_30)
        assert unstake.amount == 10 * ONE
        assert engine.tokens.balance(ASSET, "alice") == 1_000 * ONE + claim.rewards_paid

    def test_late_joiner_earns_only_its_share(self, engine, clock, pool_a):
        engine.stake("alice", pool_a, 10 * ONE)
        clock.advance(10 * SECONDS_PER_DAY)
        engine.stake("bob", pool_a, 10 * ONE)
        clock.advance(20 * SECONDS_PER_DAY)

        alice = engine.claim("alice", pool_a).rewards_paid
        bob = engine.claim("bob", pool_a).rewards_paid

        assert alice == exact_reward(1000, 10 * ONE, DAYS_30)
        assert bob == exact_reward(1000, 10 * ONE, 20 * SECONDS_PER_DAY)
        assert abs(alice / ONE - _linear(1000, 10, DAYS_30)) < 0.0001
        assert abs(bob / ONE - _linear(1000, 10, 20 * SECONDS_PER_DAY)) < 0.0001

    def test_reward_does_not_depend_on_pool_size(self, engine, clock, pool_a):
        engine.stake("alice", pool_a, 10 * ONE)
        engine.stake("bob", pool_a, 500 * ONE)
        clock.advance(DAYS_30)
        assert engine.claim("alice", pool_a).rewards_paid == exact_reward(1000, 10 * ONE, DAYS_30)


# ═══════════════════════════════════════════════════════════════════
#  Fairness under arbitrary interleavings
# ═══════════════════════════════════════════════════════════════════

class TestFairness:
    @pytest.mark.parametrize("seed", [1, 7, 42])
    def test_random_interleaving_pays_exact_integral(self, engine, tokens, clock, seed):
        rng = random.Random(seed)
        users = ["alice", "bob", "carol"]
        for holder in ("admin", *users):
            tokens.mint_to(ASSET, holder, 10_000 * ONE)
        pool = engine.initialize_pool("admin", ASSET, 1500, 0)
        engine.fund_rewards("admin", pool.address, 5_000 * ONE)
        rate = reward_rate_from_apy(1500)

        staked = {u: 0 for u in users}
        earned_fp = {u: 0 for u in users}
        paid = {u: 0 for u in users}
        checker = InvariantChecker(engine)

        for _ in range(150):
            dt = rng.randrange(0, 5 * SECONDS_PER_DAY)
            clock.advance(dt)
            for u in users:
                earned_fp[u] += staked[u] * rate * dt

            user = rng.choice(users)
            op = rng.choice(["stake", "unstake", "claim"])
            if op == "stake":
                amount = rng.randrange(1, 50 * ONE)
                engine.stake(user, pool.address, amount)
                staked[user] += amount
            elif op == "unstake" and staked[user] > 0:
                amount = rng.randrange(1, staked[user] + 1)
                engine.unstake(user, pool.address, amount)
                staked[user] -= amount
            else:
                paid[user] += engine.claim(user, pool.address).rewards_paid

            ok, errors = checker.verify(pool.address)
            assert ok, errors
            checker.capture([pool.address])

        for u in users:
            paid[u] += engine.claim(u, pool.address).rewards_paid
            assert paid[u] == earned_fp[u] >> FP_SHIFT
            position = engine.get_user_stake(pool.address, u)
            if position is not None:
                assert position.rewards_owed == earned_fp[u] & (FP_ONE - 1)

    def test_many_entries_and_exits_by_others(self, engine, clock, pool_a):
        engine.stake("alice", pool_a, 10 * ONE)
        for _ in range(20):
            clock.advance(SECONDS_PER_DAY)
            engine.stake("bob", pool_a, ONE)
            clock.advance(SECONDS_PER_DAY)
            engine.unstake("bob", pool_a, ONE)
        paid = engine.claim("alice", pool_a).rewards_paid
        assert paid == exact_reward(1000, 10 * ONE, 40 * SECONDS_PER_DAY)


# ═══════════════════════════════════════════════════════════════════
#  Stake
# ═══════════════════════════════════════════════════════════════════

class TestStake:
    def test_creates_position_lazily(self, engine, pool_a):
        assert engine.get_user_stake(pool_a, "alice") is None
        engine.stake("alice", pool_a, 5 * ONE)
        position = engine.get_user_stake(pool_a, "alice")
        assert position.amount_staked == 5 * ONE
        assert position.stake_ts == T0
        assert position.rewards_owed == 0
        assert engine.get_pool(pool_a).total_staked == 5 * ONE

    def test_moves_principal_into_vault(self, engine, pool_a):
        vault = engine.get_pool(pool_a).vault_ref
        before = engine.tokens.balance(ASSET, vault)
        engine.stake("alice", pool_a, 5 * ONE)
        assert engine.tokens.balance(ASSET, vault) == before + 5 * ONE
        assert engine.tokens.balance(ASSET, "alice") == 995 * ONE

    def test_restake_is_additive_and_settles_first(self, engine, clock, pool_a):
        engine.stake("alice", pool_a, 10 * ONE)
        clock.advance(10 * SECONDS_PER_DAY)
        engine.stake("alice", pool_a, 10 * ONE)
        clock.advance(10 * SECONDS_PER_DAY)

        rate = reward_rate_from_apy(1000)
        expected_fp = 10 * ONE * rate * 10 * SECONDS_PER_DAY + 20 * ONE * rate * 10 * SECONDS_PER_DAY
        assert engine.get_user_stake(pool_a, "alice").amount_staked == 20 * ONE
        assert engine.claim("alice", pool_a).rewards_paid == expected_fp >> FP_SHIFT

    def test_zero_amount(self, engine, pool_a):
        with pytest.raises(ZeroAmount):
            engine.stake("alice", pool_a, 0)

    def test_negative_amount(self, engine, pool_a):
        with pytest.raises(InvalidParameter):
            engine.stake("alice", pool_a, -5)

    def test_more_than_held(self, engine, pool_a):
        before = _state(engine, pool_a, "alice")
        with pytest.raises(InsufficientBalance):
            engine.stake("alice", pool_a, 1_001 * ONE)
        assert _state(engine, pool_a, "alice") == before
        assert engine.get_user_stake(pool_a, "alice") is None

    def test_frozen_account_transfer_failure(self, engine, tokens, pool_a):
        tokens.freeze(ASSET, "alice")
        before = _state(engine, pool_a, "alice")
        with pytest.raises(TransferFailed):
            engine.stake("alice", pool_a, ONE)
        assert _state(engine, pool_a, "alice") == before

    def test_unknown_pool(self, engine):
        with pytest.raises(RecordNotFound):
            engine.stake("alice", "0" * 64, ONE)

    def test_clock_regression(self, engine, clock, pool_a):
        clock.advance(100)
        engine.stake("alice", pool_a, ONE)
        with pytest.raises(ClockRegression):
            engine.stake("alice", pool_a, ONE, now=T0 + 50)

    def test_stake_into_empty_pool_accrues_nothing_before(self, engine, clock, pool_a):
        clock.advance(DAYS_30)
        engine.stake("alice", pool_a, 10 * ONE)
        pool = engine.get_pool(pool_a)
        assert pool.acc_reward_per_token == 0
        assert pool.last_update_ts == T0 + DAYS_30
        assert engine.claim("alice", pool_a).rewards_paid == 0


# ═══════════════════════════════════════════════════════════════════
#  Unstake
# ═══════════════════════════════════════════════════════════════════

class TestUnstake:
    def test_partial_unstake(self, engine, pool_a):
        engine.stake("alice", pool_a, 10 * ONE)
        engine.unstake("alice", pool_a, 4 * ONE)
        assert engine.get_user_stake(pool_a, "alice").amount_staked == 6 * ONE
        assert engine.get_pool(pool_a).total_staked == 6 * ONE
        assert engine.tokens.balance(ASSET, "alice") == 994 * ONE

    def test_does_not_auto_claim(self, engine, clock, pool_a):
        engine.stake("alice", pool_a, 10 * ONE)
        clock.advance(DAYS_30)
        engine.unstake("alice", pool_a, 10 * ONE)

        position = engine.get_user_stake(pool_a, "alice")
        assert position.amount_staked == 0
        assert position.rewards_owed > 0
        assert engine.tokens.balance(ASSET, "alice") == 1_000 * ONE

        clock.advance(DAYS_30)  # nothing staked, nothing more accrues
        assert engine.claim("alice", pool_a).rewards_paid == exact_reward(1000, 10 * ONE, DAYS_30)

    def test_more_than_staked(self, engine, pool_a):
        engine.stake("alice", pool_a, 10 * ONE)
        before = _state(engine, pool_a, "alice")
        with pytest.raises(InsufficientBalance):
            engine.unstake("alice", pool_a, 10 * ONE + 1)
        assert _state(engine, pool_a, "alice") == before

    def test_without_position(self, engine, pool_a):
        with pytest.raises(InsufficientBalance):
            engine.unstake("alice", pool_a, ONE)
        assert engine.get_user_stake(pool_a, "alice") is None

    def test_zero_amount(self, engine, pool_a):
        engine.stake("alice", pool_a, ONE)
        with pytest.raises(ZeroAmount):
            engine.unstake("alice", pool_a, 0)


class TestLockup:
    def test_fails_one_second_early(self, engine, clock, pool_b):
        engine.stake("alice", pool_b, 10 * ONE)
        clock.advance(DAYS_30 - 1)
        before = _state(engine, pool_b, "alice")
        with pytest.raises(LockupActive) as exc_info:
            engine.unstake("alice", pool_b, 10 * ONE)
        assert exc_info.value.unlock_ts == T0 + DAYS_30
        assert _state(engine, pool_b, "alice") == before

    def test_succeeds_exactly_at_maturity(self, engine, clock, pool_b):
        engine.stake("alice", pool_b, 10 * ONE)
        clock.advance(DAYS_30)
        engine.unstake("alice", pool_b, 10 * ONE)
        assert engine.get_user_stake(pool_b, "alice").amount_staked == 0

    def test_restake_reanchors_lockup(self, engine, clock, pool_b):
        engine.stake("alice", pool_b, 10 * ONE)
        clock.advance(20 * SECONDS_PER_DAY)
        engine.stake("alice", pool_b, ONE)
        clock.advance(10 * SECONDS_PER_DAY)
        with pytest.raises(LockupActive):
            engine.unstake("alice", pool_b, ONE)
        clock.advance(20 * SECONDS_PER_DAY)
        engine.unstake("alice", pool_b, 11 * ONE)

    def test_claim_allowed_during_lockup(self, engine, clock, pool_b):
        engine.stake("alice", pool_b, 10 * ONE)
        clock.advance(10 * SECONDS_PER_DAY)
        paid = engine.claim("alice", pool_b).rewards_paid
        assert paid == exact_reward(2000, 10 * ONE, 10 * SECONDS_PER_DAY)


# ═══════════════════════════════════════════════════════════════════
#  Claim
# ═══════════════════════════════════════════════════════════════════

class TestClaim:
    def test_never_staked_user(self, engine, store, pool_a):
        records = len(store)
        vault_before = engine.tokens.balance(ASSET, engine.get_pool(pool_a).vault_ref)
        receipt = engine.claim("carol", pool_a)
        assert receipt.rewards_paid == 0
        assert engine.get_user_stake(pool_a, "carol") is None
        assert len(store) == records
        assert engine.tokens.balance(ASSET, "carol") == 1_000 * ONE
        assert engine.tokens.balance(ASSET, engine.get_pool(pool_a).vault_ref) == vault_before

    def test_claim_twice_pays_once(self, engine, clock, pool_a):
        engine.stake("alice", pool_a, 10 * ONE)
        clock.advance(DAYS_30)
        first = engine.claim("alice", pool_a).rewards_paid
        second = engine.claim("alice", pool_a).rewards_paid
        assert first > 0
        assert second == 0

    def test_keeps_fractional_remainder(self, engine, clock, pool_a):
        engine.stake("alice", pool_a, 1)
        clock.advance(SECONDS_PER_DAY)
        assert engine.claim("alice", pool_a).rewards_paid == 0
        position = engine.get_user_stake(pool_a, "alice")
        assert 0 < position.rewards_owed < FP_ONE

    def test_reduces_reward_funds(self, engine, clock, pool_a):
        engine.stake("alice", pool_a, 10 * ONE)
        clock.advance(DAYS_30)
        paid = engine.claim("alice", pool_a).rewards_paid
        assert engine.get_pool(pool_a).reward_funds == 100 * ONE - paid

    def test_insufficient_reward_funds_changes_nothing(self, engine, clock):
        pool = engine.initialize_pool("admin", ASSET, 1000, 0, variant="unfunded")
        engine.stake("alice", pool.address, 10 * ONE)
        clock.advance(DAYS_30)
        before = _state(engine, pool.address, "alice")
        with pytest.raises(InsufficientRewardFunds):
            engine.claim("alice", pool.address)
        assert _state(engine, pool.address, "alice") == before

    def test_claim_never_touches_principal(self, engine, clock):
        pool = engine.initialize_pool("admin", ASSET, 1000, 0, variant="thin")
        engine.fund_rewards("admin", pool.address, 1)
        engine.stake("alice", pool.address, 10 * ONE)
        engine.stake("bob", pool.address, 10 * ONE)
        clock.advance(DAYS_30)
        with pytest.raises(InsufficientRewardFunds):
            engine.claim("alice", pool.address)
        assert engine.tokens.balance(ASSET, pool.vault_ref) == 20 * ONE + 1

    def test_pending_rewards_matches_claim(self, engine, clock, pool_a):
        engine.stake("alice", pool_a, 10 * ONE)
        clock.advance(12_345)
        pending = engine.pending_rewards(pool_a, "alice")
        pool_before = engine.get_pool(pool_a)
        assert pool_before.last_update_ts == T0  # preview did not persist
        assert engine.claim("alice", pool_a).rewards_paid == pending

    def test_pending_rewards_without_position(self, engine, pool_a):
        assert engine.pending_rewards(pool_a, "nobody") == 0


# ═══════════════════════════════════════════════════════════════════
#  Funding and admin actions
# ═══════════════════════════════════════════════════════════════════

class TestAdmin:
    def test_fund_rewards(self, engine, pool_a):
        pool = engine.get_pool(pool_a)
        engine.fund_rewards("admin", pool_a, 5 * ONE)
        assert engine.get_pool(pool_a).reward_funds == pool.reward_funds + 5 * ONE
        assert engine.tokens.balance(ASSET, pool.vault_ref) == 105 * ONE

    def test_fund_rewards_non_admin(self, engine, pool_a):
        with pytest.raises(Unauthorized):
            engine.fund_rewards("alice", pool_a, ONE)

    def test_fund_rewards_zero(self, engine, pool_a):
        with pytest.raises(ZeroAmount):
            engine.fund_rewards("admin", pool_a, 0)

    def test_time_offset_moves_only_that_pool(self, engine, clock, pool_a, pool_b):
        engine.stake("alice", pool_a, 10 * ONE)
        engine.stake("alice", pool_b, 10 * ONE)
        engine.set_time_offset("admin", pool_b, DAYS_30)

        engine.unstake("alice", pool_b, 10 * ONE)
        assert engine.get_user_stake(pool_a, "alice").amount_staked == 10 * ONE
        assert engine.pending_rewards(pool_a, "alice") == 0
        assert engine.claim("alice", pool_b).rewards_paid == exact_reward(2000, 10 * ONE, DAYS_30)

    def test_time_offset_non_admin(self, engine, pool_b):
        with pytest.raises(Unauthorized):
            engine.set_time_offset("alice", pool_b, DAYS_30)

    def test_time_offset_disabled(self, store, tokens, clock):
        eng = StakingEngine(store, tokens, clock, EngineConfig(allow_time_warp=False))
        pool = eng.initialize_pool("admin", ASSET, 1000, 0)
        with pytest.raises(Unauthorized):
            eng.set_time_offset("admin", pool.address, 100)

    def test_time_offset_cannot_rewind_past_last_update(self, engine, pool_a):
        with pytest.raises(ClockRegression):
            engine.set_time_offset("admin", pool_a, -10)


# ═══════════════════════════════════════════════════════════════════
#  Atomicity and overflow
# ═══════════════════════════════════════════════════════════════════

class TestAtomicity:
    def test_commit_persists_both_balances(self, engine, store, tokens, pool_a):
        pool = engine.get_pool(pool_a)
        engine.stake("alice", pool_a, 10 * ONE)
        saved = store.load_balances()
        assert saved[(ASSET, "alice")] == tokens.balance(ASSET, "alice") == 990 * ONE
        assert saved[(ASSET, pool.vault_ref)] == tokens.balance(ASSET, pool.vault_ref)
        assert saved[(ASSET, pool.vault_ref)] == 110 * ONE

    def test_store_conflict_reverses_transfer(self, tokens, clock):
        store = _FlakyStore()
        engine = StakingEngine(store, tokens, clock)
        pool = engine.initialize_pool("admin", ASSET, 1000, 0)
        before = _state(engine, pool.address, "alice")
        saved = store.load_balances()

        store.fail_next = True
        with pytest.raises(StoreConflict):
            engine.stake("alice", pool.address, 10 * ONE)
        assert _state(engine, pool.address, "alice") == before
        assert store.load_balances() == saved

        engine.stake("alice", pool.address, 10 * ONE)
        assert engine.get_pool(pool.address).total_staked == 10 * ONE

    def test_stale_read_conflicts(self, engine, store, pool_a):
        stale = engine.get_pool(pool_a)
        engine.stake("alice", pool_a, ONE)
        with pytest.raises(StoreConflict):
            store.write(stale.address, stale)

    def test_overflow_on_settle_leaves_state(self, engine, tokens, clock):
        tokens.mint_to(ASSET, "whale", U64_MAX // 2)
        pool = engine.initialize_pool("admin", ASSET, 65_535, 0, variant="hot")
        engine.fund_rewards("admin", pool.address, ONE)
        engine.stake("whale", pool.address, U64_MAX // 2)
        clock.advance(100_000_000)

        before = _state(engine, pool.address, "whale")
        with pytest.raises(ArithmeticOverflow):
            engine.claim("whale", pool.address)
        assert _state(engine, pool.address, "whale") == before

    def test_total_staked_overflow(self, engine, tokens, pool_a):
        tokens.mint_to(ASSET, "whale", U64_MAX - 500 * ONE)
        engine.stake("whale", pool_a, U64_MAX - 500 * ONE)
        before = _state(engine, pool_a, "alice")
        with pytest.raises(ArithmeticOverflow):
            engine.stake("alice", pool_a, 1_000 * ONE)
        assert _state(engine, pool_a, "alice") == before


# ═══════════════════════════════════════════════════════════════════
#  Queries
# ═══════════════════════════════════════════════════════════════════

class TestQueries:
    def test_pool_summary(self, engine, pool_a):
        engine.stake("alice", pool_a, 10 * ONE)
        summary = engine.pool_summary(pool_a)
        assert summary["apy_pct"] == "10.00%"
        assert summary["total_staked"] == 10 * ONE
        assert summary["vault_balance"] == 110 * ONE
        assert summary["participants"] == 1
        assert "kind" not in summary

    def test_position_summary_lock_state(self, engine, clock, pool_b):
        engine.stake("alice", pool_b, 10 * ONE)
        view = engine.position_summary(pool_b, "alice")
        assert view["locked"] is True
        assert view["unlock_ts"] == T0 + DAYS_30
        clock.advance(DAYS_30)
        view = engine.position_summary(pool_b, "alice")
        assert view["locked"] is False
        assert view["claimable"] == exact_reward(2000, 10 * ONE, DAYS_30)

    def test_position_summary_missing(self, engine, pool_a):
        with pytest.raises(RecordNotFound):
            engine.position_summary(pool_a, "nobody")

    def test_pool_address_helper(self, engine, pool_a):
        assert engine.pool_address(ASSET, "admin", "A") == pool_a

    def test_list_user_stakes(self, engine, pool_a, pool_b):
        engine.stake("alice", pool_a, ONE)
        engine.stake("bob", pool_a, ONE)
        engine.stake("carol", pool_b, ONE)
        owners = sorted(s.owner for s in engine.list_user_stakes(pool_a))
        assert owners == ["alice", "bob"]
