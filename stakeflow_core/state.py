"""
Persistent record types for StakeFlow.

Two records make up the whole ledger state the engine touches:

  - ``Pool``       — configuration plus the reward-per-token accumulator.
  - ``UserStake``  — one participant's position and reward checkpoint.

Addresses are deterministic SHA-256 digests of their seeds, so a pool is
identified by (asset, admin, variant) and a position by (pool, owner)
without any lookup table.
"""

from __future__ import annotations

import hashlib
from dataclasses import asdict, dataclass, field
from typing import Any


# ── address derivation ──────────────────────────────────────────────────

def _derive(*seeds: str | bytes) -> str:
    h = hashlib.sha256()
    for seed in seeds:
        data = seed.encode("utf-8") if isinstance(seed, str) else seed
        # length-prefix each seed so ("ab", "c") != ("a", "bc")
        h.update(len(data).to_bytes(4, "big"))
        h.update(data)
    return h.hexdigest()


def derive_pool_address(asset_id: str, admin: str, variant: str = "default") -> str:
    """Address of the pool run by *admin* for *asset_id* (one per variant)."""
    return _derive(b"pool", asset_id, admin, variant)


def derive_vault_address(pool_address: str) -> str:
    """Address of the pool-owned balance holding principal and reward funds."""
    return _derive(b"vault", pool_address)


def derive_user_stake_address(pool_address: str, owner: str) -> str:
    """Address of *owner*'s position in the pool."""
    return _derive(b"user_stake", pool_address, owner)


# ── records ─────────────────────────────────────────────────────────────

@dataclass
class Pool:
    """
    Per-pool configuration and accrual state.

    ``acc_reward_per_token`` and ``reward_rate`` are Q64.64 fixed-point;
    ``total_staked`` and ``reward_funds`` are base units of ``asset_id``.
    """
    address: str
    admin: str
    asset_id: str
    vault_ref: str
    variant: str
    apy_bps: int
    lockup_seconds: int
    reward_rate: int
    last_update_ts: int
    acc_reward_per_token: int = 0
    total_staked: int = 0
    reward_funds: int = 0       # vault share reserved for reward payouts
    time_offset: int = 0        # test-only clock warp, admin controlled
    created_ts: int = 0
    version: int = field(default=0, compare=False)

    KIND = "pool"

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d.pop("version")
        d["kind"] = self.KIND
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any], version: int = 0) -> Pool:
        fields = {k: v for k, v in data.items() if k != "kind"}
        return cls(**fields, version=version)


@dataclass
class UserStake:
    """
    A participant's position in one pool.

    ``rewards_owed`` and ``entry_acc_reward_per_token`` are Q64.64;
    ``amount_staked`` is in base units.  The record outlives a full
    unstake so unclaimed rewards are never lost.
    """
    address: str
    owner: str
    pool_ref: str
    amount_staked: int = 0
    rewards_owed: int = 0
    entry_acc_reward_per_token: int = 0
    stake_ts: int = 0
    version: int = field(default=0, compare=False)

    KIND = "user_stake"

    @classmethod
    def new(cls, pool: Pool, owner: str) -> UserStake:
        """Zero-initialised position for *owner*'s first stake into *pool*."""
        return cls(
            address=derive_user_stake_address(pool.address, owner),
            owner=owner,
            pool_ref=pool.address,
            entry_acc_reward_per_token=pool.acc_reward_per_token,
        )

    @property
    def is_active(self) -> bool:
        return self.amount_staked > 0

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d.pop("version")
        d["kind"] = self.KIND
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any], version: int = 0) -> UserStake:
        fields = {k: v for k, v in data.items() if k != "kind"}
        return cls(**fields, version=version)


RECORD_TYPES: dict[str, type] = {
    Pool.KIND: Pool,
    UserStake.KIND: UserStake,
}


def record_from_dict(data: dict[str, Any], version: int = 0) -> Pool | UserStake:
    """Rebuild a record from its ``to_dict`` form."""
    kind = data.get("kind")
    if kind not in RECORD_TYPES:
        raise ValueError(f"Unknown record kind: {kind!r}")
    return RECORD_TYPES[kind].from_dict(data, version=version)
