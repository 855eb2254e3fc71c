"""
In-process fungible token ledger for StakeFlow.

Provides the balance-move primitive the staking engine depends on:

    move(asset_id, source, destination, amount)

A move either completes in full or raises and leaves every balance as it
was.  Balances are unsigned base units bounded by ``U64_MAX`` per
account, like an SPL token account.

Accounts are opened implicitly by ``mint_to`` / ``open_account`` and may
be frozen, which makes any move touching them fail with
``TransferFailed``.

The ledger itself is in-process; ``balances()`` / ``restore()`` let the
account store persist it next to the pool records (see ``storage``).
Freeze flags are not persisted.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from stakeflow_core.errors import InsufficientBalance, TransferFailed
from stakeflow_core.precision import DEFAULT_DECIMALS, U64_MAX, checked_add, ensure_u64

logger = logging.getLogger("stakeflow_tokens")


@dataclass
class Asset:
    """A fungible asset (mint) known to the ledger."""
    asset_id: str
    decimals: int = DEFAULT_DECIMALS
    symbol: str = ""
    supply: int = 0


class TokenLedger:
    """Balances keyed by ``(asset_id, owner)``."""

    def __init__(self) -> None:
        self.assets: dict[str, Asset] = {}
        self._balances: dict[tuple[str, str], int] = {}
        self._frozen: set[tuple[str, str]] = set()

    # ── assets ──────────────────────────────────────────────────────

    def create_asset(
        self, asset_id: str, decimals: int = DEFAULT_DECIMALS, symbol: str = "",
    ) -> Asset:
        if asset_id in self.assets:
            raise ValueError(f"Asset {asset_id} already exists")
        if decimals < 0:
            raise ValueError("decimals must be non-negative")
        asset = Asset(asset_id=asset_id, decimals=decimals, symbol=symbol or asset_id)
        self.assets[asset_id] = asset
        return asset

    def has_asset(self, asset_id: str) -> bool:
        return asset_id in self.assets

    def mint_to(self, asset_id: str, owner: str, amount: int) -> int:
        """Create *amount* new base units in *owner*'s account."""
        asset = self._asset(asset_id)
        ensure_u64(amount, "amount")
        key = (asset_id, owner)
        new_balance = checked_add(self._balances.get(key, 0), amount, U64_MAX)
        asset.supply += amount
        self._balances[key] = new_balance
        return new_balance

    # ── accounts ────────────────────────────────────────────────────

    def open_account(self, asset_id: str, owner: str) -> None:
        self._asset(asset_id)
        self._balances.setdefault((asset_id, owner), 0)

    def has_account(self, asset_id: str, owner: str) -> bool:
        return (asset_id, owner) in self._balances

    def balance(self, asset_id: str, owner: str) -> int:
        return self._balances.get((asset_id, owner), 0)

    def balances(self) -> dict[tuple[str, str], int]:
        """Every opened account, keyed by ``(asset_id, owner)``."""
        return dict(self._balances)

    def restore(self, balances: dict[tuple[str, str], int]) -> None:
        """Reload persisted balances, replacing whatever is held now."""
        for asset_id, _owner in balances:
            self._asset(asset_id)
        self._balances = {key: ensure_u64(units, "balance") for key, units in balances.items()}
        for asset in self.assets.values():
            asset.supply = sum(
                units for (aid, _), units in self._balances.items() if aid == asset.asset_id
            )

    def freeze(self, asset_id: str, owner: str) -> None:
        self._frozen.add((asset_id, owner))

    def thaw(self, asset_id: str, owner: str) -> None:
        self._frozen.discard((asset_id, owner))

    # ── transfer primitive ──────────────────────────────────────────

    def move(self, asset_id: str, source: str, destination: str, amount: int) -> None:
        """
        Transfer *amount* base units from *source* to *destination*.

        All checks run before either balance changes.
        """
        if isinstance(amount, bool) or not isinstance(amount, int) or amount < 0:
            raise TransferFailed(f"Invalid transfer amount: {amount!r}")
        if asset_id not in self.assets:
            raise TransferFailed(f"Unknown asset {asset_id}")
        src_key = (asset_id, source)
        dst_key = (asset_id, destination)
        if src_key in self._frozen or dst_key in self._frozen:
            raise TransferFailed("Account is frozen")
        if amount == 0:
            return
        if source == destination:
            raise TransferFailed("Source and destination are the same account")
        have = self._balances.get(src_key, 0)
        if have < amount:
            raise InsufficientBalance(f"Insufficient balance: have {have}, need {amount}")
        dst_balance = self._balances.get(dst_key, 0)
        if dst_balance + amount > U64_MAX:
            raise TransferFailed("Destination balance would overflow")

        self._balances[src_key] = have - amount
        self._balances[dst_key] = dst_balance + amount
        logger.debug(f"Moved {amount} {asset_id}: {source[:12]} → {destination[:12]}")

    # ── internals ───────────────────────────────────────────────────

    def _asset(self, asset_id: str) -> Asset:
        asset = self.assets.get(asset_id)
        if asset is None:
            raise KeyError(f"Asset {asset_id} not found")
        return asset
