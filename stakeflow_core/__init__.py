"""
StakeFlow - a multi-pool token staking ledger.

Key features:
- Per-pool fixed APY with optional lockup period
- O(1) reward-per-token accrual, fair under any interleaving of
  stake / unstake / claim
- Q64.64 fixed-point arithmetic with checked overflow
- Versioned account stores (memory, SQLite) with all-or-nothing commits
- aiohttp API with secp256k1-signed requests
"""

__version__ = "0.4.0"
__all__ = [
    "accrual",
    "api",
    "clock",
    "config",
    "errors",
    "invariants",
    "logging_config",
    "node",
    "precision",
    "staking",
    "state",
    "storage",
    "token_ledger",
    "wallet",
]
