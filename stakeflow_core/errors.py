"""Exception types raised by the StakeFlow engine and its collaborators.

Every failure is surfaced to the caller as one of these; the engine never
retries.  ``code`` is a stable identifier used by the HTTP layer.
"""

from __future__ import annotations


class StakingError(Exception):
    """Base class for all engine errors."""

    code = "staking_error"


class InvalidParameter(StakingError):
    """Bad pool configuration, or the pool already exists."""

    code = "invalid_parameter"


class ZeroAmount(StakingError):
    """A stake, unstake or funding amount of zero."""

    code = "zero_amount"


class ArithmeticOverflow(StakingError):
    """A checked fixed-point or token operation would leave its range."""

    code = "arithmetic_overflow"


class ClockRegression(StakingError):
    """The supplied timestamp is earlier than the pool's last update."""

    code = "clock_regression"

    def __init__(self, now: int, last_update_ts: int) -> None:
        self.now = now
        self.last_update_ts = last_update_ts
        super().__init__(f"now={now} is before last update {last_update_ts}")


class LockupActive(StakingError):
    """Unstake attempted before the lockup period elapsed."""

    code = "lockup_active"

    def __init__(self, unlock_ts: int, now: int) -> None:
        self.unlock_ts = unlock_ts
        self.now = now
        super().__init__(f"Locked until {unlock_ts} (now {now})")


class InsufficientRewardFunds(StakingError):
    """The pool's reward funding cannot cover a claim."""

    code = "insufficient_reward_funds"


class TransferFailed(StakingError):
    """The balance-move primitive rejected a transfer."""

    code = "transfer_failed"


class InsufficientBalance(StakingError):
    """Stake exceeds holdings, or unstake exceeds the open position."""

    code = "insufficient_balance"


class Unauthorized(StakingError):
    """The caller is not allowed to perform an admin action."""

    code = "unauthorized"


class RecordNotFound(StakingError):
    """No pool (or other required record) at the given address."""

    code = "not_found"


class StoreConflict(StakingError):
    """A record changed in the store since it was read."""

    code = "conflict"
