#!/usr/bin/env python3
"""
StakeFlow runner.

Commands:
  serve   start the HTTP API over a staking engine
  demo    run the two-pool walkthrough against an in-process ledger
          with a manual clock (10% APY flexible pool, 20% APY pool with
          a 30-day lockup)

Usage:
    python run_stakeflow.py serve --config stakeflow.toml --port 8080
    python run_stakeflow.py demo --amount 10 --days 30

Environment variables (alternative to flags):
    STAKEFLOW_API_HOST, STAKEFLOW_API_PORT, STAKEFLOW_DB_PATH,
    STAKEFLOW_LOG_LEVEL, STAKEFLOW_LOG_FMT, STAKEFLOW_ALLOW_TIME_WARP
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import os
import sys

# ---------------------------------------------------------------------------
# Ensure the project root is in sys.path so imports work before pip install
# ---------------------------------------------------------------------------
PROJECT_ROOT = os.path.dirname(os.path.abspath(__file__))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from stakeflow_core.clock import ManualClock  # noqa: E402
from stakeflow_core.config import StakeFlowConfig, load_config  # noqa: E402
from stakeflow_core.errors import LockupActive  # noqa: E402
from stakeflow_core.invariants import InvariantChecker  # noqa: E402
from stakeflow_core.logging_config import setup_logging  # noqa: E402
from stakeflow_core.node import StakeFlowNode  # noqa: E402
from stakeflow_core.precision import (  # noqa: E402
    SECONDS_PER_DAY,
    format_amount,
    to_base_units,
)

logger = logging.getLogger("stakeflow")


# ===================================================================
#  Demo
# ===================================================================

def run_demo(amount: str = "10", days: int = 30, out=print) -> dict[str, int]:
    """
    Stake into a flexible and a locked pool, warp the clock, claim and
    unstake.  Returns the rewards paid per pool in base units.
    """
    cfg = StakeFlowConfig()
    cfg.engine.allow_time_warp = True
    admin, user = "admin", "user"
    asset = cfg.genesis.assets[0]
    cfg.genesis.balances = {asset.asset_id: {
        admin: to_base_units(1_000, asset.decimals),
        user: to_base_units(1_000, asset.decimals),
    }}
    clock = ManualClock()
    node = StakeFlowNode(cfg, clock=clock)
    engine, tokens = node.engine, node.tokens
    stake_units = to_base_units(amount, asset.decimals)
    period = days * SECONDS_PER_DAY

    def show(label: str) -> None:
        out(f"  {label}: user {format_amount(tokens.balance(asset.asset_id, user), asset.symbol)}")

    pool_a = engine.initialize_pool(admin, asset.asset_id, 1000, 0, variant="A")
    pool_b = engine.initialize_pool(admin, asset.asset_id, 2000, period, variant="B")
    for pool in (pool_a, pool_b):
        engine.fund_rewards(admin, pool.address, to_base_units(100, asset.decimals))

    paid: dict[str, int] = {}
    out("--- Pool A: 10% APY, no lockup ---")
    show("before")
    engine.stake(user, pool_a.address, stake_units)
    clock.advance(period)
    paid["A"] = engine.claim(user, pool_a.address).rewards_paid
    engine.unstake(user, pool_a.address, stake_units)
    out(f"  claimed {format_amount(paid['A'], asset.symbol)} after {days} days")
    show("after")

    out(f"--- Pool B: 20% APY, {days}-day lockup ---")
    engine.stake(user, pool_b.address, stake_units)
    try:
        engine.unstake(user, pool_b.address, stake_units)
    except LockupActive as exc:
        out(f"  early unstake refused (locked until {exc.unlock_ts})")
    # warp pool B's clock instead of the shared one
    engine.set_time_offset(admin, pool_b.address, period)
    paid["B"] = engine.claim(user, pool_b.address).rewards_paid
    engine.unstake(user, pool_b.address, stake_units)
    out(f"  claimed {format_amount(paid['B'], asset.symbol)} after warping {days} days")
    show("after")

    checker = InvariantChecker(engine)
    for name, pool in (("A", pool_a), ("B", pool_b)):
        ok, errors = checker.verify(pool.address)
        out(f"  pool {name} invariants: {'ok' if ok else '; '.join(errors)}")
    return paid


# ===================================================================
#  Main entry point
# ===================================================================

def parse_args(argv: list[str] | None = None):
    p = argparse.ArgumentParser(description="StakeFlow multi-pool staking ledger")
    sub = p.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Start the HTTP API")
    serve.add_argument("--config", default=None, help="Path to stakeflow.toml config file")
    serve.add_argument("--host", default=None, help="Listen host")
    serve.add_argument("--port", type=int, default=None, help="Listen port")

    demo = sub.add_parser("demo", help="Run the two-pool walkthrough")
    demo.add_argument("--amount", default="10", help="Tokens to stake in each pool")
    demo.add_argument("--days", type=int, default=30, help="Holding period in days")
    return p.parse_args(argv)


async def serve(cfg: StakeFlowConfig) -> None:
    cfg.api.enabled = True
    node = StakeFlowNode(cfg)
    await node.start()
    try:
        while True:
            await asyncio.sleep(3600)
    except asyncio.CancelledError:
        pass
    finally:
        await node.stop()


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    if args.command == "demo":
        setup_logging(level="WARNING")
        run_demo(args.amount, args.days)
        return 0

    cfg = load_config(args.config)
    setup_logging(cfg.logging.level, cfg.logging.format, cfg.logging.file)
    if args.host:
        cfg.api.host = args.host
    if args.port:
        cfg.api.port = args.port
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(serve(cfg))
    return 0


def main_sync():
    """Synchronous entry point for console_scripts."""
    sys.exit(main())


if __name__ == "__main__":
    main_sync()
