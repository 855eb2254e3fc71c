"""
Assembles a runnable StakeFlow service from configuration:

  - account store from ``[storage]``
  - token ledger restored from the store, or seeded from ``[genesis]``
    on first start
  - staking engine from ``[engine]``
  - optional HTTP API from ``[api]``
"""

from __future__ import annotations

import logging

from stakeflow_core.api import APIServer
from stakeflow_core.clock import SystemClock
from stakeflow_core.config import StakeFlowConfig
from stakeflow_core.staking import StakingEngine
from stakeflow_core.storage import open_store
from stakeflow_core.token_ledger import TokenLedger

logger = logging.getLogger("stakeflow_node")


def build_token_ledger(cfg: StakeFlowConfig, store=None) -> TokenLedger:
    """
    Create the configured assets, then either reload the balances *store*
    already holds or mint the genesis balances and persist them.
    """
    tokens = TokenLedger()
    for asset in cfg.genesis.assets:
        tokens.create_asset(asset.asset_id, asset.decimals, asset.symbol)

    saved = store.load_balances() if store is not None else {}
    if saved:
        tokens.restore(saved)
        logger.info(f"Restored {len(saved)} token account(s) from the store")
        return tokens

    for asset_id, owners in cfg.genesis.balances.items():
        for owner, units in owners.items():
            tokens.mint_to(asset_id, owner, units)
    if store is not None:
        store.write_batch({}, balances=tokens.balances())
    return tokens


class StakeFlowNode:
    """Engine plus its collaborators and an optional API server."""

    def __init__(self, config: StakeFlowConfig | None = None, clock=None):
        self.config = config or StakeFlowConfig()
        self.store = open_store(self.config.storage.backend, self.config.storage.path)
        self.tokens = build_token_ledger(self.config, self.store)
        self.engine = StakingEngine(
            self.store, self.tokens, clock or SystemClock(), self.config.engine,
        )
        self._api: APIServer | None = None

        if self.config.engine.allow_time_warp:
            logger.warning("Time warp is ENABLED; do not run this configuration in production")

    async def start(self) -> None:
        api_cfg = self.config.api
        if api_cfg.enabled:
            self._api = APIServer(self.engine, api_cfg.host, api_cfg.port, api_config=api_cfg)
            await self._api.start()
        logger.info(
            f"StakeFlow node started ({self.config.storage.backend} store, "
            f"{len(self.tokens.assets)} asset(s))"
        )

    async def stop(self) -> None:
        if self._api is not None:
            await self._api.stop()
        self.store.close()
        logger.info("StakeFlow node stopped")
