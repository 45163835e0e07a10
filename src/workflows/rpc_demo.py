from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from src.cloud.api import MetaSyncApi
from src.domain.errors import TradeError
from src.domain.models import TradeOptions
from src.utils.config_loader import require_setting
from src.workflows.provisioning import deploy_and_wait_connected, ensure_account, ensure_provisioning_profile

logger = logging.getLogger(__name__)

HISTORY_LOOKBACK = timedelta(days=90)


async def run_rpc_demo(
    cfg: dict[str, Any],
    *,
    api: MetaSyncApi | None = None,
    sample_ticket: str = "1234567",
    undeploy: bool = True,
) -> dict[str, Any]:
    """
    Provision an account, synchronize it, run every read query once and submit one pending order.

    Replace `sample_ticket` with a ticket that exists in your account to see non-empty history lookups.
    Returns what was read so callers (and tests) can inspect it.
    """
    token = require_setting(cfg, "api.token")
    login = require_setting(cfg, "account.login")
    password = require_setting(cfg, "account.password")
    server_name = require_setting(cfg, "account.server")
    broker_srv_file = require_setting(cfg, "account.broker_srv_file")
    account_cfg = cfg.get("account") or {}
    streaming_cfg = cfg.get("streaming") or {}

    owns_api = api is None
    if api is None:
        api = MetaSyncApi.from_config(cfg)
    out: dict[str, Any] = {}
    try:
        logger.debug("Using token ending ...%s", str(token)[-4:])
        profile = await ensure_provisioning_profile(
            api, server_name, broker_srv_file, version=int(account_cfg.get("platform_version", 4))
        )
        account = await ensure_account(api, profile, login, password, server_name, account_cfg)

        await deploy_and_wait_connected(account, float(streaming_cfg.get("connect_timeout_seconds", 300)))

        connection = await account.connect()
        logger.info("Waiting for terminal state to synchronize (may take some time depending on history size)")
        await connection.wait_synchronized(float(streaming_cfg.get("synchronization_timeout_seconds", 300)))

        now = datetime.now(timezone.utc)
        since = now - HISTORY_LOOKBACK
        out["account_information"] = await connection.get_account_information()
        out["positions"] = await connection.get_positions()
        out["orders"] = await connection.get_orders()
        out["history_orders_by_ticket"] = await connection.get_history_orders_by_ticket(sample_ticket)
        out["history_orders_by_position"] = await connection.get_history_orders_by_position(sample_ticket)
        out["history_orders_by_time_range"] = await connection.get_history_orders_by_time_range(since, now)
        out["deals_by_ticket"] = await connection.get_deals_by_ticket(sample_ticket)
        out["deals_by_position"] = await connection.get_deals_by_position(sample_ticket)
        out["deals_by_time_range"] = await connection.get_deals_by_time_range(since, now)
        for key, value in out.items():
            logger.info("%s: %s", key.replace("_", " "), value)

        logger.info("Submitting pending order")
        try:
            result = await connection.create_limit_buy_order(
                "GBPUSD", 0.07, 1.0, 0.9, 2.0,
                TradeOptions(comment="comment", client_id="TE_GBPUSD_7hyINWqAlE"),
            )
            logger.info("Trade successful (%s)", result.description)
            out["trade"] = result
        except TradeError as e:
            logger.error("Trade failed with %s error", e.string_code)
            out["trade"] = e

        if undeploy:
            logger.info("Undeploying account %s so that it does not consume any unwanted resources", account.id)
            await account.undeploy()
        return out
    finally:
        if owns_api:
            await api.close()
