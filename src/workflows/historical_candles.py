from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta
from typing import Any

from src.cloud.accounts import MetatraderAccount
from src.cloud.api import MetaSyncApi
from src.domain.models import Candle
from src.utils.config_loader import require_setting
from src.workflows.provisioning import deploy_and_wait_connected

logger = logging.getLogger(__name__)

_TIMEFRAME_STEPS = {"m": timedelta(minutes=1), "h": timedelta(hours=1), "d": timedelta(days=1), "w": timedelta(weeks=1)}


def timeframe_step(timeframe: str) -> timedelta:
    """One bar of `timeframe` ("1m", "4h", ...), used to step past the oldest candle of a page."""
    if timeframe.endswith("mn"):
        return timedelta(days=31)
    unit = timeframe[-1]
    return int(timeframe[:-1]) * _TIMEFRAME_STEPS[unit]


async def download_candles(
    account: MetatraderAccount,
    symbol: str,
    timeframe: str = "1m",
    pages: int = 10,
) -> list[Candle]:
    """
    Download `pages` pages of candles walking backwards in time.

    Each page ends just before the first candle of the previous one. Candles already
    collected are skipped, and paging stops early once a page brings nothing new.
    """
    step = timeframe_step(timeframe)
    start_time: datetime | None = None
    collected: list[Candle] = []
    seen: set[datetime] = set()
    for page in range(pages):
        candles = await account.get_historical_candles(symbol, timeframe, start_time)
        logger.info("Downloaded %d historical candles for %s (page %d/%d)", len(candles), symbol, page + 1, pages)
        fresh = [c for c in candles if c.time not in seen]
        if not fresh:
            break
        seen.update(c.time for c in fresh)
        collected = fresh + collected
        start_time = candles[0].time - step
        logger.info("First candle time is %s", start_time)
    return collected


async def retrieve_historical_candles(
    cfg: dict[str, Any],
    pages: int | None = None,
    *,
    api: MetaSyncApi | None = None,
) -> list[Candle]:
    require_setting(cfg, "api.token")
    account_id = require_setting(cfg, "account.id")
    market_cfg = cfg.get("market_data") or {}
    symbol = str(market_cfg.get("symbol") or "EURUSD")
    timeframe = str(market_cfg.get("candle_timeframe") or "1m")
    pages = int(pages if pages is not None else market_cfg.get("candle_pages", 10))

    owns_api = api is None
    if api is None:
        api = MetaSyncApi.from_config(cfg)
    try:
        account = await api.metatrader_account_api.get_account(account_id)
        await deploy_and_wait_connected(account, float((cfg.get("streaming") or {}).get("connect_timeout_seconds", 300)))

        logger.info("Downloading %d pages of latest %s candles for %s", pages, timeframe, symbol)
        started_at = time.monotonic()
        candles = await download_candles(account, symbol, timeframe, pages)
        if candles:
            logger.info("First candle is %s", candles[0])
        logger.info("Took %.0fms", (time.monotonic() - started_at) * 1000)
        return candles
    finally:
        if owns_api:
            await api.close()
