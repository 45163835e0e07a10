from __future__ import annotations

import asyncio
import logging
from collections import Counter, deque
from datetime import datetime, timezone
from typing import Any

from src.cloud.api import MetaSyncApi
from src.domain.models import (
    DEFAULT_SUBSCRIPTIONS,
    Book,
    Candle,
    MarketDataSubscription,
    MarketDataUnsubscription,
    SymbolPrice,
    Tick,
)
from src.streaming.connection import MetaSyncConnection
from src.streaming.listener import SynchronizationListener
from src.utils.config_loader import require_setting
from src.workflows.provisioning import deploy_and_wait_connected

logger = logging.getLogger(__name__)


class QuoteListener(SynchronizationListener):
    """
    Logs market data events for one symbol.

    Only the newest `history_size` events of each kind are kept; the counters cover the whole run.
    """

    def __init__(self, symbol: str, history_size: int = 100) -> None:
        self.symbol = symbol
        self.prices: deque[SymbolPrice] = deque(maxlen=history_size)
        self.candles: deque[Candle] = deque(maxlen=history_size)
        self.ticks: deque[Tick] = deque(maxlen=history_size)
        self.books: deque[Book] = deque(maxlen=history_size)
        self.counts: Counter[str] = Counter()
        self.downgrades = 0

    async def on_symbol_price_updated(self, instance_index: str, price: SymbolPrice) -> None:
        if price.symbol == self.symbol:
            self.prices.append(price)
            self.counts["prices"] += 1
            logger.info("%s price updated: bid=%s ask=%s", self.symbol, price.bid, price.ask)

    async def on_candles_updated(self, instance_index: str, candles: list[Candle]) -> None:
        for candle in candles:
            if candle.symbol == self.symbol:
                self.candles.append(candle)
                self.counts["candles"] += 1
                logger.info("%s candle updated: %s", self.symbol, candle)

    async def on_ticks_updated(self, instance_index: str, ticks: list[Tick]) -> None:
        for tick in ticks:
            if tick.symbol == self.symbol:
                self.ticks.append(tick)
                self.counts["ticks"] += 1
                logger.info("%s tick updated: %s", self.symbol, tick)

    async def on_books_updated(self, instance_index: str, books: list[Book]) -> None:
        for book in books:
            if book.symbol == self.symbol:
                self.books.append(book)
                self.counts["books"] += 1
                logger.info("%s order book updated (%d levels)", self.symbol, len(book.entries))

    async def on_subscription_downgraded(
        self,
        instance_index: str,
        symbol: str,
        updates: list[MarketDataSubscription] | None,
        unsubscriptions: list[MarketDataUnsubscription] | None,
    ) -> None:
        self.downgrades += 1
        logger.warning("Market data subscriptions for %s were downgraded by the server due to rate limits", symbol)


async def start_quote_stream(
    api: MetaSyncApi,
    account_id: str,
    symbol: str,
    listener: SynchronizationListener,
    *,
    subscriptions: tuple[MarketDataSubscription, ...] = DEFAULT_SUBSCRIPTIONS,
    connect_timeout: float = 300,
    synchronization_timeout: float = 300,
) -> MetaSyncConnection:
    """Deploy, connect, synchronize and subscribe. Returns the live connection."""
    account = await api.metatrader_account_api.get_account(account_id)
    await deploy_and_wait_connected(account, connect_timeout)

    connection = await account.connect()
    connection.add_synchronization_listener(listener)

    logger.info(
        "Waiting for terminal state to synchronize; %s market data streaming starts once it finishes", symbol
    )
    await connection.wait_synchronized(synchronization_timeout)

    await connection.subscribe_to_market_data(symbol, subscriptions)
    logger.info(
        "[%s] Synchronized successfully, streaming %s market data now...",
        datetime.now(timezone.utc).isoformat(), symbol,
    )
    return connection


async def stream_quotes(
    cfg: dict[str, Any],
    stop_event: asyncio.Event | None = None,
    *,
    api: MetaSyncApi | None = None,
) -> QuoteListener:
    """Stream the configured symbol's market data until `stop_event` is set."""
    require_setting(cfg, "api.token")
    account_id = require_setting(cfg, "account.id")
    symbol = str((cfg.get("market_data") or {}).get("symbol") or "EURUSD")
    streaming_cfg = cfg.get("streaming") or {}
    stop_event = stop_event or asyncio.Event()

    owns_api = api is None
    if api is None:
        api = MetaSyncApi.from_config(cfg)
    listener = QuoteListener(symbol)
    try:
        connection = await start_quote_stream(
            api,
            account_id,
            symbol,
            listener,
            connect_timeout=float(streaming_cfg.get("connect_timeout_seconds", 300)),
            synchronization_timeout=float(streaming_cfg.get("synchronization_timeout_seconds", 300)),
        )
        await stop_event.wait()
        logger.info("Stopping %s market data stream", symbol)
        connection.remove_synchronization_listener(listener)
        await connection.close()
        return listener
    finally:
        if owns_api:
            await api.close()
