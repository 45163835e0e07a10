from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime
from typing import TYPE_CHECKING, Any, Iterable
from urllib.parse import quote
from uuid import uuid4

from src.domain.errors import ApiTimeoutError, NotConnectedError, TradeError
from src.domain.models import (
    AccountInformation,
    Deal,
    MarketDataSubscription,
    MarketDataUnsubscription,
    Order,
    Position,
    SymbolPrice,
    SymbolSpecification,
    TradeOptions,
    TradeResult,
    format_time,
)
from src.streaming.history_storage import HistoryStorage
from src.streaming.listener import SynchronizationListener
from src.streaming.stream_client import PacketDispatcher, StreamClient
from src.streaming.terminal_state import TerminalState

if TYPE_CHECKING:
    from src.cloud.accounts import MetatraderAccount
    from src.cloud.api import MetaSyncApi

logger = logging.getLogger(__name__)

TRADE_SUCCESS_CODES = {
    "TRADE_RETCODE_PLACED",
    "TRADE_RETCODE_DONE",
    "TRADE_RETCODE_DONE_PARTIAL",
    "TRADE_RETCODE_NO_CHANGES",
}

_QUOTES_ONLY = (MarketDataSubscription(type="quotes"),)


class _SubscriptionTracker(SynchronizationListener):
    """Applies server-side subscription downgrades to the connection's subscription registry."""

    def __init__(self, connection: MetaSyncConnection) -> None:
        self._connection = connection

    async def on_subscription_downgraded(
        self,
        instance_index: str,
        symbol: str,
        updates: list[MarketDataSubscription] | None,
        unsubscriptions: list[MarketDataUnsubscription] | None,
    ) -> None:
        logger.warning("Market data subscriptions for %s were downgraded by the server", symbol)
        self._connection._apply_downgrade(symbol, updates, unsubscriptions)


class _SynchronizationTracker(SynchronizationListener):
    def __init__(self, connection: MetaSyncConnection) -> None:
        self._connection = connection

    async def on_connected(self, instance_index: str, replicas: int) -> None:
        self._connection._schedule(self._connection._on_authenticated(), "synchronize")

    async def on_disconnected(self, instance_index: str) -> None:
        self._connection._synchronization_id = None

    async def on_history_orders_synchronized(self, instance_index: str, synchronization_id: str) -> None:
        if synchronization_id == self._connection._synchronization_id:
            self._connection._orders_synchronized.add(synchronization_id)

    async def on_deals_synchronized(self, instance_index: str, synchronization_id: str) -> None:
        if synchronization_id == self._connection._synchronization_id:
            self._connection._deals_synchronized.add(synchronization_id)


class MetaSyncConnection:
    """
    Streaming connection to one trading account.

    - Replicates terminal state (account, positions, orders, history) into local caches.
    - Delivers push events to registered `SynchronizationListener`s.
    - Issues read queries and trade requests against the client API.
    """

    def __init__(self, api: MetaSyncApi, account: MetatraderAccount) -> None:
        self._api = api
        self.account = account
        self.terminal_state = TerminalState()
        self.history_storage = HistoryStorage()

        self._internal_listeners: list[SynchronizationListener] = [
            self.terminal_state,
            self.history_storage,
            _SynchronizationTracker(self),
            _SubscriptionTracker(self),
        ]
        self._listeners: list[SynchronizationListener] = []
        self._dispatcher = PacketDispatcher(lambda: [*self._internal_listeners, *self._listeners])

        self._subscriptions: dict[str, list[MarketDataSubscription]] = {}
        self._synchronization_id: str | None = None
        self._orders_synchronized: set[str] = set()
        self._deals_synchronized: set[str] = set()
        self._background: set[asyncio.Task[Any]] = set()
        self._closed = False

        stream_opts = api.stream_opts
        self._stream = StreamClient(
            api.http,
            self._url("/synchronization/stream"),
            self._dispatcher.dispatch,
            on_close=self._on_stream_closed,
            connect_timeout=float(stream_opts.get("connect_timeout_seconds", 60)),
            reconnect_cooldown_seconds=float(stream_opts.get("reconnect_cooldown_seconds", 1)),
            max_reconnect_cooldown_seconds=float(stream_opts.get("max_reconnect_cooldown_seconds", 60)),
        )

    @property
    def account_id(self) -> str:
        return self.account.id

    @property
    def synchronization_id(self) -> str | None:
        return self._synchronization_id

    @property
    def subscribed_symbols(self) -> list[str]:
        return list(self._subscriptions)

    def subscriptions(self, symbol: str) -> list[MarketDataSubscription]:
        return list(self._subscriptions.get(symbol, []))

    def add_synchronization_listener(self, listener: SynchronizationListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_synchronization_listener(self, listener: SynchronizationListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def connect(self) -> None:
        """Open the stream (idempotent). Synchronization starts once the server authenticates it."""
        if self._closed:
            raise NotConnectedError(f"Connection to account {self.account_id} was closed")
        if not self._stream.running:
            logger.info("Connecting to account %s", self.account_id)
            self._stream.start()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._stream.stop()
        tasks = [t for t in self._background if t is not asyncio.current_task()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._background.clear()
        self._api._forget_connection(self.account_id)
        logger.info("Closed connection to account %s", self.account_id)

    def is_synchronized(self) -> bool:
        sync_id = self._synchronization_id
        return sync_id is not None and sync_id in self._orders_synchronized and sync_id in self._deals_synchronized

    async def wait_synchronized(
        self, timeout_in_seconds: float = 300, interval_in_milliseconds: int = 1000
    ) -> None:
        """Block until the terminal state and history for the current synchronization have arrived."""
        if not self._stream.running:
            raise NotConnectedError("Call connect() before wait_synchronized()")
        deadline = time.monotonic() + float(timeout_in_seconds)
        while not self.is_synchronized():
            if time.monotonic() >= deadline:
                raise ApiTimeoutError(
                    f"Timed out waiting for account {self.account_id} to synchronize "
                    f"(synchronization id {self._synchronization_id})"
                )
            await asyncio.sleep(interval_in_milliseconds / 1000.0)
        logger.info("Account %s synchronized (%s)", self.account_id, self._synchronization_id)

    # -------------------
    # Market data
    # -------------------

    async def subscribe_to_market_data(
        self,
        symbol: str,
        subscriptions: Iterable[MarketDataSubscription | dict[str, Any]] | None = None,
    ) -> None:
        subs = [
            s if isinstance(s, MarketDataSubscription) else MarketDataSubscription.from_dict(s)
            for s in (subscriptions or _QUOTES_ONLY)
        ]
        merged = {s.type: s for s in self._subscriptions.get(symbol, [])}
        merged.update({s.type: s for s in subs})
        self._subscriptions[symbol] = list(merged.values())
        await self._send_subscription(symbol, subs)

    async def unsubscribe_from_market_data(
        self, symbol: str, unsubscriptions: Iterable[MarketDataUnsubscription | dict[str, Any]] | None = None
    ) -> None:
        if unsubscriptions is None:
            self._subscriptions.pop(symbol, None)
            body: dict[str, Any] = {}
        else:
            unsubs = [
                u if isinstance(u, MarketDataUnsubscription) else MarketDataUnsubscription(type=str(u.get("type")))
                for u in unsubscriptions
            ]
            removed = {u.type for u in unsubs}
            remaining = [s for s in self._subscriptions.get(symbol, []) if s.type not in removed]
            if remaining:
                self._subscriptions[symbol] = remaining
            else:
                self._subscriptions.pop(symbol, None)
            body = {"unsubscriptions": [u.to_request() for u in unsubs]}
        await self._api.http.post(self._url(f"/symbols/{quote(symbol, safe='')}/unsubscribe"), json=body)

    # -------------------
    # Read queries
    # -------------------

    async def get_account_information(self) -> AccountInformation:
        return AccountInformation.from_dict(await self._get("/account-information") or {})

    async def get_positions(self) -> list[Position]:
        return [Position.from_dict(r) for r in await self._get("/positions") or []]

    async def get_position(self, position_id: str) -> Position:
        return Position.from_dict(await self._get(f"/positions/{position_id}") or {})

    async def get_orders(self) -> list[Order]:
        return [Order.from_dict(r) for r in await self._get("/orders") or []]

    async def get_order(self, order_id: str) -> Order:
        return Order.from_dict(await self._get(f"/orders/{order_id}") or {})

    async def get_history_orders_by_ticket(self, ticket: str) -> list[Order]:
        return self._history_orders(await self._get(f"/history-orders/ticket/{ticket}"))

    async def get_history_orders_by_position(self, position_id: str) -> list[Order]:
        return self._history_orders(await self._get(f"/history-orders/position/{position_id}"))

    async def get_history_orders_by_time_range(
        self, start_time: datetime, end_time: datetime, offset: int = 0, limit: int = 1000
    ) -> list[Order]:
        path = f"/history-orders/time/{format_time(start_time)}/{format_time(end_time)}"
        return self._history_orders(await self._get(path, params={"offset": offset, "limit": limit}))

    async def get_deals_by_ticket(self, ticket: str) -> list[Deal]:
        return self._deals(await self._get(f"/history-deals/ticket/{ticket}"))

    async def get_deals_by_position(self, position_id: str) -> list[Deal]:
        return self._deals(await self._get(f"/history-deals/position/{position_id}"))

    async def get_deals_by_time_range(
        self, start_time: datetime, end_time: datetime, offset: int = 0, limit: int = 1000
    ) -> list[Deal]:
        path = f"/history-deals/time/{format_time(start_time)}/{format_time(end_time)}"
        return self._deals(await self._get(path, params={"offset": offset, "limit": limit}))

    async def get_symbols(self) -> list[str]:
        return [str(s) for s in await self._get("/symbols") or []]

    async def get_symbol_specification(self, symbol: str) -> SymbolSpecification:
        return SymbolSpecification.from_dict(await self._get(f"/symbols/{quote(symbol, safe='')}/specification") or {})

    async def get_symbol_price(self, symbol: str) -> SymbolPrice:
        return SymbolPrice.from_dict(await self._get(f"/symbols/{quote(symbol, safe='')}/current-price") or {})

    # -------------------
    # Trading
    # -------------------

    async def create_market_buy_order(
        self,
        symbol: str,
        volume: float,
        stop_loss: float | None = None,
        take_profit: float | None = None,
        options: TradeOptions | None = None,
    ) -> TradeResult:
        return await self._trade(
            {"actionType": "ORDER_TYPE_BUY", "symbol": symbol, "volume": volume,
             "stopLoss": stop_loss, "takeProfit": take_profit},
            options,
        )

    async def create_market_sell_order(
        self,
        symbol: str,
        volume: float,
        stop_loss: float | None = None,
        take_profit: float | None = None,
        options: TradeOptions | None = None,
    ) -> TradeResult:
        return await self._trade(
            {"actionType": "ORDER_TYPE_SELL", "symbol": symbol, "volume": volume,
             "stopLoss": stop_loss, "takeProfit": take_profit},
            options,
        )

    async def create_limit_buy_order(
        self,
        symbol: str,
        volume: float,
        open_price: float,
        stop_loss: float | None = None,
        take_profit: float | None = None,
        options: TradeOptions | None = None,
    ) -> TradeResult:
        return await self._pending_order("ORDER_TYPE_BUY_LIMIT", symbol, volume, open_price, stop_loss, take_profit, options)

    async def create_limit_sell_order(
        self,
        symbol: str,
        volume: float,
        open_price: float,
        stop_loss: float | None = None,
        take_profit: float | None = None,
        options: TradeOptions | None = None,
    ) -> TradeResult:
        return await self._pending_order("ORDER_TYPE_SELL_LIMIT", symbol, volume, open_price, stop_loss, take_profit, options)

    async def create_stop_buy_order(
        self,
        symbol: str,
        volume: float,
        open_price: float,
        stop_loss: float | None = None,
        take_profit: float | None = None,
        options: TradeOptions | None = None,
    ) -> TradeResult:
        return await self._pending_order("ORDER_TYPE_BUY_STOP", symbol, volume, open_price, stop_loss, take_profit, options)

    async def create_stop_sell_order(
        self,
        symbol: str,
        volume: float,
        open_price: float,
        stop_loss: float | None = None,
        take_profit: float | None = None,
        options: TradeOptions | None = None,
    ) -> TradeResult:
        return await self._pending_order("ORDER_TYPE_SELL_STOP", symbol, volume, open_price, stop_loss, take_profit, options)

    async def modify_position(
        self, position_id: str, stop_loss: float | None = None, take_profit: float | None = None
    ) -> TradeResult:
        return await self._trade(
            {"actionType": "POSITION_MODIFY", "positionId": position_id,
             "stopLoss": stop_loss, "takeProfit": take_profit},
            None,
        )

    async def close_position_partially(
        self, position_id: str, volume: float, options: TradeOptions | None = None
    ) -> TradeResult:
        return await self._trade(
            {"actionType": "POSITION_PARTIAL", "positionId": position_id, "volume": volume}, options
        )

    async def close_position(self, position_id: str, options: TradeOptions | None = None) -> TradeResult:
        return await self._trade({"actionType": "POSITION_CLOSE_ID", "positionId": position_id}, options)

    async def close_positions_by_symbol(self, symbol: str, options: TradeOptions | None = None) -> TradeResult:
        return await self._trade({"actionType": "POSITIONS_CLOSE_SYMBOL", "symbol": symbol}, options)

    async def modify_order(
        self,
        order_id: str,
        open_price: float,
        stop_loss: float | None = None,
        take_profit: float | None = None,
    ) -> TradeResult:
        return await self._trade(
            {"actionType": "ORDER_MODIFY", "orderId": order_id, "openPrice": open_price,
             "stopLoss": stop_loss, "takeProfit": take_profit},
            None,
        )

    async def cancel_order(self, order_id: str) -> TradeResult:
        return await self._trade({"actionType": "ORDER_CANCEL", "orderId": order_id}, None)

    # -------------------
    # Internal
    # -------------------

    def _url(self, suffix: str) -> str:
        return f"{self._api.client_api_url}/users/current/accounts/{self.account_id}{suffix}"

    async def _get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        return await self._api.http.get(self._url(path), params=params)

    @staticmethod
    def _history_orders(body: Any) -> list[Order]:
        rows = body.get("historyOrders", []) if isinstance(body, dict) else body or []
        return [Order.from_dict(r) for r in rows]

    @staticmethod
    def _deals(body: Any) -> list[Deal]:
        rows = body.get("deals", []) if isinstance(body, dict) else body or []
        return [Deal.from_dict(r) for r in rows]

    async def _pending_order(
        self,
        action_type: str,
        symbol: str,
        volume: float,
        open_price: float,
        stop_loss: float | None,
        take_profit: float | None,
        options: TradeOptions | None,
    ) -> TradeResult:
        return await self._trade(
            {"actionType": action_type, "symbol": symbol, "volume": volume, "openPrice": open_price,
             "stopLoss": stop_loss, "takeProfit": take_profit},
            options,
        )

    async def _trade(self, request: dict[str, Any], options: TradeOptions | None) -> TradeResult:
        body = {k: v for k, v in request.items() if v is not None}
        if options is not None:
            body.update(options.to_request())
        logger.info("Submitting %s on account %s", body["actionType"], self.account_id)
        # Resent only when the server cannot have received it (429, connect errors).
        response = await self._api.http.post(self._url("/trade"), json=body, idempotent=False)
        result = TradeResult.from_dict(response or {})
        if result.string_code not in TRADE_SUCCESS_CODES:
            raise TradeError(result.message or "Trade rejected", result.numeric_code, result.string_code)
        return result

    async def _send_subscription(self, symbol: str, subscriptions: list[MarketDataSubscription]) -> None:
        await self._api.http.post(
            self._url(f"/symbols/{quote(symbol, safe='')}/subscribe"),
            json={"subscriptions": [s.to_request() for s in subscriptions]},
        )

    async def _on_authenticated(self) -> None:
        await self._synchronize()
        for symbol, subs in list(self._subscriptions.items()):
            try:
                await self._send_subscription(symbol, subs)
            except Exception as e:
                logger.warning("Failed to restore market data subscription for %s: %s", symbol, e)

    async def _synchronize(self) -> None:
        sync_id = uuid4().hex
        self._synchronization_id = sync_id
        # Completion marks only ever refer to the current synchronization.
        self._orders_synchronized.clear()
        self._deals_synchronized.clear()
        body = {
            "synchronizationId": sync_id,
            "startingHistoryOrderTime": format_time(self.history_storage.last_history_order_time()),
            "startingDealTime": format_time(self.history_storage.last_deal_time()),
        }
        logger.info("Requesting synchronization %s for account %s", sync_id, self.account_id)
        await self._api.http.post(self._url("/synchronize"), json={k: v for k, v in body.items() if v})

    async def _on_stream_closed(self) -> None:
        await self._dispatcher.dispatch({"type": "disconnected"})

    def _apply_downgrade(
        self,
        symbol: str,
        updates: list[MarketDataSubscription] | None,
        unsubscriptions: list[MarketDataUnsubscription] | None,
    ) -> None:
        current = {s.type: s for s in self._subscriptions.get(symbol, [])}
        for u in unsubscriptions or []:
            current.pop(u.type, None)
        for s in updates or []:
            current[s.type] = s
        if current:
            self._subscriptions[symbol] = list(current.values())
        else:
            self._subscriptions.pop(symbol, None)

    def _schedule(self, coro: Any, label: str) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)

        def _log_task_result(t: asyncio.Task[Any]) -> None:
            self._background.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            if exc is not None:
                logger.warning("Background %s for account %s failed: %s", label, self.account_id, exc)

        task.add_done_callback(_log_task_result)
