from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Iterable

import httpx

from src.cloud.http_client import HttpClient, error_from_response
from src.domain.models import (
    AccountInformation,
    Book,
    Candle,
    Deal,
    MarketDataSubscription,
    MarketDataUnsubscription,
    Order,
    Position,
    SymbolPrice,
    SymbolSpecification,
    Tick,
)
from src.streaming.listener import SynchronizationListener

logger = logging.getLogger(__name__)

PacketHandler = Callable[[dict[str, Any]], Awaitable[None]]


class PacketDispatcher:
    """
    Routes stream packets to synchronization listener hooks.

    A listener that raises is logged and skipped; the remaining listeners still get the event.
    """

    def __init__(self, listeners: Callable[[], Iterable[SynchronizationListener]]) -> None:
        self._listeners = listeners
        self._handlers: dict[str, Callable[[str, dict[str, Any]], Awaitable[None]]] = {
            "authenticated": self._on_authenticated,
            "disconnected": self._on_disconnected,
            "status": self._on_status,
            "synchronizationStarted": self._on_synchronization_started,
            "accountInformation": self._on_account_information,
            "positions": self._on_positions,
            "orders": self._on_orders,
            "historyOrders": self._on_history_orders,
            "deals": self._on_deals,
            "update": self._on_update,
            "orderSynchronizationFinished": self._on_order_synchronization_finished,
            "dealSynchronizationFinished": self._on_deal_synchronization_finished,
            "specifications": self._on_specifications,
            "prices": self._on_prices,
            "downgradeSubscription": self._on_downgrade_subscription,
        }

    async def dispatch(self, packet: dict[str, Any]) -> None:
        packet_type = str(packet.get("type") or "")
        handler = self._handlers.get(packet_type)
        if handler is None:
            logger.debug("Ignoring unknown stream packet type %r", packet_type)
            return
        instance_index = str(packet.get("instanceIndex", "0"))
        await handler(instance_index, packet)

    async def _notify(self, hook: str, *args: Any) -> None:
        for listener in list(self._listeners()):
            try:
                await getattr(listener, hook)(*args)
            except Exception as e:
                logger.error(
                    "Synchronization listener %s.%s failed: %s: %s",
                    type(listener).__name__, hook, type(e).__name__, e, exc_info=True,
                )

    async def _on_authenticated(self, idx: str, packet: dict[str, Any]) -> None:
        await self._notify("on_connected", idx, int(packet.get("replicas") or 1))

    async def _on_disconnected(self, idx: str, packet: dict[str, Any]) -> None:
        await self._notify("on_disconnected", idx)

    async def _on_status(self, idx: str, packet: dict[str, Any]) -> None:
        if "connected" in packet:
            await self._notify("on_broker_connection_status_changed", idx, bool(packet["connected"]))

    async def _on_synchronization_started(self, idx: str, packet: dict[str, Any]) -> None:
        await self._notify("on_synchronization_started", idx, str(packet.get("synchronizationId") or ""))

    async def _on_account_information(self, idx: str, packet: dict[str, Any]) -> None:
        info = packet.get("accountInformation")
        if info:
            await self._notify("on_account_information_updated", idx, AccountInformation.from_dict(info))

    async def _on_positions(self, idx: str, packet: dict[str, Any]) -> None:
        positions = [Position.from_dict(p) for p in packet.get("positions") or []]
        await self._notify("on_positions_replaced", idx, positions)
        await self._notify("on_positions_synchronized", idx, str(packet.get("synchronizationId") or ""))

    async def _on_orders(self, idx: str, packet: dict[str, Any]) -> None:
        orders = [Order.from_dict(o) for o in packet.get("orders") or []]
        await self._notify("on_orders_replaced", idx, orders)
        await self._notify("on_pending_orders_synchronized", idx, str(packet.get("synchronizationId") or ""))

    async def _on_history_orders(self, idx: str, packet: dict[str, Any]) -> None:
        for row in packet.get("historyOrders") or []:
            await self._notify("on_history_order_added", idx, Order.from_dict(row))

    async def _on_deals(self, idx: str, packet: dict[str, Any]) -> None:
        for row in packet.get("deals") or []:
            await self._notify("on_deal_added", idx, Deal.from_dict(row))

    async def _on_update(self, idx: str, packet: dict[str, Any]) -> None:
        await self._on_account_information(idx, packet)
        for row in packet.get("updatedPositions") or []:
            await self._notify("on_position_updated", idx, Position.from_dict(row))
        for position_id in packet.get("removedPositionIds") or []:
            await self._notify("on_position_removed", idx, str(position_id))
        for row in packet.get("updatedOrders") or []:
            await self._notify("on_order_updated", idx, Order.from_dict(row))
        for order_id in packet.get("completedOrderIds") or []:
            await self._notify("on_order_completed", idx, str(order_id))
        await self._on_history_orders(idx, packet)
        await self._on_deals(idx, packet)

    async def _on_order_synchronization_finished(self, idx: str, packet: dict[str, Any]) -> None:
        await self._notify("on_history_orders_synchronized", idx, str(packet.get("synchronizationId") or ""))

    async def _on_deal_synchronization_finished(self, idx: str, packet: dict[str, Any]) -> None:
        await self._notify("on_deals_synchronized", idx, str(packet.get("synchronizationId") or ""))

    async def _on_specifications(self, idx: str, packet: dict[str, Any]) -> None:
        for row in packet.get("specifications") or []:
            await self._notify("on_symbol_specification_updated", idx, SymbolSpecification.from_dict(row))

    async def _on_prices(self, idx: str, packet: dict[str, Any]) -> None:
        for row in packet.get("prices") or []:
            await self._notify("on_symbol_price_updated", idx, SymbolPrice.from_dict(row))
        # Rows without an open time cannot be ordered and are dropped.
        candles = [Candle.from_dict(c) for c in packet.get("candles") or [] if c.get("time")]
        if candles:
            await self._notify("on_candles_updated", idx, candles)
        ticks = [Tick.from_dict(t) for t in packet.get("ticks") or []]
        if ticks:
            await self._notify("on_ticks_updated", idx, ticks)
        books = [Book.from_dict(b) for b in packet.get("books") or []]
        if books:
            await self._notify("on_books_updated", idx, books)

    async def _on_downgrade_subscription(self, idx: str, packet: dict[str, Any]) -> None:
        updates = packet.get("updates")
        unsubscriptions = packet.get("unsubscriptions")
        await self._notify(
            "on_subscription_downgraded",
            idx,
            str(packet.get("symbol") or ""),
            [MarketDataSubscription.from_dict(u) for u in updates] if updates is not None else None,
            [MarketDataUnsubscription(type=str(u.get("type"))) for u in unsubscriptions]
            if unsubscriptions is not None
            else None,
        )


async def iter_sse_packets(resp: httpx.Response):
    """
    Yield JSON packets from a `text/event-stream` response.

    Multi-line `data:` fields are joined; `retry:` hints, `event:`/`id:` fields and `:` comments are skipped.
    """
    data_lines: list[str] = []
    async for line in resp.aiter_lines():
        if not line:
            if data_lines:
                payload = "\n".join(data_lines)
                data_lines = []
                try:
                    packet = json.loads(payload)
                except ValueError:
                    logger.warning("Skipping malformed stream packet: %s", payload[:200])
                    continue
                if isinstance(packet, dict):
                    yield packet
            continue
        if line.startswith(":"):
            continue
        if line.startswith("data:"):
            data_lines.append(line[len("data:"):].lstrip())
    if data_lines:
        try:
            packet = json.loads("\n".join(data_lines))
        except ValueError:
            return
        if isinstance(packet, dict):
            yield packet


class StreamClient:
    """
    Keeps one Server-Sent Events stream open and feeds its packets to a handler.

    - Runs as a single background task on the caller's event loop.
    - Reconnects after any disconnect with a doubling cooldown (capped).
    - `on_open(reconnected)` fires after each successful open, `on_close()` after each drop.
    """

    def __init__(
        self,
        http: HttpClient,
        url: str,
        handler: PacketHandler,
        *,
        on_open: Callable[[bool], Awaitable[None]] | None = None,
        on_close: Callable[[], Awaitable[None]] | None = None,
        connect_timeout: float = 60.0,
        reconnect_cooldown_seconds: float = 1.0,
        max_reconnect_cooldown_seconds: float = 60.0,
    ) -> None:
        self.http = http
        self.url = url
        self.handler = handler
        self.on_open = on_open
        self.on_close = on_close
        self.connect_timeout = float(connect_timeout)
        self.reconnect_cooldown_seconds = float(reconnect_cooldown_seconds)
        self.max_reconnect_cooldown_seconds = float(max_reconnect_cooldown_seconds)

        self._task: asyncio.Task[None] | None = None
        self._stop_evt = asyncio.Event()
        self._connected = False
        self._opened_once = False

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stop_evt.clear()
        self._task = asyncio.create_task(self._run(), name=f"stream:{self.url}")

    async def stop(self) -> None:
        self._stop_evt.set()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._connected = False

    # -------------------
    # Internal
    # -------------------

    async def _run(self) -> None:
        failures = 0
        while not self._stop_evt.is_set():
            received = False
            try:
                received = await self._consume_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("Stream %s failed: %s: %s", self.url, type(e).__name__, e)

            if self._connected:
                self._connected = False
                if self.on_close is not None:
                    await self._safe_callback(self.on_close())

            if self._stop_evt.is_set():
                break

            if received:
                failures = 0
            delay = min(self.reconnect_cooldown_seconds * (2 ** failures), self.max_reconnect_cooldown_seconds)
            failures += 1
            logger.info("Stream %s closed, reconnecting in %.1fs", self.url, delay)
            await self._cooldown(delay)

    async def _cooldown(self, delay: float) -> None:
        """Wait before reconnecting; returns early when stopped."""
        try:
            await asyncio.wait_for(self._stop_evt.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def _consume_once(self) -> bool:
        """Open the stream and pump packets until it ends. Returns True if any packet arrived."""
        received = False
        timeout = httpx.Timeout(self.connect_timeout, read=None)
        async with self.http.client.stream(
            "GET", self.url, headers={"Accept": "text/event-stream"}, timeout=timeout
        ) as resp:
            if not resp.is_success:
                await resp.aread()
                raise error_from_response(resp)

            reconnected = self._opened_once
            self._opened_once = True
            self._connected = True
            logger.info("Stream %s %s", self.url, "reconnected" if reconnected else "opened")
            if self.on_open is not None:
                await self._safe_callback(self.on_open(reconnected))

            async for packet in iter_sse_packets(resp):
                received = True
                try:
                    await self.handler(packet)
                except Exception as e:
                    logger.error(
                        "Stream packet handler failed for %r: %s: %s",
                        packet.get("type"), type(e).__name__, e, exc_info=True,
                    )
                if self._stop_evt.is_set():
                    break
        return received

    async def _safe_callback(self, coro: Awaitable[None]) -> None:
        try:
            await coro
        except Exception as e:
            logger.warning("Stream callback failed: %s: %s", type(e).__name__, e)
