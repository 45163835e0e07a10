from __future__ import annotations

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


class SynchronizationListener:
    """
    Receives push events from a streaming connection.

    Subclass and override the hooks you care about; every hook defaults to a no-op.
    `instance_index` identifies the server-side replica that produced the event.
    """

    async def on_connected(self, instance_index: str, replicas: int) -> None:
        pass

    async def on_disconnected(self, instance_index: str) -> None:
        pass

    async def on_broker_connection_status_changed(self, instance_index: str, connected: bool) -> None:
        pass

    async def on_synchronization_started(self, instance_index: str, synchronization_id: str) -> None:
        pass

    async def on_account_information_updated(
        self, instance_index: str, account_information: AccountInformation
    ) -> None:
        pass

    async def on_positions_replaced(self, instance_index: str, positions: list[Position]) -> None:
        pass

    async def on_positions_synchronized(self, instance_index: str, synchronization_id: str) -> None:
        pass

    async def on_position_updated(self, instance_index: str, position: Position) -> None:
        pass

    async def on_position_removed(self, instance_index: str, position_id: str) -> None:
        pass

    async def on_orders_replaced(self, instance_index: str, orders: list[Order]) -> None:
        pass

    async def on_pending_orders_synchronized(self, instance_index: str, synchronization_id: str) -> None:
        pass

    async def on_order_updated(self, instance_index: str, order: Order) -> None:
        pass

    async def on_order_completed(self, instance_index: str, order_id: str) -> None:
        pass

    async def on_history_order_added(self, instance_index: str, history_order: Order) -> None:
        pass

    async def on_history_orders_synchronized(self, instance_index: str, synchronization_id: str) -> None:
        pass

    async def on_deal_added(self, instance_index: str, deal: Deal) -> None:
        pass

    async def on_deals_synchronized(self, instance_index: str, synchronization_id: str) -> None:
        pass

    async def on_symbol_specification_updated(
        self, instance_index: str, specification: SymbolSpecification
    ) -> None:
        pass

    async def on_symbol_price_updated(self, instance_index: str, price: SymbolPrice) -> None:
        pass

    async def on_candles_updated(self, instance_index: str, candles: list[Candle]) -> None:
        pass

    async def on_ticks_updated(self, instance_index: str, ticks: list[Tick]) -> None:
        pass

    async def on_books_updated(self, instance_index: str, books: list[Book]) -> None:
        pass

    async def on_subscription_downgraded(
        self,
        instance_index: str,
        symbol: str,
        updates: list[MarketDataSubscription] | None,
        unsubscriptions: list[MarketDataUnsubscription] | None,
    ) -> None:
        pass
