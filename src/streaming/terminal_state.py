from __future__ import annotations

from src.domain.models import (
    AccountInformation,
    Order,
    Position,
    SymbolPrice,
    SymbolSpecification,
)
from src.streaming.listener import SynchronizationListener


class TerminalState(SynchronizationListener):
    """Local replica of the remote terminal, kept current by stream events."""

    def __init__(self) -> None:
        self.connected = False
        self.connected_to_broker = False
        self.account_information: AccountInformation | None = None
        self._positions: dict[str, Position] = {}
        self._orders: dict[str, Order] = {}
        self._specifications: dict[str, SymbolSpecification] = {}
        self._prices: dict[str, SymbolPrice] = {}

    @property
    def positions(self) -> list[Position]:
        return list(self._positions.values())

    @property
    def orders(self) -> list[Order]:
        return list(self._orders.values())

    @property
    def specifications(self) -> list[SymbolSpecification]:
        return list(self._specifications.values())

    def specification(self, symbol: str) -> SymbolSpecification | None:
        return self._specifications.get(symbol)

    def price(self, symbol: str) -> SymbolPrice | None:
        return self._prices.get(symbol)

    async def on_connected(self, instance_index: str, replicas: int) -> None:
        self.connected = True

    async def on_disconnected(self, instance_index: str) -> None:
        self.connected = False
        self.connected_to_broker = False

    async def on_broker_connection_status_changed(self, instance_index: str, connected: bool) -> None:
        self.connected_to_broker = bool(connected)

    async def on_account_information_updated(
        self, instance_index: str, account_information: AccountInformation
    ) -> None:
        self.account_information = account_information

    async def on_positions_replaced(self, instance_index: str, positions: list[Position]) -> None:
        self._positions = {p.id: p for p in positions}

    async def on_position_updated(self, instance_index: str, position: Position) -> None:
        self._positions[position.id] = position

    async def on_position_removed(self, instance_index: str, position_id: str) -> None:
        self._positions.pop(position_id, None)

    async def on_orders_replaced(self, instance_index: str, orders: list[Order]) -> None:
        self._orders = {o.id: o for o in orders}

    async def on_order_updated(self, instance_index: str, order: Order) -> None:
        self._orders[order.id] = order

    async def on_order_completed(self, instance_index: str, order_id: str) -> None:
        self._orders.pop(order_id, None)

    async def on_symbol_specification_updated(
        self, instance_index: str, specification: SymbolSpecification
    ) -> None:
        self._specifications[specification.symbol] = specification

    async def on_symbol_price_updated(self, instance_index: str, price: SymbolPrice) -> None:
        self._prices[price.symbol] = price
