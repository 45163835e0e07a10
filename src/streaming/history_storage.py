from __future__ import annotations

from datetime import datetime, timezone

from src.domain.models import Deal, Order
from src.streaming.listener import SynchronizationListener

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


class HistoryStorage(SynchronizationListener):
    """
    In-memory store of history orders and deals received over the stream.

    The newest stored timestamps tell the server where to resume history replication
    after a reconnect, so only missing records are sent again.
    """

    def __init__(self) -> None:
        self._history_orders: dict[str, Order] = {}
        self._deals: dict[str, Deal] = {}
        self.order_synchronization_finished = False
        self.deal_synchronization_finished = False

    @property
    def history_orders(self) -> list[Order]:
        return sorted(self._history_orders.values(), key=lambda o: (o.done_time or o.time or _EPOCH, o.id))

    @property
    def deals(self) -> list[Deal]:
        return sorted(self._deals.values(), key=lambda d: (d.time or _EPOCH, d.id))

    def last_history_order_time(self) -> datetime | None:
        times = [o.done_time for o in self._history_orders.values() if o.done_time is not None]
        return max(times) if times else None

    def last_deal_time(self) -> datetime | None:
        times = [d.time for d in self._deals.values() if d.time is not None]
        return max(times) if times else None

    def clear(self) -> None:
        self._history_orders.clear()
        self._deals.clear()
        self.order_synchronization_finished = False
        self.deal_synchronization_finished = False

    async def on_synchronization_started(self, instance_index: str, synchronization_id: str) -> None:
        self.order_synchronization_finished = False
        self.deal_synchronization_finished = False

    async def on_history_order_added(self, instance_index: str, history_order: Order) -> None:
        self._history_orders[history_order.id] = history_order

    async def on_deal_added(self, instance_index: str, deal: Deal) -> None:
        self._deals[deal.id] = deal

    async def on_history_orders_synchronized(self, instance_index: str, synchronization_id: str) -> None:
        self.order_synchronization_finished = True

    async def on_deals_synchronized(self, instance_index: str, synchronization_id: str) -> None:
        self.deal_synchronization_finished = True
