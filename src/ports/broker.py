from __future__ import annotations

from typing import Protocol

from src.domain.models import AccountInformation, Order, Position, SymbolPrice


class LiveAccountPort(Protocol):
    def is_ready(self) -> bool: ...

    def is_synchronized(self) -> bool: ...

    async def get_account_information(self) -> AccountInformation | None: ...

    async def get_positions(self) -> list[Position]: ...

    async def get_orders(self) -> list[Order]: ...

    async def get_price(self, symbol: str) -> SymbolPrice | None: ...
