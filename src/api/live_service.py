from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any

from src.cloud.api import MetaSyncApi
from src.domain.models import AccountInformation, Order, Position, SymbolPrice
from src.streaming.connection import MetaSyncConnection

logger = logging.getLogger(__name__)


class LiveAccountService:
    """
    Thread-safe live view of one trading account for FastAPI.

    - Runs a single persistent streaming connection in its own dedicated thread + event loop.
    - Reads come from the connection's local terminal state; no request hits the service per call.
    - Endpoints can await results without blocking the FastAPI event loop.
    """

    def __init__(
        self,
        cfg: dict[str, Any],
        account_id: str,
        *,
        symbols: list[str] | None = None,
        request_timeout: float = 8.0,
        retry_cooldown_seconds: float = 10.0,
        api_kwargs: dict[str, Any] | None = None,
    ) -> None:
        self.cfg = cfg
        self.account_id = account_id
        self.symbols = list(symbols or [])
        self.request_timeout = float(request_timeout)
        self.retry_cooldown_seconds = float(retry_cooldown_seconds)
        self.api_kwargs = dict(api_kwargs or {})

        self._thread: threading.Thread | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._api: MetaSyncApi | None = None
        self._connection: MetaSyncConnection | None = None
        self._main_task: asyncio.Task[None] | None = None

        self._ready_evt = threading.Event()
        self._stop_evt = threading.Event()

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_evt.clear()
        self._thread = threading.Thread(target=self._thread_main, name="metasync-loop", daemon=True)
        self._thread.start()
        # Wait briefly for the loop to be ready; do not block startup indefinitely.
        self._ready_evt.wait(timeout=5.0)

    def stop(self) -> None:
        self._stop_evt.set()
        if self._loop and self._loop.is_running():
            fut = asyncio.run_coroutine_threadsafe(self._shutdown(), self._loop)
            try:
                fut.result(timeout=5.0)
            except Exception as e:
                logger.warning("LiveAccountService shutdown did not complete cleanly: %s", e)
            self._loop.call_soon_threadsafe(self._loop.stop)
        if self._thread:
            self._thread.join(timeout=5.0)

    def is_ready(self) -> bool:
        return self._ready_evt.is_set()

    def is_synchronized(self) -> bool:
        return bool(self._connection and self._connection.is_synchronized())

    async def get_account_information(self) -> AccountInformation | None:
        return await self._run_on_loop(self._read(lambda s: s.account_information))

    async def get_positions(self) -> list[Position]:
        return await self._run_on_loop(self._read(lambda s: s.positions))

    async def get_orders(self) -> list[Order]:
        return await self._run_on_loop(self._read(lambda s: s.orders))

    async def get_price(self, symbol: str) -> SymbolPrice | None:
        return await self._run_on_loop(self._read(lambda s: s.price(symbol)))

    # -------------------
    # Internal
    # -------------------

    def _thread_main(self) -> None:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        self._loop = loop
        self._ready_evt.set()

        self._main_task = loop.create_task(self._connection_manager())
        try:
            loop.run_forever()
        finally:
            loop.close()

    async def _connection_manager(self) -> None:
        while not self._stop_evt.is_set():
            try:
                await self._connect_once()
                return
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("LiveAccountService connect failed: %s: %s", type(e).__name__, e)
                await self._close_api()
            await asyncio.sleep(self.retry_cooldown_seconds)

    async def _connect_once(self) -> None:
        self._api = MetaSyncApi.from_config(self.cfg, **self.api_kwargs)
        account = await self._api.metatrader_account_api.get_account(self.account_id)
        streaming = self.cfg.get("streaming") or {}
        if account.state != "DEPLOYED":
            await account.deploy()
        if account.connection_status != "CONNECTED":
            await account.wait_connected(float(streaming.get("connect_timeout_seconds", 300)))
        self._connection = await account.connect()
        await self._connection.wait_synchronized(float(streaming.get("synchronization_timeout_seconds", 300)))
        for symbol in self.symbols:
            await self._connection.subscribe_to_market_data(symbol)
        logger.info("LiveAccountService synchronized account %s", self.account_id)

    async def _close_api(self) -> None:
        api, self._api, self._connection = self._api, None, None
        if api is not None:
            await api.close()

    async def _shutdown(self) -> None:
        if self._main_task is not None and not self._main_task.done():
            self._main_task.cancel()
        await self._close_api()

    async def _read(self, getter: Any) -> Any:
        if self._connection is None or not self._connection.is_synchronized():
            raise RuntimeError("Account not synchronized")
        return getter(self._connection.terminal_state)

    async def _run_on_loop(self, coro: Any) -> Any:
        if not self._loop:
            coro.close()
            raise RuntimeError("Live account service not initialised")

        # Schedule on the service loop thread and await from the FastAPI loop without blocking.
        cfut = asyncio.run_coroutine_threadsafe(coro, self._loop)
        return await asyncio.wait_for(asyncio.wrap_future(cfut), timeout=self.request_timeout)
