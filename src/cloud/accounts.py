from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable

from src.cloud.http_client import HttpClient
from src.domain.errors import ApiTimeoutError, NotFoundError
from src.domain.models import AccountInfo, Candle, Tick

if TYPE_CHECKING:
    from src.cloud.api import MetaSyncApi
    from src.streaming.connection import MetaSyncConnection

logger = logging.getLogger(__name__)

DEFAULT_WAIT_TIMEOUT_SECONDS = 300
DEFAULT_WAIT_INTERVAL_MS = 1000


class MetatraderAccountClient:
    """REST client for trading accounts hosted by the provisioning API."""

    def __init__(self, http: HttpClient, base_url: str) -> None:
        self.http = http
        self.base_url = base_url.rstrip("/")

    def _url(self, suffix: str = "") -> str:
        return f"{self.base_url}/users/current/accounts{suffix}"

    async def get_accounts(self, filters: dict[str, Any] | None = None) -> list[AccountInfo]:
        rows = await self.http.get(self._url(), params=filters) or []
        return [AccountInfo.from_dict(r) for r in rows]

    async def get_account(self, account_id: str) -> AccountInfo:
        return AccountInfo.from_dict(await self.http.get(self._url(f"/{account_id}")) or {})

    async def create_account(self, data: dict[str, Any]) -> str:
        created = await self.http.post(self._url(), json=data) or {}
        account_id = created.get("id") or created.get("_id")
        if not account_id:
            raise ValueError(f"Account creation returned no id: {created!r}")
        logger.info("Created account %s for login %s", account_id, data.get("login"))
        return str(account_id)

    async def deploy_account(self, account_id: str) -> None:
        await self.http.post(self._url(f"/{account_id}/deploy"))

    async def undeploy_account(self, account_id: str) -> None:
        await self.http.post(self._url(f"/{account_id}/undeploy"))

    async def redeploy_account(self, account_id: str) -> None:
        await self.http.post(self._url(f"/{account_id}/redeploy"))

    async def update_account(self, account_id: str, data: dict[str, Any]) -> None:
        await self.http.put(self._url(f"/{account_id}"), json=data)

    async def delete_account(self, account_id: str) -> None:
        await self.http.delete(self._url(f"/{account_id}"))


class MetatraderAccountApi:
    """Entity-level account API: wraps `MetatraderAccountClient` rows into `MetatraderAccount` objects."""

    def __init__(self, client: MetatraderAccountClient, api: MetaSyncApi) -> None:
        self.client = client
        self._api = api

    async def get_accounts(self, filters: dict[str, Any] | None = None) -> list[MetatraderAccount]:
        return [MetatraderAccount(info, self.client, self._api) for info in await self.client.get_accounts(filters)]

    async def get_account(self, account_id: str) -> MetatraderAccount:
        return MetatraderAccount(await self.client.get_account(account_id), self.client, self._api)

    async def create_account(self, data: dict[str, Any]) -> MetatraderAccount:
        account_id = await self.client.create_account(data)
        return await self.get_account(account_id)


class MetatraderAccount:
    """A trading account with lifecycle operations (deploy, wait, connect, ...)."""

    def __init__(self, info: AccountInfo, client: MetatraderAccountClient, api: MetaSyncApi) -> None:
        self._info = info
        self._client = client
        self._api = api

    def __repr__(self) -> str:
        return (
            f"MetatraderAccount(id={self.id!r}, login={self.login!r}, "
            f"state={self.state!r}, connection_status={self.connection_status!r})"
        )

    @property
    def info(self) -> AccountInfo:
        return self._info

    @property
    def id(self) -> str:
        return self._info.id

    @property
    def name(self) -> str:
        return self._info.name

    @property
    def login(self) -> str:
        return self._info.login

    @property
    def server(self) -> str:
        return self._info.server

    @property
    def state(self) -> str:
        return self._info.state

    @property
    def connection_status(self) -> str:
        return self._info.connection_status

    @property
    def synchronization_mode(self) -> str | None:
        return self._info.synchronization_mode

    @property
    def provisioning_profile_id(self) -> str | None:
        return self._info.provisioning_profile_id

    async def reload(self) -> None:
        self._info = await self._client.get_account(self.id)

    async def deploy(self) -> None:
        logger.info("Deploying account %s", self.id)
        await self._client.deploy_account(self.id)
        await self.reload()

    async def undeploy(self) -> None:
        logger.info("Undeploying account %s", self.id)
        await self._api.close_connection(self.id)
        await self._client.undeploy_account(self.id)
        await self.reload()

    async def redeploy(self) -> None:
        logger.info("Redeploying account %s", self.id)
        await self._client.redeploy_account(self.id)
        await self.reload()

    async def remove(self) -> None:
        logger.info("Removing account %s", self.id)
        await self._api.close_connection(self.id)
        await self._client.delete_account(self.id)
        try:
            await self.reload()
        except NotFoundError:
            pass

    async def update(self, data: dict[str, Any]) -> None:
        await self._client.update_account(self.id, data)
        await self.reload()

    async def wait_deployed(
        self,
        timeout_in_seconds: float = DEFAULT_WAIT_TIMEOUT_SECONDS,
        interval_in_milliseconds: int = DEFAULT_WAIT_INTERVAL_MS,
    ) -> None:
        await self._wait_until(
            lambda: self.state == "DEPLOYED", "deployed", timeout_in_seconds, interval_in_milliseconds
        )

    async def wait_undeployed(
        self,
        timeout_in_seconds: float = DEFAULT_WAIT_TIMEOUT_SECONDS,
        interval_in_milliseconds: int = DEFAULT_WAIT_INTERVAL_MS,
    ) -> None:
        await self._wait_until(
            lambda: self.state == "UNDEPLOYED", "undeployed", timeout_in_seconds, interval_in_milliseconds
        )

    async def wait_connected(
        self,
        timeout_in_seconds: float = DEFAULT_WAIT_TIMEOUT_SECONDS,
        interval_in_milliseconds: int = DEFAULT_WAIT_INTERVAL_MS,
    ) -> None:
        await self._wait_until(
            lambda: self.connection_status == "CONNECTED",
            "connected to broker",
            timeout_in_seconds,
            interval_in_milliseconds,
        )

    async def wait_removed(
        self,
        timeout_in_seconds: float = DEFAULT_WAIT_TIMEOUT_SECONDS,
        interval_in_milliseconds: int = DEFAULT_WAIT_INTERVAL_MS,
    ) -> None:
        deadline = time.monotonic() + float(timeout_in_seconds)
        while True:
            try:
                await self.reload()
            except NotFoundError:
                return
            if time.monotonic() >= deadline:
                raise ApiTimeoutError(
                    f"Timed out waiting for account {self.id} to be removed (state={self.state})"
                )
            await asyncio.sleep(interval_in_milliseconds / 1000.0)

    async def connect(self) -> MetaSyncConnection:
        """Return the streaming connection for this account, opening it on first use."""
        connection = self._api.get_connection(self)
        await connection.connect()
        return connection

    async def get_historical_candles(
        self,
        symbol: str,
        timeframe: str,
        start_time: datetime | None = None,
        limit: int | None = None,
    ) -> list[Candle]:
        return await self._api.historical_market_data_api.get_historical_candles(
            self.id, symbol, timeframe, start_time=start_time, limit=limit
        )

    async def get_historical_ticks(
        self,
        symbol: str,
        start_time: datetime | None = None,
        offset: int | None = None,
        limit: int | None = None,
    ) -> list[Tick]:
        return await self._api.historical_market_data_api.get_historical_ticks(
            self.id, symbol, start_time=start_time, offset=offset, limit=limit
        )

    # -------------------
    # Internal
    # -------------------

    async def _wait_until(
        self,
        predicate: Callable[[], bool],
        description: str,
        timeout_in_seconds: float,
        interval_in_milliseconds: int,
    ) -> None:
        deadline = time.monotonic() + float(timeout_in_seconds)
        await self.reload()
        while not predicate():
            if time.monotonic() >= deadline:
                raise ApiTimeoutError(
                    f"Timed out waiting for account {self.id} to be {description} "
                    f"(state={self.state}, connection_status={self.connection_status})"
                )
            await asyncio.sleep(interval_in_milliseconds / 1000.0)
            await self.reload()
        logger.info("Account %s is %s", self.id, description)
