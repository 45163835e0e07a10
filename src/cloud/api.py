from __future__ import annotations

import logging
from typing import Any

import httpx

from src.cloud.accounts import MetatraderAccount, MetatraderAccountApi, MetatraderAccountClient
from src.cloud.historical_market_data import HistoricalMarketDataClient
from src.cloud.http_client import DEFAULT_REQUEST_TIMEOUT_SECONDS, HttpClient
from src.cloud.provisioning_profiles import ProvisioningProfileClient
from src.streaming.connection import MetaSyncConnection

logger = logging.getLogger(__name__)

DEFAULT_DOMAIN = "agiliumtrade.agiliumtrade.ai"


class MetaSyncApi:
    """
    Entry point to the hosted trading-terminal service.

    Owns the shared HTTP transport and one streaming connection per account.
    """

    def __init__(
        self,
        token: str,
        *,
        domain: str = DEFAULT_DOMAIN,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        retry_opts: dict[str, Any] | None = None,
        stream_opts: dict[str, Any] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not token:
            raise ValueError("An API token is required")
        retry_opts = retry_opts or {}
        self.domain = domain
        self.provisioning_api_url = f"https://mt-provisioning-api-v1.{domain}"
        self.client_api_url = f"https://mt-client-api-v1.{domain}"
        self.market_data_api_url = f"https://mt-market-data-client-api-v1.{domain}"
        self.stream_opts = dict(stream_opts or {})

        self.http = HttpClient(
            token,
            request_timeout=request_timeout,
            retries=int(retry_opts.get("retries", 5)),
            min_retry_delay=float(retry_opts.get("min_retry_delay_seconds", 1)),
            max_retry_delay=float(retry_opts.get("max_retry_delay_seconds", 30)),
            transport=transport,
        )
        self.provisioning_profile_api = ProvisioningProfileClient(self.http, self.provisioning_api_url)
        self.metatrader_account_api = MetatraderAccountApi(
            MetatraderAccountClient(self.http, self.provisioning_api_url), self
        )
        self.historical_market_data_api = HistoricalMarketDataClient(self.http, self.market_data_api_url)
        self._connections: dict[str, MetaSyncConnection] = {}

    @classmethod
    def from_config(cls, cfg: dict[str, Any], **kwargs: Any) -> MetaSyncApi:
        api_cfg = cfg.get("api") or {}
        return cls(
            str(api_cfg.get("token") or ""),
            domain=str(api_cfg.get("domain") or DEFAULT_DOMAIN),
            request_timeout=float(api_cfg.get("request_timeout_seconds", DEFAULT_REQUEST_TIMEOUT_SECONDS)),
            retry_opts=api_cfg,
            stream_opts=cfg.get("streaming") or {},
            **kwargs,
        )

    async def __aenter__(self) -> MetaSyncApi:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def get_connection(self, account: MetatraderAccount) -> MetaSyncConnection:
        connection = self._connections.get(account.id)
        if connection is None:
            connection = MetaSyncConnection(self, account)
            self._connections[account.id] = connection
        return connection

    async def close_connection(self, account_id: str) -> None:
        connection = self._connections.get(account_id)
        if connection is not None:
            await connection.close()

    async def close(self) -> None:
        for connection in list(self._connections.values()):
            await connection.close()
        await self.http.close()
        logger.debug("MetaSyncApi closed")

    def _forget_connection(self, account_id: str) -> None:
        self._connections.pop(account_id, None)
