from __future__ import annotations

import logging
from dataclasses import asdict
from datetime import datetime
from urllib.parse import quote

import pandas as pd

from src.cloud.http_client import HttpClient
from src.domain.models import Candle, Tick, format_time

logger = logging.getLogger(__name__)

TIMEFRAMES = (
    "1m", "2m", "3m", "4m", "5m", "6m", "10m", "12m", "15m", "20m", "30m",
    "1h", "2h", "3h", "4h", "6h", "8h", "12h",
    "1d", "1w", "1mn",
)


class HistoricalMarketDataClient:
    """Reads historical candles and ticks for a deployed account."""

    def __init__(self, http: HttpClient, base_url: str) -> None:
        self.http = http
        self.base_url = base_url.rstrip("/")

    def _url(self, account_id: str, symbol: str, suffix: str) -> str:
        return (
            f"{self.base_url}/users/current/accounts/{account_id}"
            f"/historical-market-data/symbols/{quote(symbol, safe='')}{suffix}"
        )

    async def get_historical_candles(
        self,
        account_id: str,
        symbol: str,
        timeframe: str,
        start_time: datetime | None = None,
        limit: int | None = None,
    ) -> list[Candle]:
        """
        Return up to `limit` candles ending at `start_time` (latest candles when omitted), oldest first.
        """
        if timeframe not in TIMEFRAMES:
            raise ValueError(f"Unsupported timeframe {timeframe!r}; expected one of {', '.join(TIMEFRAMES)}")
        rows = await self.http.get(
            self._url(account_id, symbol, f"/timeframes/{timeframe}/candles"),
            params={"startTime": format_time(start_time), "limit": limit},
        ) or []
        candles = [Candle.from_dict({"symbol": symbol, "timeframe": timeframe, **r}) for r in rows if r.get("time")]
        if len(candles) < len(rows):
            logger.warning("Skipped %d %s candles without a time for %s", len(rows) - len(candles), timeframe, symbol)
        candles.sort(key=lambda c: c.time)
        logger.debug("Fetched %d %s candles for %s", len(candles), timeframe, symbol)
        return candles

    async def get_historical_ticks(
        self,
        account_id: str,
        symbol: str,
        start_time: datetime | None = None,
        offset: int | None = None,
        limit: int | None = None,
    ) -> list[Tick]:
        rows = await self.http.get(
            self._url(account_id, symbol, "/ticks"),
            params={"startTime": format_time(start_time), "offset": offset, "limit": limit},
        ) or []
        return [Tick.from_dict({"symbol": symbol, **r}) for r in rows]


def candles_to_frame(candles: list[Candle]) -> pd.DataFrame:
    """Candles as a DataFrame indexed by candle open time."""
    if not candles:
        return pd.DataFrame()
    df = pd.DataFrame([asdict(c) for c in candles])
    df.set_index("time", inplace=True)
    df.sort_index(inplace=True)
    return df
