"""In-process stand-in for the hosted service, built on httpx.MockTransport."""

from __future__ import annotations

import asyncio
import json
from typing import Any, Callable

import httpx

from src.cloud.api import MetaSyncApi

DOMAIN = "example.test"
PROVISIONING = f"https://mt-provisioning-api-v1.{DOMAIN}"
CLIENT = f"https://mt-client-api-v1.{DOMAIN}"
MARKET_DATA = f"https://mt-market-data-client-api-v1.{DOMAIN}"

Responder = Callable[[httpx.Request], httpx.Response]


def sse_body(*packets: dict[str, Any]) -> bytes:
    return "".join(f"data: {json.dumps(p)}\n\n" for p in packets).encode()


class FakeService:
    """
    Routes requests by (method, url-without-query) to queued responses.

    A route holds a list of responses; each request pops the first one, and the last one is reused.
    Prefix routes catch URLs that embed values only known at call time (e.g. "now").
    Unrouted requests get a 404 so tests fail loudly.
    """

    def __init__(self) -> None:
        self.routes: dict[tuple[str, str], list[httpx.Response | Responder]] = {}
        self.prefix_routes: list[tuple[str, str, httpx.Response]] = []
        self.requests: list[httpx.Request] = []

    def add(self, method: str, url: str, *responses: httpx.Response | Responder) -> None:
        self.routes.setdefault((method, url), []).extend(responses)

    def json(self, method: str, url: str, body: Any, status_code: int = 200) -> None:
        self.add(method, url, httpx.Response(status_code, json=body))

    def json_prefix(self, method: str, prefix: str, body: Any, status_code: int = 200) -> None:
        self.prefix_routes.append((method, prefix, httpx.Response(status_code, json=body)))

    def calls(self, method: str, url: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method and str(r.url.copy_with(query=None)) == url]

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = (request.method, str(request.url.copy_with(query=None)))
        queue = self.routes.get(key)
        if not queue:
            for method, prefix, response in self.prefix_routes:
                if method == request.method and key[1].startswith(prefix):
                    return response
            return httpx.Response(404, json={"error": "NotFoundError", "message": f"No route for {key}"})
        responder = queue.pop(0) if len(queue) > 1 else queue[0]
        if callable(responder) and not isinstance(responder, httpx.Response):
            return responder(request)
        return responder

    def api(self, **kwargs: Any) -> MetaSyncApi:
        return MetaSyncApi(
            "test-token",
            domain=DOMAIN,
            retry_opts={"retries": 2, "min_retry_delay_seconds": 0, "max_retry_delay_seconds": 0},
            stream_opts={"reconnect_cooldown_seconds": 0, "max_reconnect_cooldown_seconds": 0},
            transport=httpx.MockTransport(self.handle),
            **kwargs,
        )


def account_row(account_id: str = "acc-1", **overrides: Any) -> dict[str, Any]:
    row = {
        "_id": account_id,
        "name": "Test account",
        "type": "cloud",
        "login": "50194988",
        "server": "ICMarketsSC-Demo",
        "provisioningProfileId": "profile-1",
        "synchronizationMode": "automatic",
        "state": "DEPLOYED",
        "connectionStatus": "CONNECTED",
        "magic": 1000,
    }
    row.update(overrides)
    return row


def sync_packets(synchronization_id: str) -> list[dict[str, Any]]:
    return [
        {"type": "synchronizationStarted", "synchronizationId": synchronization_id},
        {
            "type": "accountInformation",
            "accountInformation": {
                "broker": "True ECN Trading Ltd",
                "currency": "USD",
                "server": "ICMarketsSC-Demo",
                "balance": 7319.9,
                "equity": 7306.6,
                "margin": 184.1,
                "freeMargin": 7120.2,
                "leverage": 100,
                "marginLevel": 3967.6,
            },
        },
        {
            "type": "positions",
            "synchronizationId": synchronization_id,
            "positions": [
                {"id": "46214692", "type": "POSITION_TYPE_BUY", "symbol": "GBPUSD", "volume": 0.07,
                 "openPrice": 1.26101, "time": "2020-04-15T02:45:06.521Z"}
            ],
        },
        {"type": "orders", "synchronizationId": synchronization_id, "orders": []},
        {
            "type": "historyOrders",
            "historyOrders": [
                {"id": "46214692", "type": "ORDER_TYPE_BUY", "state": "ORDER_STATE_FILLED", "symbol": "GBPUSD",
                 "volume": 0.07, "currentVolume": 0, "time": "2020-04-15T02:45:06.260Z",
                 "doneTime": "2020-04-15T02:45:06.521Z", "positionId": "46214692"}
            ],
        },
        {
            "type": "deals",
            "deals": [
                {"id": "33230099", "type": "DEAL_TYPE_BUY", "time": "2020-04-15T02:45:06.521Z",
                 "symbol": "GBPUSD", "volume": 0.07, "price": 1.26101, "positionId": "46214692"}
            ],
        },
        {"type": "orderSynchronizationFinished", "synchronizationId": synchronization_id},
        {"type": "dealSynchronizationFinished", "synchronizationId": synchronization_id},
    ]


class FakeStream:
    """
    Synchronization stream responder.

    Each open sends `authenticated`, waits for the client's synchronize request, replies with the
    full synchronization sequence for that id, then sends `extra_packets`. The first open ends
    there when `drop_first` is set (to exercise reconnects); otherwise the stream stays open.
    """

    def __init__(self, service: FakeService, account_id: str = "acc-1", *, extra_packets=(), drop_first=False):
        self.service = service
        self.sync_url = f"{CLIENT}/users/current/accounts/{account_id}/synchronize"
        self.extra_packets = list(extra_packets)
        self.drop_first = drop_first
        self.opened = 0
        self.sync_ids: list[str] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.opened += 1
        return httpx.Response(
            200, headers={"content-type": "text/event-stream"}, content=self._body(self.opened)
        )

    async def _body(self, opening: int):
        seen = len(self.service.calls("POST", self.sync_url))
        yield b"retry: 1000\n\n"
        yield sse_body({"type": "authenticated", "replicas": 1})
        for _ in range(500):
            posts = self.service.calls("POST", self.sync_url)
            if len(posts) > seen:
                break
            await asyncio.sleep(0.01)
        else:
            return
        sync_id = json.loads(posts[-1].content)["synchronizationId"]
        self.sync_ids.append(sync_id)
        for packet in sync_packets(sync_id):
            yield sse_body(packet)
        for packet in self.extra_packets:
            yield sse_body(packet)
        if self.drop_first and opening == 1:
            return
        while True:
            yield b": keep-alive\n\n"
            await asyncio.sleep(0.05)
