import asyncio
import json
from datetime import datetime, timezone

import httpx
import pytest

from tests.fake_service import CLIENT, PROVISIONING, FakeService, FakeStream, account_row
from src.domain.errors import ApiTimeoutError, InternalError, NotConnectedError, TradeError
from src.domain.models import MarketDataSubscription, MarketDataUnsubscription, TradeOptions
from src.streaming.listener import SynchronizationListener

ACCOUNT = f"{PROVISIONING}/users/current/accounts/acc-1"
BASE = f"{CLIENT}/users/current/accounts/acc-1"
STREAM = f"{BASE}/synchronization/stream"
SYNCHRONIZE = f"{BASE}/synchronize"


def _service(**stream_kwargs) -> tuple[FakeService, FakeStream]:
    svc = FakeService()
    svc.json("GET", ACCOUNT, account_row())
    svc.json("POST", SYNCHRONIZE, None, status_code=204)
    stream = FakeStream(svc, **stream_kwargs)
    svc.add("GET", STREAM, stream)
    return svc, stream


async def _wait_for(predicate, timeout=5.0):
    for _ in range(int(timeout / 0.01)):
        if predicate():
            return
        await asyncio.sleep(0.01)
    raise AssertionError("condition not reached")


async def _stalled_body():
    # Authenticates but never finishes synchronizing.
    yield b'data: {"type": "authenticated"}\n\n'
    while True:
        yield b": keep-alive\n\n"
        await asyncio.sleep(0.05)


class PriceRecorder(SynchronizationListener):
    def __init__(self):
        self.prices = []

    async def on_symbol_price_updated(self, instance_index, price):
        self.prices.append(price)


def test_connect_synchronizes_terminal_state():
    svc, stream = _service(
        extra_packets=[{"type": "prices", "prices": [{"symbol": "EURUSD", "bid": 1.1, "ask": 1.2}]}]
    )
    recorder = PriceRecorder()

    async def go():
        async with svc.api() as api:
            account = await api.metatrader_account_api.get_account("acc-1")
            connection = await account.connect()
            connection.add_synchronization_listener(recorder)
            await connection.wait_synchronized(timeout_in_seconds=5, interval_in_milliseconds=10)
            assert connection.is_synchronized()
            assert connection.synchronization_id == stream.sync_ids[0]
            state = connection.terminal_state
            assert state.connected
            assert state.account_information.balance == 7319.9
            assert [p.id for p in state.positions] == ["46214692"]
            assert [d.id for d in connection.history_storage.deals] == ["33230099"]
            await _wait_for(lambda: recorder.prices)
            # Same account returns the same connection object.
            assert await account.connect() is connection

    asyncio.run(go())
    assert recorder.prices[0].symbol == "EURUSD"
    assert stream.opened == 1
    body = json.loads(svc.calls("POST", SYNCHRONIZE)[0].content)
    # A fresh history store asks for everything.
    assert set(body) == {"synchronizationId"}


def test_reconnect_resynchronizes_and_restores_subscriptions():
    svc, stream = _service(drop_first=True)
    subscribe = f"{BASE}/symbols/EURUSD/subscribe"
    svc.json("POST", subscribe, None, status_code=204)

    async def go():
        async with svc.api() as api:
            account = await api.metatrader_account_api.get_account("acc-1")
            connection = api.get_connection(account)
            await connection.subscribe_to_market_data(
                "EURUSD", [MarketDataSubscription(type="quotes", interval_in_milliseconds=5000)]
            )
            await connection.connect()
            await _wait_for(lambda: len(stream.sync_ids) == 2 and connection.is_synchronized())
            assert connection.synchronization_id == stream.sync_ids[1]
            await _wait_for(lambda: len(svc.calls("POST", subscribe)) == 3)

    asyncio.run(go())
    assert stream.opened == 2
    second = json.loads(svc.calls("POST", SYNCHRONIZE)[1].content)
    # Resume history replication from the newest records already held.
    assert second["startingHistoryOrderTime"] == "2020-04-15T02:45:06.521Z"
    assert second["startingDealTime"] == "2020-04-15T02:45:06.521Z"
    replayed = json.loads(svc.calls("POST", subscribe)[-1].content)
    assert replayed == {"subscriptions": [{"type": "quotes", "intervalInMilliseconds": 5000}]}


def test_wait_synchronized_requires_connect_and_times_out():
    svc = FakeService()
    svc.json("GET", ACCOUNT, account_row())
    svc.json("POST", SYNCHRONIZE, None, status_code=204)
    svc.add("GET", STREAM, lambda request: httpx.Response(
        200, headers={"content-type": "text/event-stream"}, content=_stalled_body()
    ))

    async def go():
        async with svc.api() as api:
            account = await api.metatrader_account_api.get_account("acc-1")
            connection = api.get_connection(account)
            with pytest.raises(NotConnectedError):
                await connection.wait_synchronized(timeout_in_seconds=0.05)
            await connection.connect()
            with pytest.raises(ApiTimeoutError):
                await connection.wait_synchronized(timeout_in_seconds=0.1, interval_in_milliseconds=10)
            await connection.close()
            with pytest.raises(NotConnectedError):
                await connection.connect()

    asyncio.run(go())


def test_subscription_registry_merges_downgrades_and_unsubscribes():
    svc = FakeService()
    svc.json("GET", ACCOUNT, account_row())
    svc.json("POST", f"{BASE}/symbols/EURUSD/subscribe", None, status_code=204)
    svc.json("POST", f"{BASE}/symbols/EURUSD/unsubscribe", None, status_code=204)

    async def go():
        async with svc.api() as api:
            account = await api.metatrader_account_api.get_account("acc-1")
            connection = api.get_connection(account)
            await connection.subscribe_to_market_data("EURUSD")
            await connection.subscribe_to_market_data(
                "EURUSD", [{"type": "candles", "timeframe": "1m"}, {"type": "quotes", "intervalInMilliseconds": 1000}]
            )
            assert [s.type for s in connection.subscriptions("EURUSD")] == ["quotes", "candles"]
            assert connection.subscriptions("EURUSD")[0].interval_in_milliseconds == 1000

            connection._apply_downgrade(
                "EURUSD",
                [MarketDataSubscription(type="quotes", interval_in_milliseconds=10000)],
                [MarketDataUnsubscription(type="candles")],
            )
            assert connection.subscriptions("EURUSD") == [
                MarketDataSubscription(type="quotes", interval_in_milliseconds=10000)
            ]

            await connection.unsubscribe_from_market_data("EURUSD", [MarketDataUnsubscription(type="quotes")])
            assert connection.subscribed_symbols == []

    asyncio.run(go())
    first = json.loads(svc.calls("POST", f"{BASE}/symbols/EURUSD/subscribe")[0].content)
    assert first == {"subscriptions": [{"type": "quotes"}]}
    unsub = json.loads(svc.calls("POST", f"{BASE}/symbols/EURUSD/unsubscribe")[0].content)
    assert unsub == {"unsubscriptions": [{"type": "quotes"}]}


def test_read_queries_hit_client_api():
    svc = FakeService()
    svc.json("GET", ACCOUNT, account_row())
    svc.json("GET", f"{BASE}/account-information", {"broker": "b", "currency": "USD", "balance": 10, "equity": 9})
    svc.json("GET", f"{BASE}/positions", [{"id": "1", "symbol": "GBPUSD", "type": "POSITION_TYPE_BUY"}])
    svc.json("GET", f"{BASE}/orders", [])
    svc.json("GET", f"{BASE}/history-orders/ticket/1234567", {"historyOrders": [{"id": "1234567"}]})
    svc.json("GET", f"{BASE}/history-deals/position/1234567", [{"id": "d1", "type": "DEAL_TYPE_BUY"}])
    start = datetime(2020, 1, 1, tzinfo=timezone.utc)
    end = datetime(2020, 4, 1, tzinfo=timezone.utc)
    deals_by_time = f"{BASE}/history-deals/time/2020-01-01T00:00:00.000Z/2020-04-01T00:00:00.000Z"
    svc.json("GET", deals_by_time, {"deals": [], "synchronizing": False})
    svc.json("GET", f"{BASE}/symbols/GBPUSD/specification", {"symbol": "GBPUSD", "tickSize": 0.00001})
    svc.json("GET", f"{BASE}/symbols/GBPUSD/current-price", {"symbol": "GBPUSD", "bid": 1.26, "ask": 1.27})

    async def go():
        async with svc.api() as api:
            account = await api.metatrader_account_api.get_account("acc-1")
            connection = api.get_connection(account)
            return (
                await connection.get_account_information(),
                await connection.get_positions(),
                await connection.get_orders(),
                await connection.get_history_orders_by_ticket("1234567"),
                await connection.get_deals_by_position("1234567"),
                await connection.get_deals_by_time_range(start, end),
                await connection.get_symbol_specification("GBPUSD"),
                await connection.get_symbol_price("GBPUSD"),
            )

    info, positions, orders, history, deals, deals_in_range, specification, price = asyncio.run(go())
    assert info.balance == 10
    assert positions[0].symbol == "GBPUSD"
    assert orders == []
    assert history[0].id == "1234567"
    assert deals[0].id == "d1"
    assert deals_in_range == []
    assert specification.symbol == "GBPUSD"
    assert price.ask == 1.27
    params = svc.calls("GET", deals_by_time)[0].url.params
    assert params["offset"] == "0" and params["limit"] == "1000"


def test_trade_success_returns_result_and_failure_raises():
    svc = FakeService()
    svc.json("GET", ACCOUNT, account_row())
    svc.json(
        "POST",
        f"{BASE}/trade",
        {"numericCode": 10009, "stringCode": "TRADE_RETCODE_DONE", "message": "Request completed",
         "orderId": "46870472"},
    )
    svc.json(
        "POST",
        f"{BASE}/trade",
        {"numericCode": 10016, "stringCode": "TRADE_RETCODE_INVALID_STOPS", "message": "Invalid stops"},
    )

    async def go():
        async with svc.api() as api:
            account = await api.metatrader_account_api.get_account("acc-1")
            connection = api.get_connection(account)
            result = await connection.create_limit_buy_order(
                "GBPUSD", 0.07, 1.0, 0.9, 2.0, TradeOptions(comment="comment", client_id="TE_GBPUSD_7hyINWqAlE")
            )
            with pytest.raises(TradeError) as exc_info:
                await connection.modify_position("46870472", stop_loss=5.0)
            return result, exc_info.value

    result, error = asyncio.run(go())
    assert result.description == "TRADE_RETCODE_DONE"
    assert result.order_id == "46870472"
    assert error.numeric_code == 10016
    assert error.string_code == "TRADE_RETCODE_INVALID_STOPS"

    first, second = (json.loads(r.content) for r in svc.calls("POST", f"{BASE}/trade"))
    assert first == {
        "actionType": "ORDER_TYPE_BUY_LIMIT",
        "symbol": "GBPUSD",
        "volume": 0.07,
        "openPrice": 1.0,
        "stopLoss": 0.9,
        "takeProfit": 2.0,
        "comment": "comment",
        "clientId": "TE_GBPUSD_7hyINWqAlE",
    }
    # Unset stops are left out of the request.
    assert second == {"actionType": "POSITION_MODIFY", "positionId": "46870472", "stopLoss": 5.0}


def test_trade_is_not_resent_after_gateway_error():
    svc = FakeService()
    svc.json("GET", ACCOUNT, account_row())
    svc.add("POST", f"{BASE}/trade", httpx.Response(502, text="bad gateway"))
    svc.json("POST", f"{BASE}/trade", {"numericCode": 10009, "stringCode": "TRADE_RETCODE_DONE"})

    async def go():
        async with svc.api() as api:
            account = await api.metatrader_account_api.get_account("acc-1")
            connection = api.get_connection(account)
            await connection.create_market_buy_order("EURUSD", 0.01)

    with pytest.raises(InternalError):
        asyncio.run(go())
    # The gateway may have forwarded the order, so a second POST could double it.
    assert len(svc.calls("POST", f"{BASE}/trade")) == 1


def test_wait_synchronized_needs_both_finished_packets_for_current_id():
    svc = FakeService()
    svc.json("GET", ACCOUNT, account_row())
    svc.json("POST", SYNCHRONIZE, None, status_code=204)
    svc.add("GET", STREAM, lambda request: httpx.Response(
        200, headers={"content-type": "text/event-stream"}, content=_stalled_body()
    ))

    async def go():
        async with svc.api() as api:
            account = await api.metatrader_account_api.get_account("acc-1")
            connection = api.get_connection(account)
            await connection.connect()
            await _wait_for(lambda: connection.synchronization_id is not None)
            current = connection.synchronization_id
            dispatch = connection._dispatcher.dispatch

            await dispatch({"type": "orderSynchronizationFinished", "synchronizationId": current})
            with pytest.raises(ApiTimeoutError):
                await connection.wait_synchronized(timeout_in_seconds=0.1, interval_in_milliseconds=10)

            await dispatch({"type": "dealSynchronizationFinished", "synchronizationId": "stale"})
            with pytest.raises(ApiTimeoutError):
                await connection.wait_synchronized(timeout_in_seconds=0.1, interval_in_milliseconds=10)
            assert "stale" not in connection._deals_synchronized

            await dispatch({"type": "dealSynchronizationFinished", "synchronizationId": current})
            await connection.wait_synchronized(timeout_in_seconds=1, interval_in_milliseconds=10)
            assert connection.is_synchronized()

    asyncio.run(go())


def test_stale_finished_packets_do_not_satisfy_new_synchronization():
    svc, stream = _service(drop_first=True)

    async def go():
        async with svc.api() as api:
            account = await api.metatrader_account_api.get_account("acc-1")
            connection = await account.connect()
            await _wait_for(lambda: len(stream.sync_ids) == 2 and connection.is_synchronized())
            old, current = stream.sync_ids
            # Only the current synchronization is remembered across reconnects.
            assert connection._orders_synchronized == {current}
            assert connection._deals_synchronized == {current}

            await connection._dispatcher.dispatch({"type": "orderSynchronizationFinished", "synchronizationId": old})
            assert connection._orders_synchronized == {current}
            await connection.close()
            assert connection._background == set()

    asyncio.run(go())


def test_close_awaits_cancelled_background_tasks():
    svc = FakeService()
    svc.json("GET", ACCOUNT, account_row())
    finished = []

    async def slow():
        try:
            await asyncio.sleep(10)
        finally:
            finished.append("cleaned up")

    async def go():
        async with svc.api() as api:
            account = await api.metatrader_account_api.get_account("acc-1")
            connection = api.get_connection(account)
            connection._schedule(slow(), "test task")
            await asyncio.sleep(0)
            await connection.close()
            # Cleanup already ran by the time close() returns.
            assert finished == ["cleaned up"]
            assert connection._background == set()

    asyncio.run(go())
