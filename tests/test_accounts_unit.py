import asyncio

import pytest

from tests.fake_service import PROVISIONING, FakeService, account_row
from src.domain.errors import ApiTimeoutError, NotFoundError

ACCOUNTS = f"{PROVISIONING}/users/current/accounts"
ACCOUNT = f"{ACCOUNTS}/acc-1"


def test_get_accounts_passes_filters_and_wraps_rows():
    svc = FakeService()
    svc.json("GET", ACCOUNTS, [account_row("acc-1"), account_row("acc-2", state="UNDEPLOYED")])

    async def go():
        async with svc.api() as api:
            return await api.metatrader_account_api.get_accounts({"state": "DEPLOYED"})

    accounts = asyncio.run(go())
    assert [a.id for a in accounts] == ["acc-1", "acc-2"]
    assert accounts[1].state == "UNDEPLOYED"
    assert svc.requests[0].url.params["state"] == "DEPLOYED"


def test_deploy_posts_then_reloads():
    svc = FakeService()
    svc.json("GET", ACCOUNT, account_row(state="UNDEPLOYED", connectionStatus="DISCONNECTED"))
    svc.json("GET", ACCOUNT, account_row(state="DEPLOYING", connectionStatus="DISCONNECTED"))
    svc.json("POST", f"{ACCOUNT}/deploy", None, status_code=204)

    async def go():
        async with svc.api() as api:
            account = await api.metatrader_account_api.get_account("acc-1")
            await account.deploy()
            return account

    account = asyncio.run(go())
    assert account.state == "DEPLOYING"
    assert len(svc.calls("POST", f"{ACCOUNT}/deploy")) == 1


def test_wait_connected_polls_until_connected():
    svc = FakeService()
    svc.json("GET", ACCOUNT, account_row(connectionStatus="DISCONNECTED"))
    svc.json("GET", ACCOUNT, account_row(connectionStatus="DISCONNECTED"))
    svc.json("GET", ACCOUNT, account_row(connectionStatus="DISCONNECTED_FROM_BROKER"))
    svc.json("GET", ACCOUNT, account_row(connectionStatus="CONNECTED"))

    async def go():
        async with svc.api() as api:
            account = await api.metatrader_account_api.get_account("acc-1")
            await account.wait_connected(timeout_in_seconds=5, interval_in_milliseconds=1)
            return account

    account = asyncio.run(go())
    assert account.connection_status == "CONNECTED"
    assert len(svc.calls("GET", ACCOUNT)) == 4


def test_wait_deployed_times_out():
    svc = FakeService()
    svc.json("GET", ACCOUNT, account_row(state="DEPLOYING"))

    async def go():
        async with svc.api() as api:
            account = await api.metatrader_account_api.get_account("acc-1")
            await account.wait_deployed(timeout_in_seconds=0.05, interval_in_milliseconds=10)

    with pytest.raises(ApiTimeoutError, match="deployed"):
        asyncio.run(go())


def test_undeploy_and_wait_undeployed():
    svc = FakeService()
    svc.json("GET", ACCOUNT, account_row())
    svc.json("GET", ACCOUNT, account_row(state="UNDEPLOYING"))
    svc.json("GET", ACCOUNT, account_row(state="UNDEPLOYED", connectionStatus="DISCONNECTED"))
    svc.json("POST", f"{ACCOUNT}/undeploy", None, status_code=204)

    async def go():
        async with svc.api() as api:
            account = await api.metatrader_account_api.get_account("acc-1")
            await account.undeploy()
            await account.wait_undeployed(timeout_in_seconds=5, interval_in_milliseconds=1)
            return account

    account = asyncio.run(go())
    assert account.state == "UNDEPLOYED"


def test_remove_and_wait_removed_ends_on_not_found():
    svc = FakeService()
    svc.json("GET", ACCOUNT, account_row())
    svc.json("GET", ACCOUNT, account_row(state="DELETING"))
    svc.json("GET", ACCOUNT, account_row(state="DELETING"))
    svc.json("GET", ACCOUNT, {"error": "NotFoundError", "message": "Account not found"}, status_code=404)
    svc.json("DELETE", ACCOUNT, None, status_code=204)

    async def go():
        async with svc.api() as api:
            account = await api.metatrader_account_api.get_account("acc-1")
            await account.remove()
            await account.wait_removed(timeout_in_seconds=5, interval_in_milliseconds=1)

    asyncio.run(go())
    assert len(svc.calls("DELETE", ACCOUNT)) == 1


def test_get_missing_account_raises_not_found():
    svc = FakeService()

    async def go():
        async with svc.api() as api:
            await api.metatrader_account_api.get_account("nope")

    with pytest.raises(NotFoundError):
        asyncio.run(go())


def test_api_requires_token():
    from src.cloud.api import MetaSyncApi

    with pytest.raises(ValueError, match="token"):
        MetaSyncApi("")
