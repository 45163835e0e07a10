from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from src.cloud.accounts import MetatraderAccount
from src.cloud.api import MetaSyncApi
from src.cloud.provisioning_profiles import ProvisioningProfile

logger = logging.getLogger(__name__)

BROKER_SRV_FILE_NAME = "broker.srv"


async def ensure_provisioning_profile(
    api: MetaSyncApi,
    server_name: str,
    broker_srv_file: str | Path | bytes,
    version: int = 4,
) -> ProvisioningProfile:
    """
    Find the provisioning profile named after the broker server, or create it.

    The broker.srv file is uploaded when the profile is created, and again when an
    existing profile is still in the `new` status (its upload never completed).
    """
    profiles = await api.provisioning_profile_api.get_provisioning_profiles()
    profile = next((p for p in profiles if p.name == server_name), None)
    if profile is None:
        logger.info("Creating account profile %s", server_name)
        profile = await api.provisioning_profile_api.create_provisioning_profile(
            {"name": server_name, "type": "standard", "version": int(version)}
        )
        await profile.upload_file(BROKER_SRV_FILE_NAME, broker_srv_file)
    elif profile.status == "new":
        logger.info("Uploading %s to profile %s", BROKER_SRV_FILE_NAME, profile.id)
        await profile.upload_file(BROKER_SRV_FILE_NAME, broker_srv_file)
    else:
        logger.info("Account profile %s already created", profile.id)
    return profile


async def ensure_account(
    api: MetaSyncApi,
    profile: ProvisioningProfile,
    login: str,
    password: str,
    server_name: str,
    account_cfg: dict[str, Any] | None = None,
) -> MetatraderAccount:
    """Find the automatically synchronized account for `login`, or add it."""
    account_cfg = account_cfg or {}
    accounts = await api.metatrader_account_api.get_accounts()
    account = next(
        (a for a in accounts if a.login == str(login) and a.synchronization_mode == "automatic"),
        None,
    )
    if account is not None:
        logger.info("Account %s (login %s) already added", account.id, login)
        return account

    logger.info("Adding account for login %s", login)
    return await api.metatrader_account_api.create_account(
        {
            "name": account_cfg.get("name", "Test account"),
            "type": account_cfg.get("type", "cloud"),
            "login": str(login),
            "password": password,
            "server": server_name,
            "synchronizationMode": "automatic",
            "provisioningProfileId": profile.id,
            "timeConverter": account_cfg.get("time_converter", "icmarkets"),
            "application": account_cfg.get("application", "MetaApi"),
            "magic": int(account_cfg.get("magic", 1000)),
        }
    )


async def deploy_and_wait_connected(
    account: MetatraderAccount,
    timeout_in_seconds: float = 300,
    interval_in_milliseconds: int = 1000,
) -> None:
    """Deploy the account unless it already is, then wait for the broker connection."""
    if account.state != "DEPLOYED":
        await account.deploy()
    else:
        logger.info("Account %s already deployed", account.id)

    if account.connection_status != "CONNECTED":
        logger.info("Waiting for API server to connect to broker (may take a couple of minutes)")
        await account.wait_connected(timeout_in_seconds, interval_in_milliseconds)
