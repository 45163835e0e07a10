from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from src.cloud.http_client import HttpClient
from src.domain.models import ProvisioningProfileData

logger = logging.getLogger(__name__)


def _read_file(path_or_bytes: str | Path | bytes) -> bytes:
    if isinstance(path_or_bytes, (bytes, bytearray)):
        return bytes(path_or_bytes)
    path = Path(path_or_bytes)
    if not path.is_file():
        raise FileNotFoundError(f"Provisioning file not found: {path}")
    return path.read_bytes()


class ProvisioningProfileClient:
    """REST client for provisioning profiles (broker.srv / servers.dat bundles)."""

    def __init__(self, http: HttpClient, base_url: str) -> None:
        self.http = http
        self.base_url = base_url.rstrip("/")

    def _url(self, suffix: str = "") -> str:
        return f"{self.base_url}/users/current/provisioning-profiles{suffix}"

    async def get_provisioning_profiles(
        self, version: int | None = None, status: str | None = None
    ) -> list[ProvisioningProfile]:
        rows = await self.http.get(self._url(), params={"version": version, "status": status}) or []
        return [ProvisioningProfile(ProvisioningProfileData.from_dict(r), self) for r in rows]

    async def get_provisioning_profile(self, profile_id: str) -> ProvisioningProfile:
        row = await self.http.get(self._url(f"/{profile_id}"))
        return ProvisioningProfile(ProvisioningProfileData.from_dict(row or {}), self)

    async def get_provisioning_profile_data(self, profile_id: str) -> ProvisioningProfileData:
        row = await self.http.get(self._url(f"/{profile_id}"))
        return ProvisioningProfileData.from_dict(row or {})

    async def create_provisioning_profile(self, data: dict[str, Any]) -> ProvisioningProfile:
        """Create a profile and return it re-read from the service (the create call only returns an id)."""
        created = await self.http.post(self._url(), json=data) or {}
        profile_id = created.get("id") or created.get("_id")
        if not profile_id:
            raise ValueError(f"Provisioning profile creation returned no id: {created!r}")
        logger.info("Created provisioning profile %s (%s)", data.get("name"), profile_id)
        return await self.get_provisioning_profile(str(profile_id))

    async def upload_provisioning_profile_file(
        self, profile_id: str, file_name: str, path_or_bytes: str | Path | bytes
    ) -> None:
        content = _read_file(path_or_bytes)
        await self.http.put(self._url(f"/{profile_id}/{file_name}"), files={"file": (file_name, content)})
        logger.info("Uploaded %s to provisioning profile %s (%d bytes)", file_name, profile_id, len(content))

    async def update_provisioning_profile(self, profile_id: str, data: dict[str, Any]) -> None:
        await self.http.put(self._url(f"/{profile_id}"), json=data)

    async def delete_provisioning_profile(self, profile_id: str) -> None:
        await self.http.delete(self._url(f"/{profile_id}"))


class ProvisioningProfile:
    """A provisioning profile entity bound to the client that loaded it."""

    def __init__(self, data: ProvisioningProfileData, client: ProvisioningProfileClient) -> None:
        self._data = data
        self._client = client

    def __repr__(self) -> str:
        return f"ProvisioningProfile(id={self.id!r}, name={self.name!r}, status={self.status!r})"

    @property
    def data(self) -> ProvisioningProfileData:
        return self._data

    @property
    def id(self) -> str:
        return self._data.id

    @property
    def name(self) -> str:
        return self._data.name

    @property
    def version(self) -> int:
        return self._data.version

    @property
    def status(self) -> str:
        return self._data.status

    @property
    def type(self) -> str | None:
        return self._data.type

    async def reload(self) -> None:
        self._data = await self._client.get_provisioning_profile_data(self.id)

    async def remove(self) -> None:
        await self._client.delete_provisioning_profile(self.id)

    async def upload_file(self, file_name: str, path_or_bytes: str | Path | bytes) -> None:
        await self._client.upload_provisioning_profile_file(self.id, file_name, path_or_bytes)

    async def update(self, data: dict[str, Any]) -> None:
        await self._client.update_provisioning_profile(self.id, data)
        await self.reload()
