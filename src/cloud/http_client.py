from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any

import httpx

from src.domain.errors import ApiError, TooManyRequestsError, error_for_status
from src.domain.models import parse_time

logger = logging.getLogger(__name__)

DEFAULT_REQUEST_TIMEOUT_SECONDS = 60.0

# Statuses worth another attempt; everything else in 4xx is the caller's fault.
_RETRYABLE_STATUSES = {429, 500, 502, 503, 504}

# Failures that guarantee the server did not act on the request.
_UNSENT_STATUSES = {429}
_UNSENT_ERRORS = (httpx.ConnectError, httpx.ConnectTimeout)


class HttpClient:
    """
    Shared async HTTP transport for the MetaSync REST APIs.

    - One pooled `httpx.AsyncClient` per process (per `MetaSyncApi`).
    - Retries transport errors, 429 and 5xx with capped exponential backoff.
    - Maps error responses onto the `src.domain.errors` taxonomy.
    """

    def __init__(
        self,
        token: str,
        *,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        retries: int = 5,
        min_retry_delay: float = 1.0,
        max_retry_delay: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.token = token
        self.request_timeout = float(request_timeout)
        self.retries = int(retries)
        self.min_retry_delay = float(min_retry_delay)
        self.max_retry_delay = float(max_retry_delay)
        self._client = httpx.AsyncClient(
            headers={"auth-token": token},
            timeout=httpx.Timeout(self.request_timeout),
            transport=transport,
        )

    @property
    def client(self) -> httpx.AsyncClient:
        return self._client

    async def __aenter__(self) -> HttpClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    async def request(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
        files: dict[str, Any] | None = None,
        idempotent: bool = True,
    ) -> Any:
        """
        Send one request and return the decoded JSON body (None for empty bodies).

        Raises an `ApiError` subclass once retries are exhausted or the status is not retryable.
        With `idempotent=False` only failures where the server cannot have acted are retried:
        429 responses and connection errors raised before the request was sent.
        """
        params = {k: v for k, v in (params or {}).items() if v is not None} or None
        attempt = 0
        while True:
            try:
                resp = await self._client.request(method, url, params=params, json=json, files=files)
            except httpx.TransportError as e:
                if attempt >= self.retries or not (idempotent or isinstance(e, _UNSENT_ERRORS)):
                    raise ApiError(f"{method} {url} failed: {type(e).__name__}: {e}", status_code=0) from e
                delay = self._backoff(attempt)
                logger.warning(
                    "%s %s transport error (%s), retrying in %.1fs (%d/%d)",
                    method, url, type(e).__name__, delay, attempt + 1, self.retries,
                )
                attempt += 1
                await asyncio.sleep(delay)
                continue

            if resp.is_success:
                if not resp.content:
                    return None
                try:
                    return resp.json()
                except ValueError:
                    return resp.text

            error = error_from_response(resp)
            retryable = _RETRYABLE_STATUSES if idempotent else _UNSENT_STATUSES
            if resp.status_code not in retryable or attempt >= self.retries:
                raise error

            delay = self._retry_delay(error, attempt)
            logger.warning(
                "%s %s returned %s, retrying in %.1fs (%d/%d)",
                method, url, resp.status_code, delay, attempt + 1, self.retries,
            )
            attempt += 1
            await asyncio.sleep(delay)

    async def get(self, url: str, **kwargs: Any) -> Any:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs: Any) -> Any:
        return await self.request("POST", url, **kwargs)

    async def put(self, url: str, **kwargs: Any) -> Any:
        return await self.request("PUT", url, **kwargs)

    async def delete(self, url: str, **kwargs: Any) -> Any:
        return await self.request("DELETE", url, **kwargs)

    # -------------------
    # Internal
    # -------------------

    def _backoff(self, attempt: int) -> float:
        return min(self.min_retry_delay * (2 ** attempt), self.max_retry_delay)

    def _retry_delay(self, error: ApiError, attempt: int) -> float:
        delay = self._backoff(attempt)
        if isinstance(error, TooManyRequestsError) and error.recommended_retry_time is not None:
            wait = (error.recommended_retry_time - datetime.now(timezone.utc)).total_seconds()
            delay = min(max(wait, delay), self.max_retry_delay)
        return delay


def error_from_response(resp: httpx.Response) -> ApiError:
    """Map an error response (already read) onto the error taxonomy."""
    body: Any
    try:
        body = resp.json()
    except ValueError:
        body = None

    message = ""
    details = None
    retry_time = None
    if isinstance(body, dict):
        message = str(body.get("message") or body.get("error") or "")
        details = body.get("details")
        metadata = body.get("metadata") or {}
        try:
            retry_time = parse_time(metadata.get("recommendedRetryTime"))
        except ValueError:
            retry_time = None
    if not message:
        message = resp.text[:200] or resp.reason_phrase

    error_cls = error_for_status(resp.status_code)
    text = f"{resp.request.method} {resp.request.url} -> {resp.status_code}: {message}"
    if error_cls is TooManyRequestsError:
        return TooManyRequestsError(
            text, status_code=resp.status_code, details=details, recommended_retry_time=retry_time
        )
    return error_cls(text, status_code=resp.status_code, details=details)
