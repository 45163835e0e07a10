from __future__ import annotations

import asyncio
import json
import logging
import os
import traceback
from typing import Any

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from src.ports.broker import LiveAccountPort
from src.utils.config_loader import is_placeholder, load_config

logger = logging.getLogger(__name__)

_live_service: LiveAccountPort | None = None


def _live_service_disabled() -> bool:
    return str(os.environ.get("METASYNC_DISABLE_LIVE_SERVICE", "")).strip() in {"1", "true", "TRUE", "yes", "YES"}


def _require_live_service() -> LiveAccountPort:
    if _live_service is None or not _live_service.is_ready():
        raise HTTPException(status_code=503, detail="Live account service not ready")
    if not _live_service.is_synchronized():
        raise HTTPException(status_code=503, detail="Account not synchronized")
    return _live_service


app = FastAPI(
    title="MetaSync Live API",
    version="0.1.0",
)


@app.on_event("startup")
async def startup_event():
    global _live_service
    if _live_service_disabled():
        logger.info("LiveAccountService startup skipped (METASYNC_DISABLE_LIVE_SERVICE set).")
        _live_service = None
        return

    cfg = load_config()
    account_id = (cfg.get("account") or {}).get("id")
    token = (cfg.get("api") or {}).get("token")
    if is_placeholder(account_id) or is_placeholder(token):
        logger.warning("LiveAccountService not started: api.token and account.id must be configured.")
        _live_service = None
        return

    # Import lazily so the API can run (and be tested) without a configured account.
    from src.api.live_service import LiveAccountService

    symbol = (cfg.get("market_data") or {}).get("symbol")
    service = LiveAccountService(cfg, str(account_id), symbols=[symbol] if symbol else [])
    service.start()
    _live_service = service
    logger.info("LiveAccountService started (account=%s)", account_id)


@app.on_event("shutdown")
async def shutdown_event():
    global _live_service
    stop = getattr(_live_service, "stop", None)
    if stop is not None:
        stop()
        logger.info("LiveAccountService stopped")
    _live_service = None


def cors_origins(cfg: dict[str, Any]) -> list[str]:
    """Origins from `live_api.cors_origins`; none by default."""
    origins = (cfg.get("live_api") or {}).get("cors_origins") or []
    if isinstance(origins, str):
        origins = [o.strip() for o in origins.split(",")]
    return [str(o) for o in origins if o]


_cors_origins = cors_origins(load_config())
if _cors_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_origins,
        allow_credentials=False,
        allow_methods=["GET"],
        allow_headers=["*"],
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Return a clean JSON 500 for anything the endpoints did not handle."""
    logger.error(f"Unhandled exception: {type(exc).__name__}: {exc}")
    logger.debug(traceback.format_exc())
    return JSONResponse(
        status_code=500,
        content={
            "detail": f"Internal server error: {type(exc).__name__}",
            "message": str(exc)[:200],
        },
    )


async def _call_live(coro) -> Any:
    try:
        return await coro
    except asyncio.TimeoutError:
        raise HTTPException(status_code=504, detail="Live account service timed out")
    except RuntimeError as e:
        raise HTTPException(status_code=503, detail=str(e))


@app.get("/api/health")
async def health() -> dict[str, Any]:
    service = _live_service
    return {
        "status": "ok",
        "live_service": "disabled" if service is None else "enabled",
        "ready": bool(service and service.is_ready()),
        "synchronized": bool(service and service.is_synchronized()),
    }


@app.get("/api/live/account-information")
async def live_account_information() -> dict[str, Any]:
    service = _require_live_service()
    info = await _call_live(service.get_account_information())
    if info is None:
        raise HTTPException(status_code=404, detail="Account information not received yet")
    return jsonable_encoder(info.to_dict())


@app.get("/api/live/positions")
async def live_positions() -> list[dict[str, Any]]:
    service = _require_live_service()
    return jsonable_encoder([p.to_dict() for p in await _call_live(service.get_positions())])


@app.get("/api/live/orders")
async def live_orders() -> list[dict[str, Any]]:
    service = _require_live_service()
    return jsonable_encoder([o.to_dict() for o in await _call_live(service.get_orders())])


@app.get("/api/live/prices/{symbol}")
async def live_price(symbol: str) -> dict[str, Any]:
    service = _require_live_service()
    price = await _call_live(service.get_price(symbol))
    if price is None:
        raise HTTPException(status_code=404, detail=f"No price received for {symbol}")
    return jsonable_encoder(price.to_dict())


@app.get("/api/live/prices/{symbol}/stream")
async def live_price_stream(
    request: Request,
    symbol: str,
    poll_seconds: float = Query(default=1.0, ge=0.2, le=10.0),
):
    """
    Server-Sent Events feed of the latest price for `symbol`.
    Emits only when the price changes; keep-alive comments otherwise.
    """
    service = _require_live_service()

    async def _gen():
        last: dict[str, Any] | None = None
        # Hint to clients how long to wait before reconnecting (milliseconds).
        yield "retry: 1000\n\n"
        while True:
            if await request.is_disconnected():
                break
            try:
                price = await service.get_price(symbol)
            except (asyncio.TimeoutError, RuntimeError) as e:
                logger.debug("Price stream poll failed for %s: %s", symbol, e)
                price = None

            payload = price.to_dict() if price is not None else None
            if payload is not None and payload != last:
                last = payload
                yield f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"
            else:
                yield ": keep-alive\n\n"
            await asyncio.sleep(float(poll_seconds))

    return StreamingResponse(
        _gen(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
