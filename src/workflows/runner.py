from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from pathlib import Path

from src.cloud.historical_market_data import candles_to_frame
from src.utils.config_loader import load_config
from src.workflows.historical_candles import retrieve_historical_candles
from src.workflows.rpc_demo import run_rpc_demo
from src.workflows.stream_quotes import stream_quotes

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="MetaSync driver workflows.")
    parser.add_argument("--config", default=None, help="Path to config.yaml (defaults to config/config.yaml).")
    parser.add_argument("--log-level", default="INFO", help="Logging level (DEBUG, INFO, WARNING, ...).")
    sub = parser.add_subparsers(dest="command", required=True)

    rpc = sub.add_parser("rpc", help="Provision an account, synchronize it, run read queries and one trade.")
    rpc.add_argument("--keep-deployed", action="store_true", help="Do not undeploy the account afterwards.")
    rpc.add_argument("--ticket", default="1234567", help="Ticket/position id used for history lookups.")

    stream = sub.add_parser("stream", help="Stream market data for the configured symbol until interrupted.")
    stream.add_argument("--symbol", default=None, help="Override market_data.symbol.")

    candles = sub.add_parser("candles", help="Download historical candles walking backwards in time.")
    candles.add_argument("--symbol", default=None, help="Override market_data.symbol.")
    candles.add_argument("--pages", type=int, default=None, help="Number of pages to download.")
    candles.add_argument("--csv", type=Path, default=None, help="Write the downloaded candles to this CSV file.")
    return parser


def _install_stop_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):
            # add_signal_handler is unavailable on some platforms; Ctrl+C still raises KeyboardInterrupt.
            pass


async def _run(args: argparse.Namespace) -> None:
    cfg = load_config(args.config)
    if getattr(args, "symbol", None):
        cfg.setdefault("market_data", {})["symbol"] = args.symbol

    if args.command == "rpc":
        await run_rpc_demo(cfg, sample_ticket=args.ticket, undeploy=not args.keep_deployed)
    elif args.command == "stream":
        stop_event = asyncio.Event()
        _install_stop_handlers(stop_event)
        await stream_quotes(cfg, stop_event)
    elif args.command == "candles":
        candles = await retrieve_historical_candles(cfg, args.pages)
        if args.csv is not None:
            candles_to_frame(candles).to_csv(args.csv)
            logger.info("Wrote %d candles to %s", len(candles), args.csv)


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    # Configure logging (idempotent; safe if configured elsewhere).
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        asyncio.run(_run(args))
        return 0
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 130
    except Exception as e:
        logger.error("%s failed: %s: %s", args.command, type(e).__name__, e, exc_info=True)
        return 1
