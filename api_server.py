import logging
import sys
from pathlib import Path

import uvicorn
from dotenv import load_dotenv

# Configure logging to write to both stderr and a file immediately.
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[
        logging.StreamHandler(sys.stderr),
        logging.FileHandler("api_server.log", mode="a"),
    ],
)
logger = logging.getLogger("api_server")


def _load_local_env() -> None:
    """
    Load local environment variables from config/secrets.env (if present).

    Same secrets file as `python main.py`, so TOKEN and ACCOUNT_ID need to be set only once.
    """
    env_path = Path(__file__).resolve().parent / "config" / "secrets.env"
    if env_path.exists():
        load_dotenv(env_path)
        logger.info("Loaded environment variables from %s", env_path)


def main() -> None:
    _load_local_env()

    from src.utils.config_loader import load_config

    live_cfg = load_config().get("live_api") or {}
    host = str(live_cfg.get("host", "127.0.0.1"))
    port = int(live_cfg.get("port", 8000))

    try:
        logger.info("Starting MetaSync live API on %s:%s", host, port)
        uvicorn.run(
            "src.api.app:app",
            host=host,
            port=port,
            reload=False,
            log_level="info",
            loop="auto",
            workers=1,  # One process owns the account stream.
        )
    except Exception as e:
        logger.error(f"Fatal error in API server: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
