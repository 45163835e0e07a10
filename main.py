"""MetaSync driver entrypoint.

This file intentionally stays small. The workflows live in `src/workflows/`
so they can be maintained and tested more easily.

    python main.py rpc
    python main.py stream --symbol GBPUSD
    python main.py candles --pages 10 --csv candles.csv
"""

from __future__ import annotations

import sys
from pathlib import Path

from dotenv import load_dotenv


def _load_local_secrets() -> None:
    """Load local secrets for development runs (ignored by git)."""
    env_path = Path(__file__).resolve().parent / "config" / "secrets.env"
    if env_path.exists():
        load_dotenv(env_path)


def main() -> None:
    _load_local_secrets()

    from src.workflows.runner import main as runner_main

    sys.exit(runner_main())


if __name__ == "__main__":
    main()
