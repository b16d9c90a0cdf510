"""
Entrypoint: loads .env, then runs the Discord adapter around the engagement core.
"""

import asyncio
import os
from pathlib import Path

from dotenv import load_dotenv


def _load_env() -> None:
    loaded = False
    for candidate in (Path(".env"), Path(__file__).resolve().parent / ".env"):
        if candidate.exists():
            loaded = load_dotenv(candidate, override=False) or loaded
    print(
        f"[ENV] cwd={os.getcwd()} loaded_env={loaded} token_present={bool(os.getenv('DISCORD_TOKEN'))}",
        flush=True,
    )


_load_env()

from discord_adapter import main  # noqa: E402


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        # Process managers stop us with SIGINT; exit without a traceback.
        print("[SHUTDOWN] Received interrupt; exiting cleanly.", flush=True)
