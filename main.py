from __future__ import annotations

import argparse
import asyncio
import logging
import os

try:
    from dotenv import load_dotenv  # type: ignore

    load_dotenv()
except Exception:
    pass

from client import get_client
from fleetsync import FleetSync

logger = logging.getLogger("fleetsync")


def setup_logging(level: str, ui: str) -> None:
    log_file = os.getenv("LOG_FILE")
    if ui == "tui" and not log_file:
        # the dashboard owns the terminal
        log_file = "fleetsync.log"
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        filename=log_file,
    )


async def run(api_url: str | None, ui: str, *, refresh: float):
    api = get_client(api_url)
    sync = FleetSync(api)
    try:
        await sync.start()
        logger.info("connected to %s", api.base_url)
        if ui == "tui":
            from dashboard.tui import run_tui

            await run_tui(sync, refresh=refresh)
        else:
            stopper = asyncio.Event()
            try:
                await stopper.wait()
            except asyncio.CancelledError:
                pass
    except asyncio.CancelledError:
        pass
    finally:
        await sync.shutdown()
        await api.close()


def main():
    default_url = os.getenv("FLEET_API_URL")
    default_ui = os.getenv("FLEET_UI", "tui")
    default_refresh = float(os.getenv("DASH_REFRESH", "0.5"))
    default_level = os.getenv("LOG_LEVEL", "INFO")
    p = argparse.ArgumentParser(description="FleetSync dashboard")
    p.add_argument(
        "--api-url",
        default=default_url,
        help="Backend base URL (default: http://localhost:5000/api).",
    )
    p.add_argument(
        "--ui",
        choices=["tui", "none"],
        default=default_ui,
        help="Dashboard mode to launch (tui, none).",
    )
    p.add_argument(
        "--ui-refresh",
        type=float,
        default=default_refresh,
        help="Redraw interval for the terminal dashboard (seconds).",
    )
    p.add_argument(
        "--log-level",
        default=default_level,
        help="Logging level (DEBUG, INFO, WARNING, ...).",
    )
    args = p.parse_args()
    setup_logging(args.log_level, args.ui)
    try:
        asyncio.run(run(args.api_url, ui=args.ui, refresh=args.ui_refresh))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
