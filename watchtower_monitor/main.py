from __future__ import annotations

import asyncio
import logging

from watchtower_monitor.cycle import CycleCoordinator, CycleSummary
from watchtower_monitor.db import SqliteServerStore
from watchtower_monitor.mailer import SmtpMailer
from watchtower_monitor.probe import build_client
from watchtower_monitor.settings import MonitorSettings, load_settings


LOGGER = logging.getLogger("watchtower.main")


async def run_once(settings: MonitorSettings) -> CycleSummary:
    """Acquire the store, mailer and HTTP client, run one cycle, then release them."""
    mailer = SmtpMailer(settings.mail)
    async with SqliteServerStore(settings.store) as store:
        async with build_client(max_connections=settings.cycle.batch_size) as http_client:
            coordinator = CycleCoordinator(
                store,
                mailer,
                settings=settings.cycle,
                http_client=http_client,
            )
            return await coordinator.run_cycle()


def _configure_logging(level_name: str) -> None:
    logging.basicConfig(
        level=getattr(logging, str(level_name).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def main() -> int:
    settings = load_settings()
    _configure_logging(settings.log_level)

    try:
        asyncio.run(run_once(settings))
    except Exception:
        LOGGER.exception("Monitoring cycle failed")
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
