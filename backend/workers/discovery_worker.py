"""Discovery worker: runs the wallet discovery + refresh cycle on a schedule.

Run from backend dir:
  python -m workers.discovery_worker
"""

from __future__ import annotations

import asyncio
import os
import sys
from datetime import datetime, timedelta, timezone
from typing import Optional

_BACKEND = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _BACKEND not in sys.path:
    sys.path.insert(0, _BACKEND)
if os.getcwd() != _BACKEND:
    os.chdir(_BACKEND)

from config import settings
from models.database import init_database
from services.notifier import notifier
from services.wallet_discovery import WalletDiscoveryEngine, build_discovery_engine
from utils.logger import get_logger, setup_logging

logger = get_logger("discovery_worker")


async def run_cycle(engine: WalletDiscoveryEngine) -> None:
    """One discovery pass, then a refresh of the watch list unless the pass
    had to be abandoned. The engine refuses to overlap passes."""
    stats = await engine.run_discovery_pass()
    if stats.aborted or stats.skipped_reason == "already running":
        return
    if settings.DISCOVERY_REFRESH_WATCHED and not any(p.is_in_global_cooldown() for p in engine.credential_pools()):
        await engine.refresh_watched_wallets(exclude=engine.last_candidates)


async def _run_loop(engine: WalletDiscoveryEngine, max_cycles: Optional[int] = None) -> None:
    interval_minutes = int(max(1, min(1440, settings.DISCOVERY_RUN_INTERVAL_MINUTES)))
    logger.info("Discovery worker started", interval_minutes=interval_minutes)

    cycles = 0
    while max_cycles is None or cycles < max_cycles:
        cycles += 1
        try:
            await run_cycle(engine)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Discovery cycle failed", error=str(exc))

        if max_cycles is not None and cycles >= max_cycles:
            break

        next_run_at = datetime.now(timezone.utc).replace(microsecond=0) + timedelta(minutes=interval_minutes)
        logger.info("Discovery cycle complete", next_run_at=next_run_at.isoformat(), status=engine.get_status()["last_run"])
        await asyncio.sleep(interval_minutes * 60)


async def main() -> None:
    setup_logging(settings.LOG_LEVEL, json_format=settings.LOG_JSON)
    await init_database()
    logger.info("Database initialized")

    await notifier.start()
    engine = build_discovery_engine(notifier=notifier)
    max_cycles = 1 if "--once" in sys.argv[1:] else None
    try:
        await _run_loop(engine, max_cycles=max_cycles)
    except asyncio.CancelledError:
        logger.info("Discovery worker shutting down")
    finally:
        await engine.client.close()
        await notifier.shutdown()


if __name__ == "__main__":
    asyncio.run(main())
