import asyncio
import logging
from libris.config import settings
from libris.db import SessionLocal
from libris.actions.loans import reconcile_overdue

logger = logging.getLogger(__name__)

async def reconcile_once() -> int:
    async with SessionLocal() as session:
        changed = await reconcile_overdue(session)
    if changed:
        logger.info("[reconciler] %s loan(s) marked overdue.", changed)
    return changed

async def run_reconciler():
    interval = max(5, int(settings.RECONCILE_INTERVAL_SECONDS))
    logger.info("[reconciler] Started. Interval: %ss", interval)
    while True:
        try:
            await reconcile_once()
            await asyncio.sleep(interval)
        except asyncio.CancelledError:
            raise
        except Exception as ex:
            logger.exception("[reconciler] Error in cycle: %s", ex)
            await asyncio.sleep(interval * 2)
