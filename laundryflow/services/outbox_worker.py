import asyncio
import logging
from datetime import datetime, timedelta, timezone

import httpx

from laundryflow.core.config import settings

logger = logging.getLogger(__name__)

def _utcnow():
    return datetime.now(timezone.utc)

async def deliver_one(rec: dict, client: httpx.AsyncClient) -> int:
    headers = {
        "Content-Type": "application/json",
        "X-Laundryflow-Signature": rec["sig"],
    }
    r = await client.post(rec["target"], json=rec["body"], headers=headers)
    return r.status_code

async def process_next(repo, client: httpx.AsyncClient) -> bool:
    """Deliver one due outbox record. Returns False when nothing was due."""
    rec = await repo.claim_outbox(_utcnow())
    if not rec:
        return False

    if not rec.get("target"):
        # no gateway configured; nothing to deliver to
        await repo.update_outbox(rec["_id"], {"status": "skipped"})
        return True

    status = None
    try:
        status = await deliver_one(rec, client)
    except httpx.HTTPError as e:
        logger.warning("Notification %s delivery error: %s", rec["_id"], e)

    if status and 200 <= status < 300:
        await repo.update_outbox(rec["_id"], {"status": "delivered", "delivered_at": _utcnow()})
        return True

    attempts = rec.get("attempts", 0) + 1
    if attempts >= rec.get("max_attempts", settings.outbox_max_attempts):
        logger.error("Notification %s gave up after %d attempts", rec["_id"], attempts)
        await repo.update_outbox(rec["_id"], {"status": "failed", "attempts": attempts})
        return True

    delay = min(60, 2 ** attempts)  # backoff up to 60s
    await repo.update_outbox(rec["_id"], {
        "status": "pending",
        "attempts": attempts,
        "next_try_at": _utcnow() + timedelta(seconds=delay),
    })
    return True

async def run_outbox_loop(repo, stop: asyncio.Event | None = None):
    timeout = httpx.Timeout(10.0, connect=5.0)
    async with httpx.AsyncClient(timeout=timeout) as client:
        while stop is None or not stop.is_set():
            try:
                busy = await process_next(repo, client)
            except Exception:
                logger.exception("Outbox loop iteration failed")
                busy = False
            if not busy:
                await asyncio.sleep(settings.outbox_poll_seconds)
