from datetime import datetime, timezone
import hmac, hashlib, json
import logging
from typing import Any, Dict

from laundryflow.core.config import settings

logger = logging.getLogger(__name__)

def _sign(body: Dict[str, Any]) -> str:
    secret = settings.jwt_secret.encode()
    msg = json.dumps(body, separators=(",", ":"), sort_keys=True, default=str).encode()
    return hmac.new(secret, msg, hashlib.sha256).hexdigest()

class OutboxNotifier:
    """Customer notifications go to the outbox; the worker does the delivery."""

    def __init__(self, repo, max_attempts: int | None = None):
        self.repo = repo
        self.max_attempts = max_attempts or settings.outbox_max_attempts

    async def send(self, customer_id: str, template_key: str, context: Dict[str, Any]) -> str:
        now = datetime.now(timezone.utc)
        body = {
            "type": "customer.notification",
            "customer_id": customer_id,
            "template": template_key,
            "context": context,
            "created_at": now.isoformat(),
        }
        rid = await self.repo.enqueue_outbox({
            "target": settings.notify_url,
            "body": body,
            "sig": _sign(body),
            "attempts": 0,
            "max_attempts": self.max_attempts,
            "next_try_at": now,
            "status": "pending",
        })
        logger.info("Queued %s notification for customer %s", template_key, customer_id)
        return rid
