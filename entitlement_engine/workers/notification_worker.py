"""
rq task + worker entry point for entitlement notifications.

Run with: python -m entitlement_engine.workers.notification_worker
or: rq worker -u redis://localhost:6379/0 entitlements

Actual delivery (email, in-app) belongs to an external service; the task
emits one structured record per notification so delivery can be traced.
"""
import logging
from typing import Any, Dict

from redis import Redis
from rq import Queue, Worker

from entitlement_engine.core.config import settings
from entitlement_engine.core.logging import configure_logging

logger = logging.getLogger(__name__)


def deliver_entitlement_notification(kind: str, owner_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    """Task body. Must stay idempotent: rq may run it more than once."""
    record = {"kind": kind, "owner_id": owner_id, **(payload or {})}
    logger.info("[notifications] delivered", extra={"owner_id": owner_id, "kind": kind, "payload": payload})
    return record


def main() -> None:
    configure_logging(settings.ENV)
    conn = Redis.from_url(settings.REDIS_URL)
    worker = Worker([Queue(settings.NOTIFICATIONS_QUEUE, connection=conn)], connection=conn)
    logger.info("[notifications] starting rq worker", extra={"queue": settings.NOTIFICATIONS_QUEUE})
    worker.work()


if __name__ == "__main__":
    main()
