"""
entitlement_engine/features/notifications/service.py

Deferred follow-ups for committed entitlement transitions (payment failed,
subscription activated, subscription cancelled).

Jobs are pushed to Redis with rq after the webhook transaction commits.
Delivery is at-least-once; enqueue failures are logged and swallowed so a
Redis outage never changes the webhook response.
"""

import logging
from typing import Any, Dict, Optional, Protocol

from redis import Redis
from redis.exceptions import RedisError
from rq import Queue, Retry

from entitlement_engine.core.config import Settings, settings
from entitlement_engine.workers.notification_worker import deliver_entitlement_notification

logger = logging.getLogger(__name__)

NOTIFY_ACTIVATED = "subscription_activated"
NOTIFY_PAST_DUE = "payment_failed"
NOTIFY_CANCELLED = "subscription_cancelled"


class Notifier(Protocol):
    def notify(self, kind: str, owner_id: str, payload: Optional[Dict[str, Any]] = None) -> Optional[str]:
        ...


class NullNotifier:
    """Used when notifications are disabled."""

    def notify(self, kind: str, owner_id: str, payload: Optional[Dict[str, Any]] = None) -> Optional[str]:
        return None


class RQNotifier:
    def __init__(self, queue: Queue, max_retries: int = 3, retry_intervals=(10, 60, 300)):
        self.queue = queue
        self.retry = Retry(max=max_retries, interval=list(retry_intervals))

    @classmethod
    def from_settings(cls, settings_obj: Optional[Settings] = None) -> "RQNotifier":
        cfg = settings_obj or settings
        conn = Redis.from_url(cfg.REDIS_URL)
        return cls(Queue(cfg.NOTIFICATIONS_QUEUE, connection=conn))

    def notify(self, kind: str, owner_id: str, payload: Optional[Dict[str, Any]] = None) -> Optional[str]:
        try:
            job = self.queue.enqueue(
                deliver_entitlement_notification,
                kind,
                owner_id,
                payload or {},
                retry=self.retry,
                job_timeout="2m",
                result_ttl=3600,
            )
        except RedisError as e:
            logger.warning(
                "[notifications] enqueue failed",
                extra={"owner_id": owner_id, "kind": kind, "error": str(e)},
            )
            return None
        logger.info("[notifications] enqueued", extra={"owner_id": owner_id, "kind": kind, "job_id": job.id})
        return job.id


def get_notifier(settings_obj: Optional[Settings] = None) -> Notifier:
    cfg = settings_obj or settings
    if not cfg.NOTIFICATIONS_ENABLED:
        return NullNotifier()
    return RQNotifier.from_settings(cfg)
