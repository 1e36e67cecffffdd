"""Retention job for the webhook idempotency ledger."""
import argparse
import logging
from datetime import datetime, timedelta

from entitlement_engine.core.config import settings
from entitlement_engine.core.logging import configure_logging
from entitlement_engine.core.timeutil import normalize_now
from entitlement_engine.features.entitlements.store import EntitlementStore, SqlEntitlementStore

logger = logging.getLogger("entitlement_engine.cleanup.webhook_events")


def cleanup_webhook_events(
    *,
    store: EntitlementStore,
    retention_days: int | None = None,
    dry_run: bool | None = None,
    now: datetime | None = None,
) -> dict:
    days = retention_days if retention_days is not None else settings.WEBHOOK_EVENT_RETENTION_DAYS
    dry = dry_run if dry_run is not None else settings.WEBHOOK_EVENT_CLEANUP_DRY_RUN
    cutoff = normalize_now(now) - timedelta(days=days)

    to_prune = store.count_webhook_events_before(cutoff)
    deleted = 0
    if not dry and to_prune:
        deleted = store.prune_webhook_events(cutoff)

    logger.info(
        "[cleanup] webhook event retention",
        extra={"retention_days": days, "dry_run": dry, "candidates": to_prune, "deleted": deleted},
    )
    return {"retention_days": days, "dry_run": dry, "candidates": to_prune, "deleted": deleted}


def main(argv=None) -> dict:
    parser = argparse.ArgumentParser(description="Prune processed webhook events past retention")
    parser.add_argument("--retention-days", type=int, default=None)
    parser.add_argument("--dry-run", action="store_true", default=None)
    args = parser.parse_args(argv)

    configure_logging(settings.ENV)
    result = cleanup_webhook_events(
        store=SqlEntitlementStore(),
        retention_days=args.retention_days,
        dry_run=args.dry_run,
    )
    print(result)
    return result


if __name__ == "__main__":
    main()
