"""
Observational sweep over trial records.

Expiry is derived at read time, so this job never writes; it only reports
how many trials are running, lapsed, or about to lapse.
"""
import argparse
import json
import logging
from datetime import datetime, timedelta

from entitlement_engine.core.config import settings
from entitlement_engine.core.logging import configure_logging
from entitlement_engine.core.timeutil import normalize_now
from entitlement_engine.features.entitlements.store import EntitlementStore, SqlEntitlementStore
from entitlement_engine.models.entitlement import SubscriptionStatus

logger = logging.getLogger("entitlement_engine.reports.trials")


def trial_expiry_report(
    *,
    store: EntitlementStore,
    expiring_within_days: int = 3,
    now: datetime | None = None,
) -> dict:
    ts = normalize_now(now)
    horizon = ts + timedelta(days=expiring_within_days)

    running = 0
    expired = 0
    expiring_soon = []
    for record in store.iter_records(status=SubscriptionStatus.TRIAL):
        if record.effective_status(ts) == SubscriptionStatus.EXPIRED:
            expired += 1
            continue
        running += 1
        if record.trial_ends_at is not None and record.trial_ends_at <= horizon:
            expiring_soon.append(record.owner_id)

    report = {
        "computed_at": ts.isoformat(),
        "active_trials": running,
        "expired_trials": expired,
        "expiring_within_days": expiring_within_days,
        "expiring_soon": len(expiring_soon),
        "expiring_owner_ids": expiring_soon,
    }
    logger.info(
        "[reports] trial expiry sweep",
        extra={"active_trials": running, "expired_trials": expired, "expiring_soon": len(expiring_soon)},
    )
    return report


def main(argv=None) -> dict:
    parser = argparse.ArgumentParser(description="Report trial expiry statistics (read-only)")
    parser.add_argument("--expiring-within-days", type=int, default=3)
    args = parser.parse_args(argv)

    configure_logging(settings.ENV)
    report = trial_expiry_report(store=SqlEntitlementStore(), expiring_within_days=args.expiring_within_days)
    print(json.dumps(report, indent=2))
    return report


if __name__ == "__main__":
    main()
