#!/usr/bin/env python3
"""
Create an access code (admin, out-of-band).

Usage:
    python -m entitlement_engine.scripts.create_access_code WELCOME30 --days 30
    python -m entitlement_engine.scripts.create_access_code PARTNER --days 14 \\
        --max-redemptions 0 --expires-at 2026-12-31T00:00:00Z --description "partner launch"

`--max-redemptions 0` means unlimited.
"""
import argparse
import json
import sys
from datetime import datetime

from entitlement_engine.core.config import settings
from entitlement_engine.core.database import create_all_tables
from entitlement_engine.core.errors import ValidationError
from entitlement_engine.core.logging import configure_logging
from entitlement_engine.features.access_codes.service import create_access_code
from entitlement_engine.features.entitlements.store import EntitlementStore, SqlEntitlementStore


def _parse_datetime(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def run(argv=None, store: EntitlementStore = None) -> int:
    parser = argparse.ArgumentParser(description="Create an access code that grants trial days")
    parser.add_argument("code")
    parser.add_argument("--days", type=int, required=True, help="Trial days granted per redemption")
    parser.add_argument("--max-redemptions", type=int, default=1)
    parser.add_argument("--expires-at", type=_parse_datetime, default=None)
    parser.add_argument("--description", default=None)
    args = parser.parse_args(argv)

    if store is None:
        create_all_tables()
        store = SqlEntitlementStore()

    try:
        created = create_access_code(
            args.code,
            args.days,
            store=store,
            max_redemptions=args.max_redemptions or None,
            expires_at=args.expires_at,
            description=args.description,
        )
    except ValidationError as e:
        print(f"ERROR: {e.message}", file=sys.stderr)
        return 1

    print(json.dumps(created.model_dump(mode="json"), indent=2))
    return 0


if __name__ == "__main__":
    configure_logging(settings.ENV)
    sys.exit(run())
