"""
Backfill users from Clerk.

Pages through the Clerk users API and reconciles each user (full profile
tier, degrading as usual). Dry-run by default.
"""
import argparse
import logging
import os
import time
from typing import Dict, Iterator, List, Optional

import httpx

from interview_billing.core.config import settings
from interview_billing.core.logging import configure_logging
from interview_billing.features.users.service import profile_from_payload, reconcile

logger = logging.getLogger("interview_billing")

PAGE_SIZE = 100


def _parse_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def iter_clerk_users(client: httpx.Client, *, page_size: int = PAGE_SIZE) -> Iterator[Dict]:
    offset = 0
    while True:
        response = client.get("/users", params={"limit": page_size, "offset": offset, "order_by": "created_at"})
        if response.status_code >= 300:
            raise RuntimeError(f"Clerk user listing failed: {response.status_code} {response.text}")
        page: List[Dict] = response.json()
        yield from page
        if len(page) < page_size:
            return
        offset += page_size


def clerk_client(transport: Optional[httpx.BaseTransport] = None) -> httpx.Client:
    if not settings.CLERK_SECRET_KEY:
        raise RuntimeError("CLERK_SECRET_KEY is not configured")
    return httpx.Client(
        base_url=settings.CLERK_API_BASE,
        headers={"Authorization": f"Bearer {settings.CLERK_SECRET_KEY}"},
        timeout=10.0,
        transport=transport,
    )


def run_sync(
    *,
    dry_run: bool = True,
    per_minute: int = 0,
    transport: Optional[httpx.BaseTransport] = None,
) -> Dict:
    results = {"seen": 0, "synced": 0, "failed": 0, "dry_run": dry_run}
    delay = 0 if per_minute <= 0 else max(0.0, 60.0 / float(per_minute))

    with clerk_client(transport) as client:
        for payload in iter_clerk_users(client):
            results["seen"] += 1
            if dry_run:
                continue
            try:
                reconcile(profile_from_payload(payload))
                results["synced"] += 1
            except Exception as exc:
                logger.warning(
                    "[clerk-sync] user reconcile failed",
                    extra={"external_id": payload.get("id"), "error": str(exc)},
                )
                results["failed"] += 1
            if delay:
                time.sleep(delay)

    return results


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Backfill users from Clerk into the billing store.")
    parser.add_argument("--dry-run", dest="dry_run", action="store_true", help="List users without writing.")
    parser.add_argument("--live", dest="dry_run", action="store_false", help="Reconcile every user.")
    parser.add_argument("--per-minute", dest="per_minute", type=int, default=int(os.getenv("CLERK_SYNC_PER_MINUTE", "0")))
    parser.set_defaults(dry_run=_parse_bool(os.getenv("CLERK_SYNC_DRY_RUN", "1"), True))
    args = parser.parse_args(argv)

    configure_logging(settings.ENV)
    print(run_sync(dry_run=args.dry_run, per_minute=args.per_minute))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
