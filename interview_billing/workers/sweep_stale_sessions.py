"""Heartbeat backup: end interview sessions whose client went silent."""
import argparse
import logging
from typing import Optional

from interview_billing.core.config import settings
from interview_billing.core.logging import configure_logging
from interview_billing.features.sessions.service import find_stale_sessions, sweep_stale_sessions

logger = logging.getLogger("interview_billing")


def run_sweep(*, stale_after_seconds: Optional[int] = None, dry_run: bool = False) -> dict:
    stale_after = stale_after_seconds or settings.SESSION_STALE_AFTER_SECONDS
    if dry_run:
        candidates = find_stale_sessions(stale_after)
        result = {"stale_after_seconds": stale_after, "dry_run": True, "candidates": len(candidates), "ended": 0, "minutes": 0}
    else:
        deductions = sweep_stale_sessions(stale_after)
        charged = [d for d in deductions if not d.already_deducted]
        result = {
            "stale_after_seconds": stale_after,
            "dry_run": False,
            "candidates": len(deductions),
            "ended": len(charged),
            "minutes": sum(d.minutes for d in charged),
        }

    logger.info("[sweeper] stale session sweep", extra=result)
    return result


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="End interview sessions with no recent heartbeat.")
    parser.add_argument("--stale-after", dest="stale_after", type=int, default=None, help="Seconds without heartbeat.")
    parser.add_argument("--dry-run", dest="dry_run", action="store_true", help="Only count stale sessions.")
    args = parser.parse_args(argv)

    configure_logging(settings.ENV)
    print(run_sweep(stale_after_seconds=args.stale_after, dry_run=args.dry_run))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
