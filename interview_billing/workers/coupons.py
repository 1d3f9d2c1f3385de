"""Operator CLI for coupon codes."""
import argparse
from datetime import datetime, timezone

from interview_billing.core.config import settings
from interview_billing.core.errors import AppError
from interview_billing.core.logging import configure_logging
from interview_billing.features.credits.service import create_coupon, get_coupon, set_coupon_active


def _parse_expiry(value):
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Manage coupon codes.")
    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create", help="Create a coupon.")
    create.add_argument("code")
    create.add_argument("minutes", type=int)
    create.add_argument("--description")
    create.add_argument("--expires-at", dest="expires_at", help="ISO-8601 timestamp (UTC if no offset).")
    create.add_argument("--max-redemptions", dest="max_redemptions", type=int)

    for name, help_text in (("activate", "Re-enable a coupon."), ("deactivate", "Disable a coupon.")):
        toggle = sub.add_parser(name, help=help_text)
        toggle.add_argument("code")

    show = sub.add_parser("show", help="Print a coupon.")
    show.add_argument("code")
    return parser


def run(args) -> dict:
    if args.command == "create":
        coupon = create_coupon(
            args.code,
            args.minutes,
            description=args.description,
            expires_at=_parse_expiry(args.expires_at),
            max_redemptions=args.max_redemptions,
        )
    elif args.command in ("activate", "deactivate"):
        coupon = set_coupon_active(args.code, args.command == "activate")
    else:
        coupon = get_coupon(args.code)

    if coupon is None:
        return {"error": f"Coupon {args.code} not found"}
    return coupon.model_dump(mode="json")


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(settings.ENV)
    try:
        result = run(args)
    except AppError as exc:
        print({"error": exc.message})
        return 1
    print(result)
    return 0 if "error" not in result else 1


if __name__ == "__main__":
    raise SystemExit(main())
