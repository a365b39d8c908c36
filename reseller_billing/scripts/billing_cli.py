"""
Reseller Billing CLI
====================

Entry point for the scheduler jobs and operator diagnostics.

Usage:
    python -m reseller_billing.scripts.billing_cli init-db
    python -m reseller_billing.scripts.billing_cli charge [--reseller-id N] [--dry-run] [--force]
    python -m reseller_billing.scripts.billing_cli reenable
    python -m reseller_billing.scripts.billing_cli enforce-traffic
    python -m reseller_billing.scripts.billing_cli diagnose RESELLER_ID

Typical crontab:
    0 * * * *   reseller-billing charge
    */5 * * * * reseller-billing reenable
    */5 * * * * reseller-billing enforce-traffic
"""

import argparse
import json
import sys
from dataclasses import asdict
from typing import List, Optional

from reseller_billing.config import settings
from reseller_billing.core.database import close_db, init_db
from reseller_billing.core.errors import BillingError
from reseller_billing.core.structured_logging import setup_logging
from reseller_billing.services.wiring import build_services


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="reseller-billing", description="Reseller wallet charging and suspension jobs")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create or migrate the billing tables")

    charge = sub.add_parser("charge", help="Run the wallet charging cycle")
    charge.add_argument("--reseller-id", type=int, default=None, help="Only charge this reseller")
    charge.add_argument("--dry-run", action="store_true", help="Compute costs without persisting anything")
    charge.add_argument("--force", action="store_true", help="Ignore the recent-snapshot idempotency window")

    sub.add_parser("reenable", help="Re-enable configs of recovered resellers")
    sub.add_parser("enforce-traffic", help="Suspend traffic resellers over quota or out of window")

    diagnose = sub.add_parser("diagnose", help="Show the billing picture of one reseller")
    diagnose.add_argument("reseller_id", type=int)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    setup_logging(log_dir=settings.log_dir, log_level=settings.log_level.upper())
    try:
        return _run(args)
    finally:
        close_db()


def _run(args: argparse.Namespace) -> int:
    if args.command == "init-db":
        init_db()
        print("Database initialized.")
        return 0

    services = build_services()
    try:
        if args.command == "charge":
            summary = services.scheduler.run_charge_cycle(
                reseller_id=args.reseller_id, dry_run=args.dry_run, force=args.force
            )
            output = summary.as_dict()
            if args.dry_run or args.reseller_id is not None:
                output["results"] = {rid: asdict(r) for rid, r in summary.results.items()}
        elif args.command == "reenable":
            output = asdict(services.scheduler.run_reenable_pass())
        elif args.command == "enforce-traffic":
            output = {"suspended": services.scheduler.run_traffic_enforcement()}
        else:
            output = services.scheduler.diagnose(args.reseller_id)
    except BillingError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    print(json.dumps(output, indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
