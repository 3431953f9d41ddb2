#!/usr/bin/env python3
"""
EduPay Scheduler Entry Point

Runs the periodic sweeps from cron or a systemd timer:

    python -m program_payments sweep-overdue
    python -m program_payments sweep-reminders
    python -m program_payments verify-audit
"""

import argparse
import json
import sys
from typing import List, Optional

from .config import get_config
from .logging_config import setup_logging
from .schedule import as_utc
from .service import ProgramPaymentService


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="program_payments", description="EduPay scheduled jobs")
    parser.add_argument("--database-url", help="Override EDUPAY_DATABASE_URL")
    sub = parser.add_subparsers(dest="command", required=True)

    overdue = sub.add_parser("sweep-overdue", help="Freeze programs that missed a payment")
    overdue.add_argument("--now", help="ISO timestamp to treat as the current time")

    reminders = sub.add_parser("sweep-reminders", help="Remind learners with a payment due")
    reminders.add_argument("--today", help="ISO date to treat as today")

    sub.add_parser("verify-audit", help="Check the audit trail hash chain")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    cfg = get_config()
    if args.database_url:
        cfg = cfg.model_copy(update={"database_url": args.database_url})

    setup_logging(cfg.log_level, log_format=cfg.log_format, log_file=cfg.log_file)
    service = ProgramPaymentService.from_config(cfg)

    try:
        if args.command == "sweep-overdue":
            result = service.sweep_overdue(as_utc(args.now) if args.now else None).to_dict()
        elif args.command == "sweep-reminders":
            result = service.sweep_reminders(as_utc(args.today) if args.today else None).to_dict()
        else:
            result = service.audit_trail.verify_integrity()
    finally:
        service.close()

    print(json.dumps(result, indent=2, default=str))
    if args.command == "verify-audit":
        return 0 if result["valid"] else 1
    return 1 if result["failed"] else 0


if __name__ == "__main__":
    sys.exit(main())
