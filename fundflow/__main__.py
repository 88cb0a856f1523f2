#!/usr/bin/env python3
"""
Fundflow maintenance entry point

    python -m fundflow reconcile
    python -m fundflow verify-audit
    python -m fundflow stats <account_id>
"""

import argparse
import json
import sys

from .config import get_config
from .logging_config import setup_logging
from .system import TransferSystem


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="fundflow", description="Fundflow maintenance commands")
    parser.add_argument("--database-url", help="Override FUNDFLOW_DATABASE_URL")
    subparsers = parser.add_subparsers(dest="command", required=True)

    reconcile = subparsers.add_parser("reconcile", help="Resolve orphaned pending transfers")
    reconcile.add_argument("--grace-seconds", type=int, help="Only touch records older than this")

    subparsers.add_parser("verify-audit", help="Verify the audit hash chain")

    stats = subparsers.add_parser("stats", help="Completed transfer totals for an account")
    stats.add_argument("account_id")

    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    config = get_config()
    overrides = {}
    if args.database_url:
        overrides["database_url"] = args.database_url
    if getattr(args, "grace_seconds", None) is not None:
        overrides["reconciliation_grace_seconds"] = args.grace_seconds
    if overrides:
        config = config.model_copy(update=overrides)

    setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)

    system = TransferSystem.from_config(config)
    try:
        if args.command == "reconcile":
            result = system.reconciler.reconcile().to_dict()
        elif args.command == "verify-audit":
            result = system.audit_trail.verify_integrity()
        else:
            result = system.audit_trail.get_stats(args.account_id).to_dict()
    finally:
        system.storage.close()

    print(json.dumps(result, indent=2, default=str))
    if args.command == "verify-audit" and not result["valid"]:
        return 1
    if args.command == "reconcile" and result["inconsistent"]:
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
