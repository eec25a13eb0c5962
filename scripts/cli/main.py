"""CLI entry: argument parsing, pipeline wiring, command dispatch."""

import argparse
import sys
from decimal import Decimal

from loan_config import get_active_config
from loan_kernel.exceptions import ConfigurationError
from loan_workers.orchestrator import LoanPipeline

from scripts.cli.commands import (
    cmd_init_db,
    cmd_run_workers,
    cmd_status,
    cmd_submit,
    cmd_trace,
    cmd_verify_audit,
)

EPILOG = """\
Examples:
  python -m scripts.cli init-db
  python -m scripts.cli submit --first-name Ada --last-name Lovelace \\
      --email ada@example.com --credit-score 720 --amount 5000 --term 12 --purpose Car
  python -m scripts.cli run-workers --drain
  python -m scripts.cli status <application_id>
  python -m scripts.cli trace <application_id>
  python -m scripts.cli verify-audit

Environment:
  LOAN_PIPELINE_CONFIG  YAML configuration file (default: loan_config/sets/default.yaml)
  DATABASE_URL          Overrides database.url
"""


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="python -m scripts.cli",
        description="Loan application intake pipeline",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=EPILOG,
    )
    parser.add_argument("--config", help="Configuration file (overrides LOAN_PIPELINE_CONFIG)")
    sub = parser.add_subparsers(dest="command", required=True)

    init_db = sub.add_parser("init-db", help="Create tables, triggers and sequences")
    init_db.add_argument("--no-triggers", action="store_true", help="Skip append-only triggers")
    init_db.set_defaults(handler=cmd_init_db)

    submit = sub.add_parser("submit", help="Submit one loan application")
    submit.add_argument("--first-name", required=True)
    submit.add_argument("--last-name", required=True)
    submit.add_argument("--email", required=True)
    submit.add_argument("--phone")
    submit.add_argument("--credit-score", type=int, required=True)
    submit.add_argument("--amount", type=Decimal, required=True)
    submit.add_argument("--term", type=int, required=True, help="Loan term in units")
    submit.add_argument("--purpose", required=True)
    submit.add_argument("--actor", default="cli")
    submit.set_defaults(handler=cmd_submit)

    run = sub.add_parser("run-workers", help="Run the decision worker pool")
    run.add_argument("--workers", type=int, help="Pool size (default: workers.size)")
    run.add_argument("--drain", action="store_true", help="Exit once the queue is empty")
    run.add_argument("--timeout", type=float, default=300.0, help="Drain timeout in seconds")
    run.set_defaults(handler=cmd_run_workers)

    status = sub.add_parser("status", help="Show one application")
    status.add_argument("application_id")
    status.set_defaults(handler=cmd_status)

    trace = sub.add_parser("trace", help="Status history, events and audit trail")
    trace.add_argument("application_id")
    trace.set_defaults(handler=cmd_trace)

    verify = sub.add_parser("verify-audit", help="Validate the audit hash chain")
    verify.set_defaults(handler=cmd_verify_audit)

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        pipeline = LoanPipeline.from_config(get_active_config(args.config))
    except (ConfigurationError, FileNotFoundError) as exc:
        print(f"  ERROR: {exc}", file=sys.stderr)
        return 1
    return args.handler(pipeline, args)
