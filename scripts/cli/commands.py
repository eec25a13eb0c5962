"""CLI command handlers.  Each takes the wired pipeline and parsed args and returns an exit code."""

import signal
import threading
from uuid import UUID

from loan_kernel.db.engine import session_scope
from loan_kernel.exceptions import (
    ApplicationNotFoundError,
    AuditChainBrokenError,
    SubmissionFailedError,
    ValidationError,
)
from loan_kernel.models.application import LoanApplication
from loan_kernel.services.application_store import ApplicationStore
from loan_kernel.services.auditor_service import AuditorService

from scripts.cli.util import enable_quiet_logging, fmt_amount, fmt_time, restore_logging


def _parse_uuid(raw: str) -> UUID | None:
    try:
        return UUID(raw)
    except ValueError:
        print(f"  ERROR: not an application id: {raw!r}")
        return None


def cmd_init_db(pipeline, args) -> int:
    pipeline.init_database(install_triggers=not args.no_triggers)
    print(f"  Database ready: {pipeline.engine.url.render_as_string(hide_password=True)}")
    return 0


def cmd_submit(pipeline, args) -> int:
    try:
        response = pipeline.producer.submit(
            first_name=args.first_name,
            last_name=args.last_name,
            email=args.email,
            phone=args.phone,
            credit_score=args.credit_score,
            amount=args.amount,
            term_units=args.term,
            purpose=args.purpose,
            actor=args.actor,
        )
    except ValidationError as exc:
        print(f"  REJECTED: {exc}")
        return 2
    except SubmissionFailedError as exc:
        print(f"  ERROR: {exc}")
        return 1

    print(f"  application_id: {response['application_id']}")
    print(f"  status:         {response['status']}")
    return 0


def cmd_run_workers(pipeline, args) -> int:
    pool = pipeline.create_pool(size=args.workers)

    if args.drain:
        drained = pool.drain(timeout=args.timeout)
        pool.stop()
        _print_totals(pool.totals())
        if not drained:
            print(f"  WARNING: queue not drained within {args.timeout:g}s")
            return 1
        return 0

    stop = threading.Event()
    previous = signal.signal(signal.SIGTERM, lambda signum, frame: stop.set())
    pool.start()
    print(f"  {pool.size} workers running on {pipeline.queue.queue_name}. Ctrl-C to stop.")
    try:
        # idle_exit pools finish on their own
        while pool.is_running and not stop.wait(timeout=1.0):
            pass
    except KeyboardInterrupt:
        print()
    finally:
        signal.signal(signal.SIGTERM, previous)
        print("  Stopping workers...")
        pool.stop()
    _print_totals(pool.totals())
    return 0


def _print_totals(totals: dict[str, int]) -> None:
    print("  Outcomes:")
    for name, count in sorted(totals.items()):
        if count:
            print(f"    {name:<16} {count}")


def _load_application(session, application_id: UUID) -> LoanApplication | None:
    try:
        return ApplicationStore(session).get_application(application_id)
    except ApplicationNotFoundError as exc:
        print(f"  {exc}")
        return None


def cmd_status(pipeline, args) -> int:
    application_id = _parse_uuid(args.application_id)
    if application_id is None:
        return 2
    with session_scope(pipeline.session_factory) as session:
        application = _load_application(session, application_id)
        if application is None:
            return 1
        client = ApplicationStore(session).get_client(application.client_id)
        print(f"  application: {application.id}")
        print(f"  status:      {application.status}")
        print(f"  client:      {client.first_name} {client.last_name} <{client.email}>")
        print(f"  credit:      {client.credit_score}")
        print(f"  amount:      {fmt_amount(application.amount)}")
        print(f"  term:        {application.term_units}")
        print(f"  purpose:     {application.purpose}")
        print(f"  submitted:   {fmt_time(application.application_date)}")
    return 0


def cmd_trace(pipeline, args) -> int:
    application_id = _parse_uuid(args.application_id)
    if application_id is None:
        return 2
    with session_scope(pipeline.session_factory) as session:
        store = ApplicationStore(session)
        application = _load_application(session, application_id)
        if application is None:
            return 1

        print(f"  Status history ({application.status}):")
        for row in store.get_status_history(application_id):
            print(
                f"    #{row.seq:<5} {fmt_time(row.changed_at)}  "
                f"{row.old_status or '-':>10} -> {row.new_status:<10} "
                f"{row.reason or ''}  [{row.changed_by or '-'}]"
            )

        print("  Events:")
        for row in store.get_events(application_id):
            print(f"    {fmt_time(row.logged_at)}  {row.kind:<12} {row.message}")

        trace = AuditorService(session).get_trace(LoanApplication.__tablename__, application_id)
        print(f"  Audit trail ({len(trace.entries)} events):")
        for entry in trace.entries:
            print(f"    #{entry.seq:<5} {entry.action:<7} {entry.actor or '-':<20} {entry.hash[:16]}")
    return 0


def cmd_verify_audit(pipeline, args) -> int:
    muted = enable_quiet_logging()
    try:
        with session_scope(pipeline.session_factory) as session:
            auditor = AuditorService(session)
            auditor.validate_chain()
            count = len(auditor.get_recent_events(limit=1))
    except AuditChainBrokenError as exc:
        print(f"  AUDIT CHAIN BROKEN: {exc}")
        return 1
    finally:
        restore_logging(muted)
    print("  Audit chain valid." if count else "  Audit chain empty.")
    return 0
