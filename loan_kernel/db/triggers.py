"""
Module: loan_kernel.db.triggers
Responsibility: Installing, removing and verifying database-level append-only
    triggers (Layer 2 of 2).  This is the database-level complement to the
    ORM-level listeners in db/immutability.py.
Architecture position: Kernel > DB.  May import from db/ only.  MUST NOT
    import from models/, services/, domain/, or outer layers.

Invariants enforced (two triggers per table, UPDATE and DELETE):
    - audit_events: always immutable.
    - application_status_history: always immutable.
    - application_logs: always immutable.

Backends:
    - PostgreSQL: one shared plpgsql function raising an exception, bound by
      BEFORE UPDATE / BEFORE DELETE row triggers.
    - SQLite: BEFORE UPDATE / BEFORE DELETE triggers using RAISE(ABORT).

Failure modes:
    - A trigger violation surfaces as IntegrityError (SQLite) or
      InternalError/OperationalError (PostgreSQL) through SQLAlchemy.
"""

from sqlalchemy import text
from sqlalchemy.engine import Engine

from loan_kernel.logging_config import get_logger

logger = get_logger("db.triggers")

APPEND_ONLY_TABLES = (
    "audit_events",
    "application_status_history",
    "application_logs",
)

_OPERATIONS = ("update", "delete")


def _trigger_name(table: str, operation: str) -> str:
    return f"trg_{table}_append_only_{operation}"


ALL_TRIGGER_NAMES = [
    _trigger_name(table, operation)
    for table in APPEND_ONLY_TABLES
    for operation in _OPERATIONS
]

_PG_FUNCTION = """
CREATE OR REPLACE FUNCTION loan_append_only_guard() RETURNS trigger AS $$
BEGIN
    RAISE EXCEPTION 'Append-only table %: % is not allowed', TG_TABLE_NAME, TG_OP;
END;
$$ LANGUAGE plpgsql;
"""


def _postgres_install_statements() -> list[str]:
    statements = [_PG_FUNCTION]
    for table in APPEND_ONLY_TABLES:
        for operation in _OPERATIONS:
            name = _trigger_name(table, operation)
            statements.append(f"DROP TRIGGER IF EXISTS {name} ON {table};")
            statements.append(
                f"CREATE TRIGGER {name} BEFORE {operation.upper()} ON {table} "
                f"FOR EACH ROW EXECUTE FUNCTION loan_append_only_guard();"
            )
    return statements


def _postgres_drop_statements() -> list[str]:
    # CASCADE takes every trigger bound to the function with it, and works
    # whether or not the tables still exist
    return ["DROP FUNCTION IF EXISTS loan_append_only_guard() CASCADE;"]


def _sqlite_install_statements() -> list[str]:
    statements = []
    for table in APPEND_ONLY_TABLES:
        for operation in _OPERATIONS:
            statements.append(
                f"CREATE TRIGGER IF NOT EXISTS {_trigger_name(table, operation)} "
                f"BEFORE {operation.upper()} ON {table} "
                f"BEGIN SELECT RAISE(ABORT, 'Append-only table {table}: "
                f"{operation.upper()} is not allowed'); END;"
            )
    return statements


def _sqlite_drop_statements() -> list[str]:
    return [f"DROP TRIGGER IF EXISTS {name};" for name in ALL_TRIGGER_NAMES]


def _run(engine: Engine, statements: list[str]) -> None:
    with engine.begin() as conn:
        for statement in statements:
            conn.execute(text(statement))


def install_audit_triggers(engine: Engine) -> None:
    """
    Install database-level append-only triggers.

    Preconditions: Tables must exist (call after create_all()).
    Postconditions: All triggers in ALL_TRIGGER_NAMES are installed.
        Idempotent on both backends.
    """
    if engine.dialect.name == "postgresql":
        _run(engine, _postgres_install_statements())
    elif engine.dialect.name == "sqlite":
        _run(engine, _sqlite_install_statements())
    else:
        logger.warning(
            "audit_triggers_unsupported_dialect",
            extra={"dialect": engine.dialect.name},
        )
        return

    logger.info(
        "audit_triggers_installed",
        extra={"dialect": engine.dialect.name, "trigger_count": len(ALL_TRIGGER_NAMES)},
    )


def uninstall_audit_triggers(engine: Engine) -> None:
    """
    Remove database-level append-only triggers.

    Only for tests and table teardown; the ORM listeners remain the sole
    protection while the triggers are absent.
    """
    if engine.dialect.name == "postgresql":
        _run(engine, _postgres_drop_statements())
    elif engine.dialect.name == "sqlite":
        _run(engine, _sqlite_drop_statements())


def get_installed_triggers(engine: Engine) -> list[str]:
    """Return the installed append-only trigger names, sorted."""
    if engine.dialect.name == "postgresql":
        query = text("SELECT tgname FROM pg_trigger WHERE tgname LIKE 'trg_%_append_only_%'")
    elif engine.dialect.name == "sqlite":
        query = text(
            "SELECT name FROM sqlite_master "
            "WHERE type = 'trigger' AND name LIKE 'trg_%_append_only_%'"
        )
    else:
        return []

    with engine.connect() as conn:
        installed = {row[0] for row in conn.execute(query)}
    return sorted(installed & set(ALL_TRIGGER_NAMES))


def triggers_installed(engine: Engine) -> bool:
    """Check if all append-only triggers are installed."""
    return len(get_installed_triggers(engine)) == len(ALL_TRIGGER_NAMES)
