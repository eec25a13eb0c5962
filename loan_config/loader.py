"""
Configuration Loader (``loan_config.loader``).

Responsibility
--------------
Loads a YAML configuration document and parses it into the frozen
``loan_config.schema`` dataclasses.  Runtime code should not call this
directly; the single public entry point is
``loan_config.get_active_config()``.

Invariants enforced
-------------------
* Every section is optional and falls back to the schema defaults, but a
  key that IS present must have the right type and range.
* Unknown keys are rejected, so a typo never silently becomes a default.
* ``compute_checksum`` produces a deterministic SHA-256 hash of the
  document for configuration identity and change detection.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Wrong type, out-of-range value or unknown key  -> ``ConfigurationError``.
"""

from __future__ import annotations

import hashlib
import json
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml

from loan_config.schema import (
    AuditConfig,
    DatabaseConfig,
    DecisionPolicyConfig,
    LoggingConfig,
    PipelineConfig,
    QueueConfig,
    WorkerPoolConfig,
)
from loan_kernel.exceptions import ConfigurationError

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
        ConfigurationError: if the document is not a mapping.
    """
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigurationError(str(path), "document must be a mapping")
    return data


# ---------------------------------------------------------------------------
# Scalar helpers
# ---------------------------------------------------------------------------


def _section(data: dict[str, Any], name: str, allowed: tuple[str, ...]) -> dict[str, Any]:
    section = data.get(name) or {}
    if not isinstance(section, dict):
        raise ConfigurationError(name, "section must be a mapping")
    unknown = sorted(set(section) - set(allowed))
    if unknown:
        raise ConfigurationError(name, f"unknown keys {unknown}")
    return section


def parse_bool(key: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    raise ConfigurationError(key, f"expected true/false, got {value!r}")


def parse_int(key: str, value: Any, minimum: int | None = None) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigurationError(key, f"expected an integer, got {value!r}")
    if minimum is not None and value < minimum:
        raise ConfigurationError(key, f"must be >= {minimum}, got {value}")
    return value


def parse_seconds(key: str, value: Any) -> float:
    """Non-negative number of seconds."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigurationError(key, f"expected a number of seconds, got {value!r}")
    if value < 0:
        raise ConfigurationError(key, f"must be >= 0, got {value}")
    return float(value)


def parse_decimal(key: str, value: Any) -> Decimal:
    # Floats go through str() so 10000.5 stays 10000.5, not its binary expansion
    if isinstance(value, bool):
        raise ConfigurationError(key, f"expected a decimal amount, got {value!r}")
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        raise ConfigurationError(key, f"expected a decimal amount, got {value!r}") from None
    if not amount.is_finite() or amount <= 0:
        raise ConfigurationError(key, f"must be a positive amount, got {value!r}")
    return amount


def parse_text(key: str, value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigurationError(key, "expected a non-empty string")
    return value.strip()


# ---------------------------------------------------------------------------
# Sections
# ---------------------------------------------------------------------------


def parse_database(data: dict[str, Any]) -> DatabaseConfig:
    """Parse a DatabaseConfig from the ``database`` section."""
    s = _section(data, "database", ("url", "echo", "pool_size", "max_overflow", "busy_timeout"))
    default = DatabaseConfig()
    return DatabaseConfig(
        url=parse_text("database.url", s["url"]) if "url" in s else default.url,
        echo=parse_bool("database.echo", s.get("echo", default.echo)),
        pool_size=parse_int("database.pool_size", s.get("pool_size", default.pool_size), 1),
        max_overflow=parse_int(
            "database.max_overflow", s.get("max_overflow", default.max_overflow), 0,
        ),
        busy_timeout=parse_seconds(
            "database.busy_timeout", s.get("busy_timeout", default.busy_timeout),
        ),
    )


def parse_queue(data: dict[str, Any]) -> QueueConfig:
    """Parse a QueueConfig from the ``queue`` section."""
    s = _section(
        data, "queue", (
            "name",
            "poll_interval",
            "dequeue_timeout",
            "end_dialog_on_close",
            "max_delivery_attempts",
        ),
    )
    default = QueueConfig()
    poll_interval = parse_seconds("queue.poll_interval", s.get("poll_interval", default.poll_interval))
    if poll_interval == 0:
        raise ConfigurationError("queue.poll_interval", "must be > 0")
    return QueueConfig(
        name=parse_text("queue.name", s["name"]) if "name" in s else default.name,
        poll_interval=poll_interval,
        dequeue_timeout=parse_seconds(
            "queue.dequeue_timeout", s.get("dequeue_timeout", default.dequeue_timeout),
        ),
        end_dialog_on_close=parse_bool(
            "queue.end_dialog_on_close",
            s.get("end_dialog_on_close", default.end_dialog_on_close),
        ),
        max_delivery_attempts=parse_int(
            "queue.max_delivery_attempts",
            s.get("max_delivery_attempts", default.max_delivery_attempts),
            1,
        ),
    )


def parse_workers(data: dict[str, Any]) -> WorkerPoolConfig:
    """Parse a WorkerPoolConfig from the ``workers`` section."""
    s = _section(data, "workers", ("size", "idle_exit", "backoff_initial", "backoff_max"))
    default = WorkerPoolConfig()
    backoff_initial = parse_seconds(
        "workers.backoff_initial", s.get("backoff_initial", default.backoff_initial),
    )
    backoff_max = parse_seconds("workers.backoff_max", s.get("backoff_max", default.backoff_max))
    if backoff_max < backoff_initial:
        raise ConfigurationError("workers.backoff_max", "must be >= workers.backoff_initial")
    return WorkerPoolConfig(
        size=parse_int("workers.size", s.get("size", default.size), 1),
        idle_exit=parse_bool("workers.idle_exit", s.get("idle_exit", default.idle_exit)),
        backoff_initial=backoff_initial,
        backoff_max=backoff_max,
    )


def parse_decision(data: dict[str, Any]) -> DecisionPolicyConfig:
    """Parse a DecisionPolicyConfig from the ``decision`` section."""
    s = _section(data, "decision", ("min_credit_score", "max_amount"))
    default = DecisionPolicyConfig()
    return DecisionPolicyConfig(
        min_credit_score=parse_int(
            "decision.min_credit_score", s.get("min_credit_score", default.min_credit_score), 0,
        ),
        max_amount=parse_decimal("decision.max_amount", s.get("max_amount", default.max_amount)),
    )


def parse_audit(data: dict[str, Any]) -> AuditConfig:
    s = _section(data, "audit", ("deduplicate_transitions",))
    return AuditConfig(
        deduplicate_transitions=parse_bool(
            "audit.deduplicate_transitions",
            s.get("deduplicate_transitions", AuditConfig().deduplicate_transitions),
        ),
    )


def parse_logging(data: dict[str, Any]) -> LoggingConfig:
    s = _section(data, "logging", ("level",))
    level = parse_text("logging.level", s.get("level", LoggingConfig().level)).upper()
    if level not in _LOG_LEVELS:
        raise ConfigurationError("logging.level", f"must be one of {', '.join(_LOG_LEVELS)}")
    return LoggingConfig(level=level)


_TOP_LEVEL_KEYS = (
    "config_id", "version", "database", "queue", "workers", "decision", "audit", "logging",
)


def parse_pipeline_config(data: dict[str, Any]) -> PipelineConfig:
    """
    Parse a whole configuration document.

    Postconditions:
        - ``checksum`` is ``compute_checksum(data)`` of the input document.
    """
    unknown = sorted(set(data) - set(_TOP_LEVEL_KEYS))
    if unknown:
        raise ConfigurationError("<root>", f"unknown keys {unknown}")
    return PipelineConfig(
        config_id=parse_text("config_id", data.get("config_id", "default")),
        version=parse_int("version", data.get("version", 1), 1),
        database=parse_database(data),
        queue=parse_queue(data),
        workers=parse_workers(data),
        decision=parse_decision(data),
        audit=parse_audit(data),
        logging=parse_logging(data),
        checksum=compute_checksum(data),
    )


def compute_checksum(data: dict[str, Any]) -> str:
    """
    Compute SHA-256 checksum of canonical JSON serialization.

    Identical ``data`` always produces identical checksums.
    """
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
