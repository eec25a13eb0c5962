"""
PipelineConfig schema.

Typed, frozen view of one pipeline configuration document.  YAML files are
parsed into these types by ``loan_config.loader``; runtime components only
ever see the frozen dataclasses, never raw dicts.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

# ---------------------------------------------------------------------------
# Infrastructure
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DatabaseConfig:
    """Connection settings for the shared database."""

    url: str = "sqlite:///loan_pipeline.db"
    echo: bool = False
    pool_size: int = 20
    max_overflow: int = 10
    busy_timeout: float = 30.0  # SQLite lock wait, seconds


@dataclass(frozen=True)
class QueueConfig:
    """The processing queue and how consumers poll it."""

    name: str = "LoanApplicationQueue"
    poll_interval: float = 0.1
    dequeue_timeout: float = 1.0
    end_dialog_on_close: bool = True
    max_delivery_attempts: int = 5  # failed cycles before a message is dead-lettered


@dataclass(frozen=True)
class WorkerPoolConfig:
    size: int = 5
    idle_exit: bool = False  # stop each worker at its first idle dequeue
    backoff_initial: float = 0.5
    backoff_max: float = 30.0


# ---------------------------------------------------------------------------
# Business rules
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DecisionPolicyConfig:
    """Approval thresholds: score above the minimum, amount below the cap."""

    min_credit_score: int = 600
    max_amount: Decimal = Decimal("10000")


@dataclass(frozen=True)
class AuditConfig:
    deduplicate_transitions: bool = False


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"


# ---------------------------------------------------------------------------
# Root
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PipelineConfig:
    """
    The sole runtime configuration artifact.

    ``checksum`` identifies the source document (see
    ``loader.compute_checksum``); two configs with the same checksum were
    parsed from identical documents.
    """

    config_id: str = "default"
    version: int = 1
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    workers: WorkerPoolConfig = field(default_factory=WorkerPoolConfig)
    decision: DecisionPolicyConfig = field(default_factory=DecisionPolicyConfig)
    audit: AuditConfig = field(default_factory=AuditConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    checksum: str = ""
