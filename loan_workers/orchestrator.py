"""
LoanPipeline -- DI container for the loan intake pipeline.

Contract:
    Composes the engine, the durable queue, the intake producer and the
    decision worker pool from one ``PipelineConfig``.  Single place where
    pipeline dependencies are wired; the CLI and tests build everything
    through it.

Architecture: loan_workers (top-level).  Translates ``loan_config`` values
    into kernel constructor arguments so the kernel never imports config.

Invariants enforced:
    - Clock injection: producer, queue and every worker share one Clock.
    - One session factory: every component opens sessions from the same
      factory, so all of them see the same database.
"""

from __future__ import annotations

from typing import Callable

from sqlalchemy import Engine
from sqlalchemy.orm import Session, sessionmaker

from loan_config import PipelineConfig, get_active_config
from loan_kernel.db.engine import create_tables, get_session_factory, init_engine_from_url
from loan_kernel.db.immutability import register_immutability_listeners
from loan_kernel.domain.clock import Clock, SystemClock
from loan_kernel.domain.decision import DecisionPolicy
from loan_kernel.logging_config import configure_logging, get_logger
from loan_kernel.services.intake_service import IntakeProducer
from loan_kernel.services.queue_service import DurableQueue
from loan_kernel.services.sequence_service import SequenceService

from loan_workers.pool import DecisionWorkerPool
from loan_workers.worker import DecisionWorker

logger = get_logger("workers.orchestrator")


class LoanPipeline:
    """DI container for the pipeline.

    Contract:
        - ``from_config()`` initializes the engine and returns a wired pipeline.
        - ``producer`` submits applications.
        - ``create_worker()`` / ``create_pool()`` build consumers.

    Non-goals:
        - Does NOT start the pool -- caller decides.
        - Does NOT create the schema unless ``init_database()`` is called.
    """

    def __init__(
        self,
        config: PipelineConfig,
        session_factory: sessionmaker[Session],
        engine: Engine | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.config = config
        self.session_factory = session_factory
        self.engine = engine
        self.clock = clock or SystemClock()

        self.policy = DecisionPolicy(
            min_credit_score=config.decision.min_credit_score,
            max_amount=config.decision.max_amount,
        )
        self.queue = DurableQueue(
            queue_name=config.queue.name,
            clock=self.clock,
            poll_interval=config.queue.poll_interval,
            end_dialog_on_close=config.queue.end_dialog_on_close,
            max_delivery_attempts=config.queue.max_delivery_attempts,
        )
        self.producer = IntakeProducer(
            session_factory,
            self.queue,
            clock=self.clock,
            deduplicate_transitions=config.audit.deduplicate_transitions,
        )
        register_immutability_listeners()

    # -------------------------------------------------------------------------
    # Factory
    # -------------------------------------------------------------------------

    @classmethod
    def from_config(
        cls,
        config: PipelineConfig | None = None,
        clock: Clock | None = None,
    ) -> LoanPipeline:
        """Create a pipeline, initializing the module-level engine.

        Args:
            config: Configuration to use; defaults to ``get_active_config()``.
            clock: Optional clock for deterministic testing.
        """
        config = config or get_active_config()
        configure_logging(level=config.logging.level)

        db = config.database
        engine = init_engine_from_url(
            db.url,
            echo=db.echo,
            pool_size=db.pool_size,
            max_overflow=db.max_overflow,
            busy_timeout=db.busy_timeout,
        )
        session_factory = get_session_factory()
        logger.info(
            "pipeline_initialized",
            extra={
                "config_id": config.config_id,
                "checksum": config.checksum,
                "queue_name": config.queue.name,
                "pool_size": config.workers.size,
            },
        )
        return cls(config, session_factory, engine=engine, clock=clock)

    def init_database(self, install_triggers: bool = True) -> None:
        """Create tables, audit triggers and sequence counters (idempotent)."""
        if self.engine is None:
            raise RuntimeError("Pipeline has no engine; build it with from_config()")
        create_tables(self.engine, install_triggers=install_triggers)
        session = self.session_factory()
        try:
            SequenceService(session).initialize_sequences()
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
        logger.info("database_initialized", extra={"install_triggers": install_triggers})

    # -------------------------------------------------------------------------
    # Consumers
    # -------------------------------------------------------------------------

    def create_worker(self, worker_id: str = "worker-1") -> DecisionWorker:
        """Create one DecisionWorker wired with the pipeline's dependencies."""
        workers = self.config.workers
        return DecisionWorker(
            self.session_factory,
            self.queue,
            clock=self.clock,
            policy=self.policy,
            worker_id=worker_id,
            dequeue_timeout=self.config.queue.dequeue_timeout,
            deduplicate_transitions=self.config.audit.deduplicate_transitions,
            backoff_initial=workers.backoff_initial,
            backoff_max=workers.backoff_max,
        )

    def create_pool(
        self,
        size: int | None = None,
        worker_factory: Callable[[str], DecisionWorker] | None = None,
    ) -> DecisionWorkerPool:
        """Create a DecisionWorkerPool; ``size`` overrides ``workers.size``.

        ``workers.idle_exit`` makes each worker stop at its first idle dequeue.
        """
        return DecisionWorkerPool(
            self.session_factory,
            self.queue,
            size=size or self.config.workers.size,
            worker_factory=worker_factory or self.create_worker,
            poll_interval=self.config.queue.poll_interval,
            idle_exit=self.config.workers.idle_exit,
        )
