"""
loan_workers -- decision workers and pipeline wiring.

Consumers of the processing queue: ``DecisionWorker`` runs one serial
dequeue-decide-commit loop, ``DecisionWorkerPool`` supervises N of them in
threads, and ``LoanPipeline`` composes everything from configuration.
"""

from loan_workers.orchestrator import LoanPipeline
from loan_workers.pool import DecisionWorkerPool
from loan_workers.worker import DecisionWorker, WorkOutcome, WorkResult

__all__ = [
    "DecisionWorker",
    "DecisionWorkerPool",
    "LoanPipeline",
    "WorkOutcome",
    "WorkResult",
]
