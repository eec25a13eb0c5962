"""
Loan pipeline CLI -- operate the intake pipeline from a shell.

Initialize the database, submit applications, run the decision worker pool,
and inspect an application's status, history and audit trail.

Entry point: python -m scripts.cli <command>
"""

from scripts.cli.main import main

__all__ = ["main"]
