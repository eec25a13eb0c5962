"""
Loan Kernel

The transactional core of the loan intake pipeline:
- Atomic intake (client upsert, application insert, queue message)
- Durable, transactional queue with at-least-once delivery
- Forward-only application state machine
- Hash-chained audit of every row change
"""

__version__ = "0.1.0"
