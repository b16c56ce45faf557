"""
Delayed Job Queue

A database-backed work queue that lets request-handling code hand off slow or
unreliable operations to background workers. Ownership of a job is arbitrated
by single-row conditional updates against the shared store, so any number of
worker processes can poll the same table.
"""

__version__ = "1.0.0"
