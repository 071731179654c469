"""
Email Delivery Queue

A persistent, priority-ordered, tenant-scoped email queue with atomic claim
semantics for competing workers, retry/backoff handling and crash recovery.
"""

__version__ = "1.0.0"
