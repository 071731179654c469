"""
Email queue worker.
Contains the polling worker and its send-side helpers.
"""

from mailqueue.worker.backoff import calculate_next_retry_time
from mailqueue.worker.circuit_breaker import IntegrationCircuitBreaker
from mailqueue.worker.main import EmailQueueWorker
from mailqueue.worker.rate_limit import IntegrationRateLimiter
from mailqueue.worker.senders import register_sender, send_entry

__all__ = [
    "EmailQueueWorker",
    "IntegrationCircuitBreaker",
    "IntegrationRateLimiter",
    "calculate_next_retry_time",
    "register_sender",
    "send_entry",
]
