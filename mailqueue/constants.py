"""
Application constants.
Centralized location for all constant values used across the application.
"""

from datetime import timedelta
from enum import StrEnum


class EmailQueueStatus(StrEnum):
    """
    Queue entry lifecycle states.

    There is no "sent" state: entries are deleted once delivered.

    State transitions:
    - PENDING -> PROCESSING (claimed, attempts + 1)
    - PROCESSING -> deleted (sent)
    - PROCESSING -> FAILED (send failed, retry scheduled)
    - PROCESSING -> PROCESSING (reclaimed after the stuck timeout)
    - FAILED -> PROCESSING (claimed once next_retry_at has elapsed)
    - any -> PENDING (voluntary reschedule, attempts untouched)
    """

    PENDING = "pending"
    PROCESSING = "processing"
    FAILED = "failed"


class EmailQueueSourceType(StrEnum):
    """Origin of a queued email."""

    BROADCAST = "broadcast"
    AUTOMATION = "automation"
    TRANSACTIONAL = "transactional"


# Priorities (lower = serviced first)
EMAIL_QUEUE_PRIORITY_TRANSACTIONAL = 1
EMAIL_QUEUE_PRIORITY_MARKETING = 5

# Default values
DEFAULT_PRIORITY = EMAIL_QUEUE_PRIORITY_MARKETING
DEFAULT_MAX_ATTEMPTS = 3

# A processing entry untouched for this long is presumed abandoned
STUCK_PROCESSING_TIMEOUT = timedelta(minutes=2)

# Statuses a claim may start from (besides stale processing)
CLAIMABLE_STATUSES = (EmailQueueStatus.PENDING, EmailQueueStatus.FAILED)

# Metrics names
METRIC_QUEUE_DEPTH = "email_queue_depth"
METRIC_EMAILS_ENQUEUED = "email_queue_enqueued_total"
METRIC_EMAILS_CLAIMED = "email_queue_claimed_total"
METRIC_CLAIMS_RACE_LOST = "email_queue_claim_race_lost_total"
METRIC_EMAILS_SENT = "email_queue_sent_total"
METRIC_EMAILS_FAILED = "email_queue_failed_total"
METRIC_EMAILS_RESCHEDULED = "email_queue_rescheduled_total"
METRIC_SEND_DURATION = "email_queue_send_duration_seconds"

# Trace span names
SPAN_ENQUEUE = "email_queue.enqueue"
SPAN_FETCH_PENDING = "email_queue.fetch_pending"
SPAN_CLAIM = "email_queue.claim"
SPAN_SEND_EMAIL = "email_queue.send"
SPAN_RECORD_OUTCOME = "email_queue.record_outcome"
