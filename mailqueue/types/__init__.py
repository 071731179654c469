"""
Type definitions for the email queue.
"""

from mailqueue.types.queue import (
    EmailOptions,
    EmailQueuePayload,
    EmailQueueStats,
    marshal_payload,
    unmarshal_payload,
)

__all__ = [
    "EmailOptions",
    "EmailQueuePayload",
    "EmailQueueStats",
    "marshal_payload",
    "unmarshal_payload",
]
