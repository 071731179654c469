"""
Email sender registry.

Senders deliver one queue entry through a provider and raise ``SendError``
on failure. They must tolerate being called more than once for the same
entry: a worker that crashes after sending but before recording the
outcome will send it again.
"""

import logging
from collections.abc import Awaitable, Callable

from mailqueue.db.models import EmailQueueEntry
from mailqueue.exceptions import PayloadMarshalError, SendError
from mailqueue.types.queue import EmailQueuePayload

logger = logging.getLogger(__name__)

# Type alias for sender functions
EmailSender = Callable[[EmailQueueEntry, EmailQueuePayload], Awaitable[None]]

# Sender registry, keyed by provider kind
_senders: dict[str, EmailSender] = {}


def register_sender(provider_kind: str) -> Callable[[EmailSender], EmailSender]:
    """
    Decorator to register an email sender.

    Args:
        provider_kind: The provider kind this sender delivers through.

    Example:
        @register_sender("ses")
        async def send_with_ses(entry: EmailQueueEntry, payload: EmailQueuePayload) -> None:
            ...
    """
    def decorator(sender: EmailSender) -> EmailSender:
        _senders[provider_kind] = sender
        logger.info("Registered email sender", extra={"provider_kind": provider_kind})
        return sender
    return decorator


def get_sender(provider_kind: str) -> EmailSender | None:
    """Get the sender for a provider kind, or None if not registered."""
    return _senders.get(provider_kind)


def list_senders() -> list[str]:
    """List all registered provider kinds."""
    return list(_senders.keys())


@register_sender("log")
async def send_to_log(entry: EmailQueueEntry, payload: EmailQueuePayload) -> None:
    """
    Development sender.

    Logs the message instead of delivering it.
    """
    logger.info(
        "Email delivered to log",
        extra={
            "entry_id": entry.id,
            "message_id": entry.message_id,
            "recipient": entry.contact_email,
            "subject": payload.subject,
        },
    )


async def send_entry(entry: EmailQueueEntry) -> None:
    """
    Send a queue entry with the sender registered for its provider.

    Args:
        entry: The claimed entry.

    Raises:
        SendError: On any failure. Missing senders and unreadable payloads
            are permanent and not blamed on the provider.
    """
    sender = get_sender(entry.provider_kind)
    if sender is None:
        raise SendError(
            f"no sender registered for provider: {entry.provider_kind}",
            retryable=False,
            provider_error=False,
        )

    try:
        payload = entry.email_payload
    except PayloadMarshalError as e:
        raise SendError(str(e), retryable=False, provider_error=False) from e

    try:
        await sender(entry, payload)
    except SendError:
        raise
    except Exception as e:
        logger.exception(
            "Sender raised exception",
            extra={"entry_id": entry.id, "provider_kind": entry.provider_kind},
        )
        raise SendError(f"sender exception: {e}") from e
