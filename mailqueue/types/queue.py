"""
Queue-related type definitions.
"""

import json
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, Field, ValidationError
from pydantic_core import PydanticSerializationError

from mailqueue.exceptions import PayloadMarshalError


class EmailOptions(BaseModel):
    """Per-message sending options."""

    reply_to: str | None = None
    cc: list[str] = Field(default_factory=list)
    bcc: list[str] = Field(default_factory=list)
    headers: dict[str, str] = Field(default_factory=dict)


class EmailQueuePayload(BaseModel):
    """
    Everything a worker needs to send the email.

    The content is compiled before enqueueing; provider settings are stored
    encrypted and decrypted by the sender.
    """

    from_address: str
    from_name: str = ""
    subject: str
    html_content: str
    email_options: EmailOptions = Field(default_factory=EmailOptions)

    # Provider rate limit needed by the worker
    rate_limit_per_minute: int = 0
    provider_settings: dict[str, Any] = Field(default_factory=dict)

    # Tracking
    template_version: int = 0
    list_id: str | None = None


@dataclass
class EmailQueueStats:
    """
    Live queue counts for a workspace.

    Sent entries are deleted, so they never appear here.
    """

    pending: int = 0
    processing: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        """Entries still outstanding."""
        return self.pending + self.processing + self.failed


def marshal_payload(payload: EmailQueuePayload | dict[str, Any] | None) -> dict[str, Any]:
    """
    Convert a payload to its JSON-ready form.

    Args:
        payload: A typed payload, a plain mapping or None.

    Returns:
        A dict that is guaranteed to serialize as JSON.

    Raises:
        PayloadMarshalError: If the payload cannot be serialized.
    """
    try:
        if isinstance(payload, BaseModel):
            data = payload.model_dump(mode="json")
        elif payload is None:
            data = {}
        else:
            data = dict(payload)
        json.dumps(data)
    except (TypeError, ValueError, PydanticSerializationError) as e:
        raise PayloadMarshalError(f"failed to marshal payload: {e}") from e
    return data


def unmarshal_payload(data: dict[str, Any]) -> EmailQueuePayload:
    """
    Parse a stored payload into its typed form.

    Raises:
        PayloadMarshalError: If the stored data is not a valid payload.
    """
    try:
        return EmailQueuePayload.model_validate(data)
    except ValidationError as e:
        raise PayloadMarshalError(f"failed to unmarshal payload: {e}") from e
