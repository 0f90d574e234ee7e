# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Pydantic models and status constants for the mail scheduler.

This module defines the message state machine and the models used to
validate messages entering the engine and to serialize them back out.

Models:
    - MessageStatus: Lifecycle states of a message
    - EmailType: Business category of an outbound message
    - LastError: Audit record of the most recent failed attempt
    - MessageCreate: Payload accepted when a draft message is created
    - MessageRecord: Stored message as returned by queries

Status transitions::

    draft ──schedule──> scheduled ──claim──> sending ──> sent
      │                   │   ^                 │
      │                   │   └──retry──────────┤
      │                   └──cancel──> cancelled└──> failed
      └──send_now (claim)──> sending
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_MAX_RETRIES = 3


class MessageStatus(str, Enum):
    """Lifecycle states of a message.

    ``failed`` is always terminal: a failure with retry budget left moves
    the message straight back to ``scheduled``.
    """

    DRAFT = "draft"
    SCHEDULED = "scheduled"
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"
    CANCELLED = "cancelled"


ALL_STATUSES: tuple[str, ...] = tuple(s.value for s in MessageStatus)
TERMINAL_STATUSES = frozenset({MessageStatus.SENT.value, MessageStatus.FAILED.value, MessageStatus.CANCELLED.value})
SCHEDULABLE_STATUSES = frozenset({MessageStatus.DRAFT.value, MessageStatus.SCHEDULED.value})
SEND_NOW_STATUSES = frozenset({MessageStatus.DRAFT.value, MessageStatus.SCHEDULED.value})


class EmailType(str, Enum):
    """Business category of an outbound CRM message."""

    FOLLOW_UP = "follow_up"
    INTRODUCTION = "introduction"
    PROPOSAL = "proposal"
    REMINDER = "reminder"
    THANK_YOU = "thank_you"
    CUSTOM = "custom"


class LastError(BaseModel):
    """Outcome of the most recent failed delivery attempt.

    Attributes:
        message: Error text reported by the transport, verbatim.
        code: Provider or protocol error code, when available.
        timestamp: Epoch seconds of the failed attempt.
        permanent: True when the transport reported the failure as not retryable.
    """

    message: str
    code: str | None = None
    timestamp: int
    permanent: bool = False


class MessageCreate(BaseModel):
    """Payload for creating a new draft message.

    Attributes:
        id: Optional caller-provided identifier; generated when omitted.
        subject: Message subject.
        body: Message body.
        recipient_email: Delivery address (normalized to lower case).
        recipient_name: Display name of the recipient.
        recipient_contact_id: Optional reference to a CRM contact.
        sender_user_id: Originating CRM user.
        sender_email: Sender address.
        sender_name: Sender display name.
        email_type: Business category of the message.
        max_retries: Failed attempts allowed before the message is abandoned.
        metadata: Free-form JSON stored with the message.
    """

    model_config = ConfigDict(extra="forbid")

    id: Annotated[
        str | None,
        Field(default=None, min_length=1, max_length=64, pattern=r"^[a-zA-Z0-9_.:-]+$",
              description="Message identifier (generated when omitted)")
    ]
    subject: Annotated[str, Field(min_length=1, description="Message subject")]
    body: Annotated[str, Field(min_length=1, description="Message body")]
    recipient_email: Annotated[str, Field(min_length=3, max_length=320, description="Recipient address")]
    recipient_name: Annotated[str, Field(min_length=1, max_length=255, description="Recipient display name")]
    recipient_contact_id: Annotated[
        str | None,
        Field(default=None, max_length=64, description="Reference to a CRM contact")
    ]
    sender_user_id: Annotated[str, Field(min_length=1, max_length=64, description="Originating CRM user")]
    sender_email: Annotated[str, Field(min_length=3, max_length=320, description="Sender address")]
    sender_name: Annotated[str, Field(min_length=1, max_length=255, description="Sender display name")]
    email_type: Annotated[EmailType, Field(default=EmailType.CUSTOM, description="Business category")]
    max_retries: Annotated[
        int,
        Field(default=DEFAULT_MAX_RETRIES, ge=0, le=20, description="Failed attempts allowed")
    ]
    metadata: Annotated[
        dict[str, Any],
        Field(default_factory=dict, description="Free-form metadata")
    ]

    @field_validator("recipient_email", "sender_email")
    @classmethod
    def normalise_address(cls, v: str) -> str:
        """Trim and lower-case addresses, rejecting values without ``@``."""
        value = v.strip().lower()
        if "@" not in value:
            raise ValueError("address must contain '@'")
        return value

    @field_validator("subject", "recipient_name", "sender_name")
    @classmethod
    def strip_text(cls, v: str) -> str:
        value = v.strip()
        if not value:
            raise ValueError("must not be blank")
        return value


class MessageRecord(BaseModel):
    """Stored message as returned by the store and the HTTP API."""

    id: str
    subject: str
    body: str
    recipient_email: str
    recipient_name: str
    recipient_contact_id: str | None = None
    sender_user_id: str
    sender_email: str
    sender_name: str
    email_type: str = EmailType.CUSTOM.value
    status: MessageStatus
    scheduled_ts: int | None = None
    sent_ts: int | None = None
    retry_count: int = 0
    max_retries: int = DEFAULT_MAX_RETRIES
    last_error: LastError | None = None
    provider_message_id: str | None = None
    provider_thread_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True
    created_ts: int | None = None
    updated_ts: int | None = None
