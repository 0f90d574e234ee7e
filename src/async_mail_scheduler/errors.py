# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Exceptions raised synchronously to callers of the scheduler controls.

Every error carries a short machine readable ``code`` so that the command
layer and the HTTP API can report it without inspecting the message text.
Transport failures are not part of this hierarchy: they are captured into
the message record by the dispatcher (see :mod:`async_mail_scheduler.transport`).
"""

from __future__ import annotations


class SchedulerError(RuntimeError):
    """Base class for caller-facing scheduler errors."""

    code = "scheduler_error"

    def __init__(self, message: str, *, code: str | None = None):
        super().__init__(message)
        if code:
            self.code = code


class ValidationError(SchedulerError):
    """Raised when a request is rejected before any state is touched."""

    code = "validation_error"


class MessageNotFoundError(SchedulerError):
    """Raised when no active message exists with the given id."""

    code = "not_found"

    def __init__(self, message_id: str):
        super().__init__(f"Message {message_id} not found")
        self.message_id = message_id


class InvalidTransitionError(SchedulerError):
    """Raised when the message status does not allow the requested change."""

    code = "invalid_transition"

    def __init__(self, message: str, *, status: str | None = None):
        super().__init__(message)
        self.status = status


class AlreadySentError(InvalidTransitionError):
    """Raised by ``send_now`` for a message that has already been delivered."""

    code = "already_sent"

    def __init__(self, message_id: str):
        super().__init__(f"Message {message_id} has already been sent", status="sent")
        self.message_id = message_id
