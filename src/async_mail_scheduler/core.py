# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Core orchestration logic for the deferred mail scheduler.

This module provides the MailSchedulerCore class, the entry point used by
the HTTP API, the CLI and embedding applications. It wires together:

- The SQLite message store
- The dispatcher (claim, deliver, record outcome)
- The scheduler loop (periodic discovery of due messages)
- The stats aggregator
- Prometheus metrics

Caller-facing operations validate their preconditions and raise
:class:`~async_mail_scheduler.errors.SchedulerError` subclasses before any
state is touched. ``handle_command`` turns those errors into
``{"ok": False, ...}`` results for the command-based API.

Example:
    Running the scheduler::

        from async_mail_scheduler.core import MailSchedulerCore
        from async_mail_scheduler.transport import SMTPTransport

        core = MailSchedulerCore(
            db_path="/data/mail_scheduler.db",
            transport=SMTPTransport(host="smtp.example.com", sender="crm@example.com"),
            start_active=True,
        )
        await core.init()
        await core.start()

        msg = await core.create_message({...})
        await core.schedule_email(msg["id"], datetime(2030, 1, 1, 9, 0))

        await core.stop()

Attributes:
    DEFAULT_RETENTION_DAYS: Age after which terminal messages are deactivated.
"""

from __future__ import annotations

import math
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from .backoff import DEFAULT_BASE_MINUTES
from .dispatcher import DispatchOutcome, DispatchResult, Dispatcher
from .errors import AlreadySentError, InvalidTransitionError, MessageNotFoundError, SchedulerError, ValidationError
from .logger import get_logger
from .models import SCHEDULABLE_STATUSES, SEND_NOW_STATUSES, MessageCreate, MessageStatus
from .persistence import UPDATABLE_COLUMNS, MessageStore
from .prometheus import SchedulerMetrics
from .scheduler import DEFAULT_STALE_CLAIM_SECONDS, DEFAULT_TICK_INTERVAL, SchedulerLoop
from .stats import StatsAggregator
from .transport import Transport

DEFAULT_RETENTION_DAYS = 90
SCHEDULER_JOB_NAME = "dispatch-due-messages"


def _format_errors(exc: PydanticValidationError) -> str:
    return "; ".join(f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors())


class MailSchedulerCore:
    """Facade over the store, dispatcher and scheduler loop.

    Attributes:
        store: SQLite message store.
        dispatcher: Single-message delivery component.
        scheduler: Periodic loop feeding the dispatcher.
        stats: Read-only rollups.
        metrics: Prometheus metrics collector.
    """

    def __init__(
        self,
        *,
        db_path: str | None = "/data/mail_scheduler.db",
        transport: Transport | None = None,
        logger=None,
        metrics: SchedulerMetrics | None = None,
        start_active: bool = False,
        tick_interval: float = DEFAULT_TICK_INTERVAL,
        max_concurrency: int = 1,
        batch_size: int | None = None,
        retention_days: int = DEFAULT_RETENTION_DAYS,
        stale_claim_seconds: int = DEFAULT_STALE_CLAIM_SECONDS,
        backoff_base_minutes: int = DEFAULT_BASE_MINUTES,
        default_max_retries: int | None = None,
        clock: Callable[[], int] | None = None,
        log_delivery_activity: bool = False,
    ):
        """Initialize the scheduler core.

        Args:
            db_path: SQLite database path. Use ":memory:" only for throwaway
                instances, each connection sees a fresh in-memory database.
            transport: Delivery provider used for every message. Without one the
                core can manage messages but cannot deliver them.
            logger: Custom logger instance. If None, uses default logger.
            metrics: Prometheus metrics collector. If None, creates new instance.
            start_active: Whether ``start()`` is invoked automatically by the server.
            tick_interval: Seconds between scheduler ticks.
            max_concurrency: Dispatches allowed in flight within one tick.
            batch_size: Maximum messages processed per tick.
            retention_days: Default age for ``cleanup_old_emails``.
            stale_claim_seconds: Age of a ``sending`` claim released on start.
            backoff_base_minutes: First retry delay, doubled at every attempt.
            default_max_retries: ``max_retries`` for new messages that do not set it.
            clock: Callable returning the current epoch seconds.
            log_delivery_activity: Enable verbose delivery activity logging.
        """
        self.logger = logger or get_logger()
        self.clock = clock or self._utc_now_epoch
        self.metrics = metrics or SchedulerMetrics()
        self.store = MessageStore(db_path or ":memory:")
        self.transport = transport
        self.start_active = bool(start_active)
        self.retention_days = max(0, int(retention_days))
        self.default_max_retries = default_max_retries
        self.dispatcher = Dispatcher(
            self.store,
            transport,
            metrics=self.metrics,
            clock=self.clock,
            backoff_base_minutes=backoff_base_minutes,
            logger=self.logger,
            log_delivery_activity=log_delivery_activity,
        )
        self.scheduler = SchedulerLoop(
            self.store,
            self.dispatcher,
            tick_interval=tick_interval,
            max_concurrency=max_concurrency,
            batch_size=batch_size,
            stale_claim_seconds=stale_claim_seconds,
            metrics=self.metrics,
            clock=self.clock,
            logger=self.logger,
        )
        self.stats = StatsAggregator(self.store, self.scheduler)

    # --------------------------------------------------------------------- utils
    @staticmethod
    def _utc_now_epoch() -> int:
        """Return the current UTC timestamp as seconds since Unix epoch."""
        return int(datetime.now(timezone.utc).timestamp())

    @staticmethod
    def _to_epoch(when: Any) -> int:
        """Convert a send time to epoch seconds.

        Accepts a ``datetime`` (naive values are taken as UTC), an ISO-8601
        string or a number of epoch seconds.
        """
        if isinstance(when, bool) or when is None:
            raise ValidationError("scheduled time is required")
        if isinstance(when, (int, float)):
            if not math.isfinite(when):
                raise ValidationError(f"Invalid scheduled time: {when!r}")
            return int(when)
        if isinstance(when, str):
            try:
                when = datetime.fromisoformat(when.strip().replace("Z", "+00:00"))
            except ValueError as exc:
                raise ValidationError(f"Invalid scheduled time: {when!r}") from exc
        if isinstance(when, datetime):
            if when.tzinfo is None:
                when = when.replace(tzinfo=timezone.utc)
            return int(when.timestamp())
        raise ValidationError(f"Unsupported scheduled time: {when!r}")

    def _require_transport(self) -> None:
        if self.transport is None:
            raise SchedulerError("No delivery transport configured", code="no_transport")

    async def _require_message(self, msg_id: str) -> dict[str, Any]:
        message = await self.store.get_message(msg_id)
        if message is None:
            raise MessageNotFoundError(msg_id)
        return message

    async def init(self) -> None:
        """Initialize the persistence layer."""
        await self.store.init_db()

    # ----------------------------------------------------------------- lifecycle
    async def start(self) -> None:
        """Start the scheduler loop. Calling it while running is a no-op.

        Raises:
            SchedulerError: If no transport is configured.
        """
        self._require_transport()
        await self.init()
        await self.scheduler.start()

    async def stop(self) -> None:
        """Stop the scheduler loop, letting an in-flight tick finish."""
        await self.scheduler.stop()

    def get_status(self) -> dict[str, Any]:
        """Return the scheduler state.

        Returns:
            dict: ``running``, ``active_since``, ``uptime_seconds``,
            ``tick_interval`` and ``active_jobs``.
        """
        running = self.scheduler.running
        active_since = self.scheduler.active_since
        uptime = max(0, self.clock() - active_since) if running and active_since is not None else 0
        return {
            "running": running,
            "active_since": active_since,
            "uptime_seconds": uptime,
            "tick_interval": self.scheduler.tick_interval,
            "active_jobs": [SCHEDULER_JOB_NAME] if running else [],
        }

    async def run_now(self) -> dict[str, Any]:
        """Process due messages now.

        Wakes the loop when it is running; otherwise runs one tick inline
        and returns its report.
        """
        if self.scheduler.running:
            self.scheduler.trigger()
            return {"triggered": True}
        self._require_transport()
        report = await self.scheduler.run_tick()
        return {"triggered": False, "report": report.to_dict()}

    # ------------------------------------------------------------------ messages
    async def create_message(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Validate and store a new ``draft`` message.

        Raises:
            ValidationError: If the payload does not describe a valid message.
        """
        data = dict(payload or {})
        if self.default_max_retries is not None and data.get("max_retries") is None:
            data["max_retries"] = self.default_max_retries
        try:
            message = MessageCreate.model_validate(data)
        except PydanticValidationError as exc:
            raise ValidationError(f"Invalid message: {_format_errors(exc)}") from exc
        if message.id and await self.store.get_message(message.id, include_inactive=True):
            raise ValidationError(f"Message {message.id} already exists")
        created = await self.store.create_message(message.model_dump(), now_ts=self.clock())
        self.logger.info("Message %s created as draft", created["id"])
        return created

    async def get_message(self, msg_id: str) -> dict[str, Any]:
        """Return an active message.

        Raises:
            MessageNotFoundError: If the message is missing or inactive.
        """
        return await self._require_message(msg_id)

    async def list_messages(
        self, *, status: str | None = None, user_id: str | None = None, limit: int | None = None
    ) -> list[dict[str, Any]]:
        if status is not None and status not in {s.value for s in MessageStatus}:
            raise ValidationError(f"Unknown status: {status}")
        return await self.store.list_messages(status=status, sender_user_id=user_id, limit=limit)

    async def update_message(self, msg_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        """Change content fields of a ``draft`` or ``scheduled`` message.

        Raises:
            MessageNotFoundError: If the message is missing or inactive.
            InvalidTransitionError: If the message is no longer editable.
            ValidationError: If a field cannot be updated. ``max_retries`` and
                ``sender_user_id`` are fixed at creation.
        """
        message = await self._require_message(msg_id)
        if not fields:
            raise ValidationError("No fields to update")
        if message["status"] not in SCHEDULABLE_STATUSES:
            raise InvalidTransitionError(
                f"Message {msg_id} is {message['status']} and cannot be edited", status=message["status"]
            )
        unknown = set(fields) - UPDATABLE_COLUMNS
        if unknown:
            raise ValidationError(f"Cannot update fields: {', '.join(sorted(unknown))}")
        current = {key: message.get(key) for key in MessageCreate.model_fields if key != "id"}
        try:
            validated = MessageCreate.model_validate({**current, **fields})
        except PydanticValidationError as exc:
            raise ValidationError(f"Invalid message: {_format_errors(exc)}") from exc
        fields = {key: value for key, value in validated.model_dump(mode="json").items() if key in fields}
        try:
            updated = await self.store.update_fields(msg_id, fields, now_ts=self.clock())
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        if not updated:
            current = await self._require_message(msg_id)
            raise InvalidTransitionError(
                f"Message {msg_id} is {current['status']} and cannot be edited", status=current["status"]
            )
        return await self._require_message(msg_id)

    async def delete_message(self, msg_id: str) -> None:
        """Soft-delete a message.

        Raises:
            MessageNotFoundError: If the message is missing or already inactive.
        """
        if not await self.store.soft_delete_message(msg_id, now_ts=self.clock()):
            raise MessageNotFoundError(msg_id)
        self.logger.info("Message %s deleted", msg_id)

    # ---------------------------------------------------------------- scheduling
    async def schedule_email(self, msg_id: str, when: Any) -> dict[str, Any]:
        """Attach a future send time to a ``draft`` or ``scheduled`` message.

        Args:
            msg_id: Message to schedule.
            when: Send time as ``datetime``, ISO-8601 string or epoch seconds.

        Raises:
            MessageNotFoundError: If the message is missing or inactive.
            ValidationError: If ``when`` is not strictly in the future.
            InvalidTransitionError: If the message status does not allow scheduling.
        """
        message = await self._require_message(msg_id)
        scheduled_ts = self._to_epoch(when)
        now_ts = self.clock()
        if scheduled_ts <= now_ts:
            raise ValidationError("Scheduled time must be in the future")
        if message["status"] not in SCHEDULABLE_STATUSES:
            raise InvalidTransitionError(
                f"Message {msg_id} is {message['status']} and cannot be scheduled", status=message["status"]
            )
        if not await self.store.schedule_message(msg_id, scheduled_ts, now_ts=now_ts):
            current = await self._require_message(msg_id)
            raise InvalidTransitionError(
                f"Message {msg_id} is {current['status']} and cannot be scheduled", status=current["status"]
            )
        self.logger.info("Message %s scheduled for %d", msg_id, scheduled_ts)
        return await self._require_message(msg_id)

    async def cancel_scheduled_email(self, msg_id: str) -> dict[str, Any]:
        """Cancel a message that is still ``scheduled``.

        Raises:
            MessageNotFoundError: If the message is missing or inactive.
            InvalidTransitionError: If the message is not ``scheduled``.
        """
        message = await self._require_message(msg_id)
        if message["status"] != MessageStatus.SCHEDULED.value or not await self.store.cancel_message(
            msg_id, now_ts=self.clock()
        ):
            current = await self._require_message(msg_id)
            raise InvalidTransitionError(
                f"Only scheduled messages can be cancelled (message {msg_id} is {current['status']})",
                status=current["status"],
            )
        self.logger.info("Message %s cancelled", msg_id)
        return await self._require_message(msg_id)

    async def send_now(self, msg_id: str) -> DispatchResult:
        """Deliver a message immediately, bypassing its scheduled time.

        The message is claimed with the same atomic update the scheduler
        loop uses, so it can never be delivered twice by a concurrent tick.
        ``scheduled_ts`` is left untouched.

        Returns:
            The dispatch outcome; ``skipped`` when the message is already in
            flight or the claim was lost.

        Raises:
            MessageNotFoundError: If the message is missing or inactive.
            AlreadySentError: If the message has already been sent.
            InvalidTransitionError: If the message is ``failed`` or ``cancelled``.
            SchedulerError: If no transport is configured.
        """
        self._require_transport()
        message = await self._require_message(msg_id)
        status = message["status"]
        if status == MessageStatus.SENT.value:
            raise AlreadySentError(msg_id)
        if status == MessageStatus.SENDING.value:
            self.metrics.inc_skipped()
            self.logger.info("Message %s is already being sent", msg_id)
            return DispatchResult(msg_id, DispatchOutcome.SKIPPED, error="already sending")
        if status not in SEND_NOW_STATUSES:
            raise InvalidTransitionError(f"Message {msg_id} is {status} and cannot be sent", status=status)

        claimed = await self.dispatcher.claim(msg_id, SEND_NOW_STATUSES)
        if claimed is None:
            self.metrics.inc_skipped()
            self.logger.info("Message %s was claimed elsewhere, skipping", msg_id)
            return DispatchResult(msg_id, DispatchOutcome.SKIPPED, error="claim lost")
        self.logger.info("Sending message %s now", msg_id)
        return await self.dispatcher.deliver_claimed(claimed)

    # --------------------------------------------------------------- maintenance
    async def get_email_stats(self, user_id: str | None = None) -> dict[str, Any]:
        return await self.stats.get_stats(user_id)

    async def cleanup_old_emails(self, days_old: int | None = None) -> int:
        """Deactivate terminal messages created more than ``days_old`` days ago.

        Returns:
            Number of messages deactivated.

        Raises:
            ValidationError: If ``days_old`` is negative.
        """
        days = self.retention_days if days_old is None else days_old
        try:
            days = int(days)
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Invalid days_old: {days_old!r}") from exc
        if days < 0:
            raise ValidationError("days_old must be >= 0")
        now_ts = self.clock()
        removed = await self.store.deactivate_terminal_before(now_ts - days * 86400, now_ts=now_ts)
        self.logger.info("Cleaned up %d old message(s)", removed)
        return removed

    # ------------------------------------------------------------------ commands
    async def handle_command(self, cmd: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        """Execute an external control command.

        Supported commands:
        - ``run now``, ``start``, ``stop``, ``status``: Scheduler control
        - ``createMessage``, ``getMessage``, ``listMessages``, ``updateMessage``,
          ``deleteMessage``: Message management
        - ``scheduleMessage``, ``cancelMessage``, ``sendNow``: Status transitions
        - ``stats``, ``cleanup``: Reporting and retention

        Args:
            cmd: Command name to execute.
            payload: Command-specific parameters.

        Returns:
            dict: Command result with ``ok`` status and command-specific data.
            Failures carry ``error`` and ``code``.
        """
        payload = payload or {}
        try:
            return await self._dispatch_command(cmd, payload)
        except SchedulerError as exc:
            return {"ok": False, "error": str(exc), "code": exc.code}

    async def _dispatch_command(self, cmd: str, payload: dict[str, Any]) -> dict[str, Any]:
        match cmd:
            case "run now":
                return {"ok": True, **await self.run_now()}
            case "start":
                await self.start()
                return {"ok": True, **self.get_status()}
            case "stop":
                await self.stop()
                return {"ok": True, **self.get_status()}
            case "status":
                return {"ok": True, **self.get_status()}
            case "createMessage":
                message = await self.create_message(payload)
                return {"ok": True, "message": message}
            case "getMessage":
                message = await self.get_message(payload.get("id"))
                return {"ok": True, "message": message}
            case "listMessages":
                messages = await self.list_messages(
                    status=payload.get("status"),
                    user_id=payload.get("user_id"),
                    limit=payload.get("limit"),
                )
                return {"ok": True, "messages": messages}
            case "updateMessage":
                fields = {k: v for k, v in payload.items() if k != "id"}
                message = await self.update_message(payload.get("id"), fields)
                return {"ok": True, "message": message}
            case "deleteMessage":
                await self.delete_message(payload.get("id"))
                return {"ok": True}
            case "scheduleMessage":
                when = payload.get("scheduled_ts", payload.get("scheduled_at"))
                message = await self.schedule_email(payload.get("id"), when)
                return {"ok": True, "message": message}
            case "cancelMessage":
                message = await self.cancel_scheduled_email(payload.get("id"))
                return {"ok": True, "message": message}
            case "sendNow":
                result = await self.send_now(payload.get("id"))
                return {"ok": True, "result": result.to_dict()}
            case "stats":
                stats = await self.get_email_stats(payload.get("user_id"))
                return {"ok": True, **stats}
            case "cleanup":
                removed = await self.cleanup_old_emails(payload.get("days_old"))
                return {"ok": True, "removed": removed}
            case _:
                return {"ok": False, "error": "unknown command", "code": "unknown_command"}
