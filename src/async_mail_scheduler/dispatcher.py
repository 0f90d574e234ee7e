# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Single-message delivery attempt and outcome recording.

The Dispatcher is the only component that talks to the transport. For one
message it:

1. skips the message when another dispatch already holds it (``sending``);
2. claims it with an atomic ``scheduled -> sending`` update, which only
   succeeds while the message is still due, and re-reads the claimed row;
3. calls the transport;
4. records ``sent`` (with provider ids) or the failure, rescheduling it
   with exponential backoff while retry budget remains.

Transport failures never escape :meth:`Dispatcher.dispatch`: every outcome
becomes a persisted state change and a :class:`DispatchResult`. Store errors
do propagate, so the caller can isolate them per message.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .backoff import DEFAULT_BASE_MINUTES, retry_delay
from .logger import get_logger
from .models import MessageStatus
from .persistence import MessageStore
from .prometheus import SchedulerMetrics
from .transport import Transport, classify_transport_error


class DispatchOutcome(str, Enum):
    SENT = "sent"
    RETRYING = "retrying"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class DispatchResult:
    """Outcome of one dispatch attempt.

    Attributes:
        message_id: Dispatched message.
        outcome: What happened to the message.
        error: Transport error text for ``retrying``/``failed``, skip reason for ``skipped``.
        retry_count: Retry count after the attempt.
        next_attempt_ts: Rescheduled send time for ``retrying``.
    """

    message_id: str
    outcome: DispatchOutcome
    error: str | None = None
    retry_count: int | None = None
    next_attempt_ts: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.message_id,
            "outcome": self.outcome.value,
            "error": self.error,
            "retry_count": self.retry_count,
            "next_attempt_ts": self.next_attempt_ts,
        }


def _utc_now_epoch() -> int:
    return int(time.time())


class Dispatcher:
    """Attempt delivery of one message and persist the outcome.

    Attributes:
        store: Message store used for claims and outcome updates.
        transport: Delivery provider.
        metrics: Prometheus collector.
        backoff_base_minutes: First retry delay, doubled at every attempt.
    """

    def __init__(
        self,
        store: MessageStore,
        transport: Transport,
        *,
        metrics: SchedulerMetrics | None = None,
        clock: Callable[[], int] | None = None,
        backoff_base_minutes: int = DEFAULT_BASE_MINUTES,
        logger=None,
        log_delivery_activity: bool = False,
    ):
        self.store = store
        self.transport = transport
        self.metrics = metrics or SchedulerMetrics()
        self.clock = clock or _utc_now_epoch
        self.backoff_base_minutes = backoff_base_minutes
        self.logger = logger or get_logger("Dispatcher")
        self._log_delivery_activity = bool(log_delivery_activity)

    async def claim(
        self, msg_id: str, from_statuses: Iterable[str], *, due_by_ts: int | None = None
    ) -> dict[str, Any] | None:
        """Claim a message and return its row as stored after the claim.

        Retry decisions are made from this row, never from a snapshot read
        before the claim.

        Returns:
            The claimed message, or None when the claim was not won.
        """
        if not await self.store.claim_message(msg_id, from_statuses, now_ts=self.clock(), due_by_ts=due_by_ts):
            return None
        return await self.store.get_message(msg_id)

    async def dispatch(self, message: dict[str, Any], *, now_ts: int | None = None) -> DispatchResult:
        """Claim a due message and deliver it.

        Args:
            message: Message record as returned by the due query.
            now_ts: Time the due query ran at; the message is only claimed
                if it is still ``scheduled`` no later than this.

        Returns:
            The attempt outcome; ``skipped`` when the claim was not won.
        """
        msg_id = message["id"]
        if message.get("status") == MessageStatus.SENDING.value:
            self.metrics.inc_skipped()
            self.logger.debug("Message %s already being sent, skipping", msg_id)
            return DispatchResult(msg_id, DispatchOutcome.SKIPPED, error="already sending")

        due_by_ts = self.clock() if now_ts is None else now_ts
        claimed = await self.claim(msg_id, {MessageStatus.SCHEDULED.value}, due_by_ts=due_by_ts)
        if claimed is None:
            self.metrics.inc_skipped()
            self.logger.info("Message %s was claimed elsewhere or rescheduled, skipping", msg_id)
            return DispatchResult(msg_id, DispatchOutcome.SKIPPED, error="claim lost")
        return await self.deliver_claimed(claimed)

    async def deliver_claimed(self, message: dict[str, Any]) -> DispatchResult:
        """Deliver a message this caller has already moved to ``sending``.

        Args:
            message: Message record as returned by :meth:`claim`; its
                ``retry_count`` and ``max_retries`` drive the retry decision.
        """
        msg_id = message["id"]
        recipient = message["recipient_email"]
        if self._log_delivery_activity:
            self.logger.info("Attempting delivery for message %s to %s", msg_id, recipient)
        try:
            receipt = await self.transport.deliver(recipient, message["subject"], message["body"])
        except Exception as exc:
            return await self._handle_failure(message, exc)

        sent_ts = self.clock()
        recorded = await self.store.mark_sent(
            msg_id,
            sent_ts,
            provider_message_id=receipt.provider_message_id,
            provider_thread_id=receipt.provider_thread_id,
        )
        if not recorded:
            return self._outcome_lost(msg_id, "sent")
        self.metrics.inc_sent()
        self.logger.info("Message %s sent to %s", msg_id, recipient)
        return DispatchResult(msg_id, DispatchOutcome.SENT, retry_count=int(message.get("retry_count") or 0))

    def _outcome_lost(self, msg_id: str, outcome: str) -> DispatchResult:
        # The claim was taken back (e.g. released as stale) before the outcome was written.
        self.metrics.inc_skipped()
        self.logger.warning("Message %s is no longer claimed, %s outcome not recorded", msg_id, outcome)
        return DispatchResult(msg_id, DispatchOutcome.SKIPPED, error=f"claim lost before recording {outcome}")

    async def _handle_failure(self, message: dict[str, Any], exc: BaseException) -> DispatchResult:
        msg_id = message["id"]
        error = classify_transport_error(exc)
        now_ts = self.clock()
        attempt = int(message.get("retry_count") or 0)
        max_retries = int(message.get("max_retries") or 0)
        retry_count = attempt + 1
        error_record = {
            "message": str(error),
            "code": error.code,
            "timestamp": now_ts,
            "permanent": error.permanent,
        }

        if not error.permanent and retry_count < max_retries:
            delay = retry_delay(attempt, self.backoff_base_minutes)
            next_ts = now_ts + delay
            if not await self.store.record_failure(msg_id, error_record, now_ts=now_ts, reschedule_ts=next_ts):
                return self._outcome_lost(msg_id, "retrying")
            self.metrics.inc_retried()
            self.logger.warning(
                "Delivery of message %s failed (attempt %d/%d): %s - retrying in %ds",
                msg_id,
                retry_count,
                max_retries,
                error,
                delay,
            )
            return DispatchResult(
                msg_id, DispatchOutcome.RETRYING, error=str(error), retry_count=retry_count, next_attempt_ts=next_ts
            )

        if not await self.store.record_failure(msg_id, error_record, now_ts=now_ts):
            return self._outcome_lost(msg_id, "failed")
        if error.permanent:
            self.metrics.inc_failed("permanent")
            self.logger.error("Message %s failed with permanent error: %s", msg_id, error)
        else:
            self.metrics.inc_failed("exhausted")
            self.logger.error("Message %s failed after %d attempts: %s", msg_id, retry_count, error)
        return DispatchResult(msg_id, DispatchOutcome.FAILED, error=str(error), retry_count=retry_count)
