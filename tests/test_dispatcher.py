import types
from typing import Any, Dict, List

import pytest

from async_mail_scheduler.dispatcher import DispatchOutcome, Dispatcher
from async_mail_scheduler.persistence import MessageStore
from async_mail_scheduler.prometheus import SchedulerMetrics
from async_mail_scheduler.transport import DeliveryReceipt, TransportError


class DummyTransport:
    def __init__(self, errors: List[Exception | None] | None = None):
        self.sent: List[Dict[str, Any]] = []
        self.errors = list(errors or [])

    async def deliver(self, recipient_email, subject, body):
        if self.errors:
            exc = self.errors.pop(0)
            if exc is not None:
                raise exc
        self.sent.append({"to": recipient_email, "subject": subject, "body": body})
        return DeliveryReceipt(provider_message_id=f"pm-{len(self.sent)}", provider_thread_id="thread-1")


class FakeClock:
    def __init__(self, now: int):
        self.now = now

    def __call__(self) -> int:
        return self.now


SILENT_LOGGER = types.SimpleNamespace(
    warning=lambda *args, **kwargs: None,
    error=lambda *args, **kwargs: None,
    exception=lambda *args, **kwargs: None,
    info=lambda *args, **kwargs: None,
    debug=lambda *args, **kwargs: None,
)


async def make_dispatcher(tmp_path, transport, now=1000):
    store = MessageStore(str(tmp_path / "dispatch.db"))
    await store.init_db()
    clock = FakeClock(now)
    metrics = SchedulerMetrics()
    dispatcher = Dispatcher(store, transport, metrics=metrics, clock=clock, logger=SILENT_LOGGER)
    return store, dispatcher, clock, metrics


async def scheduled_message(store, msg_id="m1", scheduled_ts=1000, max_retries=3):
    await store.create_message(
        {
            "id": msg_id,
            "subject": "Proposal",
            "body": "Please find the proposal attached.",
            "recipient_email": "ann@example.com",
            "recipient_name": "Ann",
            "sender_user_id": "u1",
            "sender_email": "rep@example.com",
            "sender_name": "Rep",
            "max_retries": max_retries,
        },
        now_ts=0,
    )
    await store.schedule_message(msg_id, scheduled_ts, now_ts=0)
    return await store.get_message(msg_id)


@pytest.mark.asyncio
async def test_successful_dispatch_records_sent(tmp_path):
    transport = DummyTransport()
    store, dispatcher, clock, metrics = await make_dispatcher(tmp_path, transport)
    message = await scheduled_message(store)

    result = await dispatcher.dispatch(message)

    assert result.outcome == DispatchOutcome.SENT
    assert transport.sent == [{"to": "ann@example.com", "subject": "Proposal",
                               "body": "Please find the proposal attached."}]
    stored = await store.get_message("m1")
    assert stored["status"] == "sent"
    assert stored["sent_ts"] == 1000
    assert stored["provider_message_id"] == "pm-1"
    assert stored["provider_thread_id"] == "thread-1"
    assert stored["retry_count"] == 0
    assert metrics.registry.get_sample_value("gms_sent_total") == 1


@pytest.mark.asyncio
async def test_temporary_failure_reschedules_with_backoff(tmp_path):
    transport = DummyTransport([TransportError("connection timed out", code="timeout")])
    store, dispatcher, clock, metrics = await make_dispatcher(tmp_path, transport)
    message = await scheduled_message(store)

    result = await dispatcher.dispatch(message)

    assert result.outcome == DispatchOutcome.RETRYING
    assert result.retry_count == 1
    assert result.next_attempt_ts == 1000 + 300
    stored = await store.get_message("m1")
    assert stored["status"] == "scheduled"
    assert stored["scheduled_ts"] == 1300
    assert stored["retry_count"] == 1
    assert stored["last_error"] == {
        "message": "connection timed out",
        "code": "timeout",
        "timestamp": 1000,
        "permanent": False,
    }
    assert metrics.registry.get_sample_value("gms_retried_total") == 1


@pytest.mark.asyncio
async def test_three_failures_exhaust_retries(tmp_path):
    transport = DummyTransport([RuntimeError("provider down")] * 3)
    store, dispatcher, clock, metrics = await make_dispatcher(tmp_path, transport)
    await scheduled_message(store)

    expected_next = [1000 + 300, 1300 + 600]
    for next_ts in expected_next:
        message = await store.get_message("m1")
        result = await dispatcher.dispatch(message)
        assert result.outcome == DispatchOutcome.RETRYING
        assert (await store.get_message("m1"))["scheduled_ts"] == next_ts
        clock.now = next_ts

    result = await dispatcher.dispatch(await store.get_message("m1"))

    assert result.outcome == DispatchOutcome.FAILED
    stored = await store.get_message("m1")
    assert stored["status"] == "failed"
    assert stored["retry_count"] == 3
    assert stored["last_error"]["message"] == "provider down"
    assert stored["sent_ts"] is None
    assert await store.find_due_for_dispatch(now_ts=10**9) == []
    assert metrics.registry.get_sample_value("gms_failed_total", {"reason": "exhausted"}) == 1


@pytest.mark.asyncio
async def test_permanent_failure_skips_remaining_retries(tmp_path):
    transport = DummyTransport([TransportError("550 no such user", code=550, permanent=True)])
    store, dispatcher, clock, metrics = await make_dispatcher(tmp_path, transport)
    message = await scheduled_message(store)

    result = await dispatcher.dispatch(message)

    assert result.outcome == DispatchOutcome.FAILED
    stored = await store.get_message("m1")
    assert stored["status"] == "failed"
    assert stored["retry_count"] == 1
    assert stored["last_error"]["permanent"] is True
    assert stored["last_error"]["code"] == "550"
    assert metrics.registry.get_sample_value("gms_failed_total", {"reason": "permanent"}) == 1


@pytest.mark.asyncio
async def test_zero_retry_budget_fails_on_first_error(tmp_path):
    transport = DummyTransport([RuntimeError("boom")])
    store, dispatcher, clock, metrics = await make_dispatcher(tmp_path, transport)
    message = await scheduled_message(store, max_retries=0)

    result = await dispatcher.dispatch(message)

    assert result.outcome == DispatchOutcome.FAILED
    assert (await store.get_message("m1"))["status"] == "failed"


@pytest.mark.asyncio
async def test_message_already_sending_is_skipped(tmp_path):
    transport = DummyTransport()
    store, dispatcher, clock, metrics = await make_dispatcher(tmp_path, transport)
    message = await scheduled_message(store)
    await store.claim_message("m1", {"scheduled"}, now_ts=1000)

    result = await dispatcher.dispatch({**message, "status": "sending"})
    assert result.outcome == DispatchOutcome.SKIPPED
    assert transport.sent == []

    # Stale snapshot still reading "scheduled": the claim is lost instead.
    result = await dispatcher.dispatch(message)
    assert result.outcome == DispatchOutcome.SKIPPED
    assert result.error == "claim lost"
    assert transport.sent == []
    assert metrics.registry.get_sample_value("gms_skipped_total") == 2


@pytest.mark.asyncio
async def test_success_after_failure_keeps_last_error(tmp_path):
    transport = DummyTransport([RuntimeError("greylisted"), None])
    store, dispatcher, clock, metrics = await make_dispatcher(tmp_path, transport)
    await scheduled_message(store)

    await dispatcher.dispatch(await store.get_message("m1"))
    clock.now = 1300
    result = await dispatcher.dispatch(await store.get_message("m1"))

    assert result.outcome == DispatchOutcome.SENT
    stored = await store.get_message("m1")
    assert stored["status"] == "sent"
    assert stored["sent_ts"] == 1300
    assert stored["retry_count"] == 1
    assert stored["last_error"]["message"] == "greylisted"


@pytest.mark.asyncio
async def test_manual_send_failure_between_due_query_and_claim(tmp_path):
    transport = DummyTransport([TransportError("451 greylisted, try again later", code=451)])
    store, dispatcher, clock, metrics = await make_dispatcher(tmp_path, transport)
    await scheduled_message(store)

    due = await store.find_due_for_dispatch(now_ts=1000)
    assert [m["id"] for m in due] == ["m1"]

    # A manual send wins the message first and fails temporarily.
    claimed = await dispatcher.claim("m1", {"draft", "scheduled"})
    manual = await dispatcher.deliver_claimed(claimed)
    assert manual.outcome == DispatchOutcome.RETRYING
    assert manual.next_attempt_ts == 1300

    result = await dispatcher.dispatch(due[0], now_ts=1000)

    assert result.outcome == DispatchOutcome.SKIPPED
    assert result.error == "claim lost"
    assert transport.sent == []
    stored = await store.get_message("m1")
    assert stored["status"] == "scheduled"
    assert stored["scheduled_ts"] == 1300
    assert stored["retry_count"] == 1


@pytest.mark.asyncio
async def test_retry_decision_uses_stored_retry_count(tmp_path):
    transport = DummyTransport([RuntimeError("provider down")] * 2)
    store, dispatcher, clock, metrics = await make_dispatcher(tmp_path, transport)
    snapshot = await scheduled_message(store)

    await dispatcher.dispatch(snapshot)
    clock.now = 1300
    # The snapshot still says retry_count == 0.
    result = await dispatcher.dispatch(snapshot)

    assert result.outcome == DispatchOutcome.RETRYING
    assert result.retry_count == 2
    assert result.next_attempt_ts == 1300 + 600
    assert (await store.get_message("m1"))["retry_count"] == 2


class ReleasingTransport:
    """Transport during whose delivery the claim is released as stale."""

    def __init__(self, store, error: Exception | None = None):
        self.store = store
        self.error = error

    async def deliver(self, recipient_email, subject, body):
        await self.store.release_stale_claims(10**9, now_ts=1000)
        if self.error is not None:
            raise self.error
        return DeliveryReceipt(provider_message_id="pm-late")


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error, outcome",
    [
        (None, "sent"),
        (RuntimeError("provider down"), "retrying"),
        (TransportError("550 no such user", code=550, permanent=True), "failed"),
    ],
)
async def test_outcome_lost_when_claim_is_released(tmp_path, error, outcome):
    store, dispatcher, clock, metrics = await make_dispatcher(tmp_path, None)
    dispatcher.transport = ReleasingTransport(store, error)
    message = await scheduled_message(store)

    result = await dispatcher.dispatch(message)

    assert result.outcome == DispatchOutcome.SKIPPED
    assert result.error == f"claim lost before recording {outcome}"
    stored = await store.get_message("m1")
    assert stored["status"] == "scheduled"
    assert stored["sent_ts"] is None
    assert stored["retry_count"] == 0
    assert metrics.registry.get_sample_value("gms_skipped_total") == 1
    assert metrics.registry.get_sample_value("gms_sent_total") == 0
    assert metrics.registry.get_sample_value("gms_retried_total") == 0
