"""Tests for Pydantic models and status constants."""

import pytest
from pydantic import ValidationError

from async_mail_scheduler.models import (
    ALL_STATUSES,
    SCHEDULABLE_STATUSES,
    TERMINAL_STATUSES,
    EmailType,
    MessageCreate,
    MessageRecord,
    MessageStatus,
)


def payload(**overrides):
    data = {
        "subject": "  Follow up  ",
        "body": "Hi",
        "recipient_email": "  Ann@Example.COM ",
        "recipient_name": "Ann",
        "sender_user_id": "u1",
        "sender_email": "Rep@Example.com",
        "sender_name": "Rep",
    }
    data.update(overrides)
    return data


class TestStatuses:
    def test_all_statuses(self):
        assert ALL_STATUSES == ("draft", "scheduled", "sending", "sent", "failed", "cancelled")

    def test_terminal_statuses(self):
        assert TERMINAL_STATUSES == {"sent", "failed", "cancelled"}
        assert not TERMINAL_STATUSES & SCHEDULABLE_STATUSES


class TestMessageCreate:
    def test_defaults_and_normalisation(self):
        msg = MessageCreate(**payload())

        assert msg.id is None
        assert msg.subject == "Follow up"
        assert msg.recipient_email == "ann@example.com"
        assert msg.sender_email == "rep@example.com"
        assert msg.email_type == EmailType.CUSTOM
        assert msg.max_retries == 3
        assert msg.metadata == {}

    def test_email_type_from_string(self):
        assert MessageCreate(**payload(email_type="proposal")).email_type == EmailType.PROPOSAL

    @pytest.mark.parametrize(
        "overrides",
        [
            {"recipient_email": "not-an-address"},
            {"sender_email": "   "},
            {"subject": "   "},
            {"body": ""},
            {"email_type": "newsletter"},
            {"max_retries": -1},
            {"id": "has spaces"},
            {"status": "sent"},
        ],
    )
    def test_invalid_payloads(self, overrides):
        with pytest.raises(ValidationError):
            MessageCreate(**payload(**overrides))

    def test_zero_retries_allowed(self):
        assert MessageCreate(**payload(max_retries=0)).max_retries == 0


class TestMessageRecord:
    def test_last_error_is_parsed(self):
        record = MessageRecord(
            id="m1",
            subject="s",
            body="b",
            recipient_email="ann@example.com",
            recipient_name="Ann",
            sender_user_id="u1",
            sender_email="rep@example.com",
            sender_name="Rep",
            status="failed",
            retry_count=3,
            last_error={"message": "550 no such user", "code": "550", "timestamp": 10, "permanent": True},
        )

        assert record.status == MessageStatus.FAILED
        assert record.last_error.permanent is True
        assert record.model_dump()["last_error"]["code"] == "550"
