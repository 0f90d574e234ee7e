"""Tests for CLI commands and helper functions."""

import json

import pytest
from click.testing import CliRunner

from async_mail_scheduler.cli import _format_ts, main, run_async


@pytest.fixture
def runner(monkeypatch, tmp_path):
    """CliRunner with configuration isolated from the host environment."""
    monkeypatch.setenv("GMS_CONFIG", str(tmp_path / "missing.ini"))
    for name in ("GMS_DB_PATH", "GMS_TRANSPORT", "GMS_SMTP_HOST", "GMS_WEBHOOK_URL", "GMS_MAX_RETRIES"):
        monkeypatch.delenv(name, raising=False)
    return CliRunner()


@pytest.fixture
def db_args(tmp_path):
    return ["--db", str(tmp_path / "cli.db")]


def add_message(runner, db_args, msg_id="m1", *extra):
    return runner.invoke(main, db_args + [
        "messages", "add",
        "--id", msg_id,
        "--subject", "Follow up",
        "--body", "Hi Ann",
        "--to", "Ann@Example.com",
        "--to-name", "Ann",
        "--user", "u1",
        "--from", "rep@example.com",
        "--from-name", "Rep",
        *extra,
    ])


def show_json(runner, db_args, msg_id="m1"):
    result = runner.invoke(main, db_args + ["messages", "show", msg_id, "--json"])
    assert result.exit_code == 0, result.output
    return json.loads(result.output)


class TestHelperFunctions:
    """Tests for CLI helper functions."""

    def test_run_async(self):
        async def async_func():
            return 42

        assert run_async(async_func()) == 42

    def test_format_ts(self):
        assert _format_ts(None) == "-"
        assert _format_ts(0) == "-"
        assert _format_ts(1_700_000_000) == "2023-11-14 22:13:20 UTC"


class TestMessagesCommands:
    """Tests for the messages command group."""

    def test_add_creates_draft(self, runner, db_args):
        result = add_message(runner, db_args)

        assert result.exit_code == 0, result.output
        assert "Message 'm1' created (draft)." in result.output
        msg = show_json(runner, db_args)
        assert msg["status"] == "draft"
        assert msg["recipient_email"] == "ann@example.com"
        assert msg["max_retries"] == 3

    def test_add_with_schedule_time(self, runner, db_args):
        result = add_message(runner, db_args, "m1", "--at", "2099-01-01T09:00:00")

        assert result.exit_code == 0, result.output
        assert "created (scheduled)" in result.output
        assert show_json(runner, db_args)["scheduled_ts"] == 4070941200

    def test_add_rejects_invalid_address(self, runner, db_args):
        result = runner.invoke(main, db_args + [
            "messages", "add", "--subject", "s", "--body", "b", "--to", "not-an-address",
            "--to-name", "Ann", "--user", "u1", "--from", "rep@example.com", "--from-name", "Rep",
        ])
        assert result.exit_code == 1
        assert "Error" in result.output

    def test_list_filters_by_status(self, runner, db_args):
        add_message(runner, db_args, "m1")
        add_message(runner, db_args, "m2", "--at", "2099-01-01T09:00:00")

        result = runner.invoke(main, db_args + ["messages", "list", "--status", "scheduled", "--json"])

        assert result.exit_code == 0, result.output
        assert [m["id"] for m in json.loads(result.output)] == ["m2"]

    def test_list_empty(self, runner, db_args):
        result = runner.invoke(main, db_args + ["messages", "list"])
        assert result.exit_code == 0
        assert "No messages found." in result.output

    def test_list_table(self, runner, db_args):
        add_message(runner, db_args, "m1")
        result = runner.invoke(main, db_args + ["messages", "list"])
        assert result.exit_code == 0
        assert "m1" in result.output

    def test_schedule_and_cancel(self, runner, db_args):
        add_message(runner, db_args)

        result = runner.invoke(main, db_args + ["messages", "schedule", "m1", "4070941200"])
        assert result.exit_code == 0, result.output
        assert "scheduled for 2099-01-01 09:00:00 UTC" in result.output

        result = runner.invoke(main, db_args + ["messages", "cancel", "m1"])
        assert result.exit_code == 0, result.output
        assert show_json(runner, db_args)["status"] == "cancelled"

    def test_schedule_in_the_past_fails(self, runner, db_args):
        add_message(runner, db_args)
        result = runner.invoke(main, db_args + ["messages", "schedule", "m1", "2000-01-01T00:00:00"])
        assert result.exit_code == 1
        assert show_json(runner, db_args)["status"] == "draft"

    def test_cancel_draft_fails(self, runner, db_args):
        add_message(runner, db_args)
        result = runner.invoke(main, db_args + ["messages", "cancel", "m1"])
        assert result.exit_code == 1

    def test_show_missing_message_fails(self, runner, db_args):
        result = runner.invoke(main, db_args + ["messages", "show", "nope"])
        assert result.exit_code == 1
        assert "Message nope not found" in result.output

    def test_show_text_output(self, runner, db_args):
        add_message(runner, db_args)
        result = runner.invoke(main, db_args + ["messages", "show", "m1"])
        assert result.exit_code == 0
        assert "Ann <ann@example.com>" in result.output

    def test_delete_with_force(self, runner, db_args):
        add_message(runner, db_args)

        result = runner.invoke(main, db_args + ["messages", "delete", "m1", "--force"])

        assert result.exit_code == 0, result.output
        assert "Deleted 1 message(s)." in result.output
        assert runner.invoke(main, db_args + ["messages", "show", "m1"]).exit_code == 1

    def test_delete_aborted_without_confirmation(self, runner, db_args):
        add_message(runner, db_args)
        result = runner.invoke(main, db_args + ["messages", "delete", "m1"], input="n\n")
        assert "Aborted." in result.output
        assert show_json(runner, db_args)["id"] == "m1"

    def test_send_now_without_transport_settings_fails(self, runner, db_args):
        add_message(runner, db_args)
        result = runner.invoke(main, db_args + ["messages", "send-now", "m1"])
        assert result.exit_code == 1
        assert "smtp_host" in result.output


class TestStatsAndCleanup:
    """Tests for the stats and cleanup commands."""

    def test_stats_json(self, runner, db_args):
        add_message(runner, db_args, "m1")
        add_message(runner, db_args, "m2", "--at", "2099-01-01T09:00:00")

        result = runner.invoke(main, db_args + ["stats", "--json"])

        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert data["by_status"]["draft"] == 1
        assert data["by_status"]["scheduled"] == 1
        assert data["total_scheduled"] == 1
        assert data["scheduler"]["running"] is False

    def test_stats_table(self, runner, db_args):
        result = runner.invoke(main, db_args + ["stats"])
        assert result.exit_code == 0
        assert "Total scheduled: 0" in result.output

    def test_cleanup_leaves_active_messages(self, runner, db_args):
        add_message(runner, db_args)
        result = runner.invoke(main, db_args + ["cleanup", "--days", "0"])
        assert result.exit_code == 0, result.output
        assert "Cleaned up 0 message(s)." in result.output

    def test_invalid_config_exits(self, runner, db_args, monkeypatch):
        monkeypatch.setenv("GMS_TRANSPORT", "pigeon")
        result = runner.invoke(main, db_args + ["stats"])
        assert result.exit_code == 1
        assert "Invalid configuration" in result.output


class TestServe:
    """Tests for the serve command."""

    def test_serve_without_transport_settings_fails_fast(self, runner, db_args, monkeypatch):
        import uvicorn

        calls = []
        monkeypatch.setattr(uvicorn, "run", lambda *args, **kwargs: calls.append(args))

        result = runner.invoke(main, db_args + ["serve"])

        assert result.exit_code == 1
        assert "smtp_host" in result.output
        assert calls == []
