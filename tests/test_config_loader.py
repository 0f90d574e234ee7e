"""Tests for scheduler configuration loading from config.ini and GMS_* variables."""

import pytest

from async_mail_scheduler.config_loader import SchedulerConfig, build_transport, load_scheduler_config
from async_mail_scheduler.transport import SMTPTransport, WebhookTransport


ENV_VARS = (
    "GMS_CONFIG", "GMS_DB_PATH", "GMS_HOST", "GMS_PORT", "GMS_API_TOKEN",
    "GMS_SCHEDULER_ACTIVE", "GMS_TICK_INTERVAL", "GMS_MAX_RETRIES", "GMS_MAX_CONCURRENCY",
    "GMS_BATCH_SIZE", "GMS_RETENTION_DAYS", "GMS_STALE_CLAIM_SECONDS", "GMS_TRANSPORT",
    "GMS_SENDER", "GMS_TRANSPORT_TIMEOUT", "GMS_SMTP_HOST", "GMS_SMTP_PORT", "GMS_SMTP_USER",
    "GMS_SMTP_PASSWORD", "GMS_SMTP_USE_TLS", "GMS_WEBHOOK_URL", "GMS_WEBHOOK_AUTH_METHOD",
    "GMS_WEBHOOK_TOKEN", "GMS_WEBHOOK_USER", "GMS_WEBHOOK_PASSWORD", "GMS_LOG_LEVEL",
    "GMS_LOG_DELIVERY_ACTIVITY",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_defaults_when_file_is_missing(tmp_path):
    config = load_scheduler_config(tmp_path / "missing.ini")

    assert config == SchedulerConfig()
    assert config.tick_interval == 60.0
    assert config.max_retries == 3
    assert config.batch_size is None
    assert config.api_token is None


def test_values_from_ini_file(tmp_path):
    config_file = tmp_path / "config.ini"
    config_file.write_text("""
[storage]
db_path = /tmp/scheduler.db

[server]
port = 9000
api_token = secret

[scheduler]
active = yes
tick_interval = 15
max_retries = 5
max_concurrency = 4
batch_size = 20

[transport]
type = Webhook
webhook_url = https://provider.example.com/send
auth_method = BEARER
auth_token = t0k3n

[logging]
level = debug
delivery_activity = true
""")

    config = load_scheduler_config(config_file)

    assert config.db_path == "/tmp/scheduler.db"
    assert config.port == 9000
    assert config.api_token == "secret"
    assert config.active is True
    assert config.tick_interval == 15.0
    assert config.max_retries == 5
    assert config.max_concurrency == 4
    assert config.batch_size == 20
    assert config.transport == "webhook"
    assert config.auth_method == "bearer"
    assert config.log_level == "DEBUG"
    assert config.delivery_activity is True


def test_ini_takes_precedence_over_environment(tmp_path, monkeypatch):
    config_file = tmp_path / "config.ini"
    config_file.write_text("[scheduler]\ntick_interval = 30\n")
    monkeypatch.setenv("GMS_TICK_INTERVAL", "5")
    monkeypatch.setenv("GMS_MAX_RETRIES", "7")

    config = load_scheduler_config(config_file)

    assert config.tick_interval == 30.0
    assert config.max_retries == 7


def test_config_path_from_environment(tmp_path, monkeypatch):
    config_file = tmp_path / "custom.ini"
    config_file.write_text("[server]\nhost = 127.0.0.1\n")
    monkeypatch.setenv("GMS_CONFIG", str(config_file))

    assert load_scheduler_config().host == "127.0.0.1"


def test_blank_api_token_disables_auth(tmp_path, monkeypatch):
    monkeypatch.setenv("GMS_API_TOKEN", "   ")
    assert load_scheduler_config(tmp_path / "missing.ini").api_token is None


def test_unknown_transport_is_rejected(tmp_path, monkeypatch):
    monkeypatch.setenv("GMS_TRANSPORT", "fax")
    with pytest.raises(ValueError, match="Unknown transport type"):
        load_scheduler_config(tmp_path / "missing.ini")


def test_invalid_number_is_rejected(tmp_path, monkeypatch):
    monkeypatch.setenv("GMS_PORT", "eighty")
    with pytest.raises(ValueError):
        load_scheduler_config(tmp_path / "missing.ini")


class TestBuildTransport:
    def test_smtp_transport(self):
        config = SchedulerConfig(smtp_host="smtp.example.com", smtp_port=465, smtp_user="crm@example.com")

        transport = build_transport(config)

        assert isinstance(transport, SMTPTransport)
        assert transport.host == "smtp.example.com"
        assert transport.port == 465
        assert transport.sender == "crm@example.com"

    def test_smtp_requires_host(self):
        with pytest.raises(ValueError, match="smtp_host"):
            build_transport(SchedulerConfig())

    def test_webhook_transport(self):
        config = SchedulerConfig(
            transport="webhook",
            webhook_url="https://provider.example.com/send",
            auth_method="bearer",
            auth_token="t0k3n",
            sender="crm@example.com",
        )

        transport = build_transport(config)

        assert isinstance(transport, WebhookTransport)
        assert transport.url == "https://provider.example.com/send"
        assert transport.token == "t0k3n"

    def test_webhook_requires_url(self):
        with pytest.raises(ValueError, match="webhook_url"):
            build_transport(SchedulerConfig(transport="webhook"))
