import pytest
from fastapi.testclient import TestClient

from async_mail_scheduler.api import API_TOKEN_HEADER_NAME
from async_mail_scheduler.config_loader import SchedulerConfig
from async_mail_scheduler.server import build_app, build_core


def make_config(tmp_path, **overrides):
    params = dict(
        db_path=str(tmp_path / "server.db"),
        api_token="secret",
        transport="webhook",
        webhook_url="https://provider.example.com/send",
        tick_interval=3600,
    )
    params.update(overrides)
    return SchedulerConfig(**params)


def test_build_core_uses_config(tmp_path):
    core = build_core(make_config(tmp_path, active=True, max_concurrency=3, retention_days=30))

    assert core.start_active is True
    assert core.retention_days == 30
    assert core.scheduler.max_concurrency == 3
    assert core.transport.url == "https://provider.example.com/send"


def test_lifespan_starts_and_stops_active_scheduler(tmp_path):
    app = build_app(make_config(tmp_path, active=True))
    headers = {API_TOKEN_HEADER_NAME: "secret"}

    with TestClient(app) as client:
        status = client.get("/status", headers=headers).json()
        assert status["running"] is True
        assert status["active_jobs"] == ["dispatch-due-messages"]

        stopped = client.post("/commands/stop", headers=headers).json()
        assert stopped["running"] is False


def test_lifespan_leaves_inactive_scheduler_stopped(tmp_path):
    app = build_app(make_config(tmp_path))

    with TestClient(app) as client:
        status = client.get("/status", headers={API_TOKEN_HEADER_NAME: "secret"}).json()
        assert status["running"] is False
        assert client.get("/messages", headers={API_TOKEN_HEADER_NAME: "secret"}).json() == {
            "ok": True,
            "messages": [],
        }


def test_build_app_requires_transport_settings(tmp_path):
    with pytest.raises(ValueError, match="smtp_host"):
        build_app(SchedulerConfig(db_path=str(tmp_path / "server.db")))
    with pytest.raises(ValueError, match="webhook_url"):
        build_core(make_config(tmp_path, webhook_url=None))
