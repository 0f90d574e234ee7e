# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Configuration loader for the mail scheduler service.

Settings are read from an INI file with ``GMS_*`` environment variables as
fallbacks, then built-in defaults. The INI file wins over the environment.

Example:
    Configuration file format (config.ini)::

        [storage]
        db_path = /data/mail_scheduler.db

        [server]
        host = 0.0.0.0
        port = 8000
        api_token = my-secret-token

        [scheduler]
        active = true
        tick_interval = 60
        max_retries = 3
        max_concurrency = 1
        batch_size = 100
        retention_days = 90
        stale_claim_seconds = 900

        [transport]
        type = smtp
        smtp_host = smtp.example.com
        smtp_port = 587
        smtp_user = crm
        smtp_password = secret
        smtp_use_tls = true
        sender = CRM <crm@example.com>
        timeout = 30

        # or an HTTP provider
        # type = webhook
        # webhook_url = https://provider.example.com/send
        # auth_method = bearer
        # auth_token = provider-token

        [logging]
        level = INFO
        delivery_activity = false

    Loading it::

        config = load_scheduler_config("/etc/mail-scheduler/config.ini")
        transport = build_transport(config)
"""

from __future__ import annotations

import configparser
import os
from dataclasses import dataclass
from pathlib import Path

from .logger import get_logger
from .models import DEFAULT_MAX_RETRIES
from .transport import SMTPTransport, Transport, WebhookTransport

TRANSPORT_TYPES = ("smtp", "webhook")


@dataclass
class SchedulerConfig:
    """Settings for a scheduler service instance.

    Attributes:
        db_path: SQLite database path.
        host: HTTP bind address.
        port: HTTP port.
        api_token: Token required in ``X-API-Token``; None disables auth.
        active: Start the scheduler loop with the service.
        tick_interval: Seconds between scheduler ticks.
        max_retries: Default retry budget for new messages.
        max_concurrency: Dispatches in flight within one tick.
        batch_size: Maximum messages per tick, None for no limit.
        retention_days: Default age for the cleanup command.
        stale_claim_seconds: Age of abandoned ``sending`` claims released on start.
        transport: ``smtp`` or ``webhook``.
        log_level: Root logging level.
        delivery_activity: Verbose per-delivery logging.
    """

    db_path: str = "/data/mail_scheduler.db"
    host: str = "0.0.0.0"
    port: int = 8000
    api_token: str | None = None

    active: bool = False
    tick_interval: float = 60.0
    max_retries: int = DEFAULT_MAX_RETRIES
    max_concurrency: int = 1
    batch_size: int | None = None
    retention_days: int = 90
    stale_claim_seconds: int = 900

    transport: str = "smtp"
    sender: str | None = None
    timeout: float = 30.0
    smtp_host: str | None = None
    smtp_port: int = 587
    smtp_user: str | None = None
    smtp_password: str | None = None
    smtp_use_tls: bool = True
    webhook_url: str | None = None
    auth_method: str = "none"
    auth_token: str | None = None
    auth_user: str | None = None
    auth_password: str | None = None

    log_level: str = "INFO"
    delivery_activity: bool = False


def _parse_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = str(value).strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def load_scheduler_config(config_path: str | Path | None = None) -> SchedulerConfig:
    """Load settings from an INI file with environment variable fallbacks.

    Environment variables (all prefixed with GMS_):
      GMS_CONFIG - Path to config.ini file when ``config_path`` is not given
      GMS_DB_PATH, GMS_HOST, GMS_PORT, GMS_API_TOKEN
      GMS_SCHEDULER_ACTIVE, GMS_TICK_INTERVAL, GMS_MAX_RETRIES,
      GMS_MAX_CONCURRENCY, GMS_BATCH_SIZE, GMS_RETENTION_DAYS,
      GMS_STALE_CLAIM_SECONDS
      GMS_TRANSPORT, GMS_SENDER, GMS_TRANSPORT_TIMEOUT
      GMS_SMTP_HOST, GMS_SMTP_PORT, GMS_SMTP_USER, GMS_SMTP_PASSWORD, GMS_SMTP_USE_TLS
      GMS_WEBHOOK_URL, GMS_WEBHOOK_AUTH_METHOD, GMS_WEBHOOK_TOKEN,
      GMS_WEBHOOK_USER, GMS_WEBHOOK_PASSWORD
      GMS_LOG_LEVEL, GMS_LOG_DELIVERY_ACTIVITY

    Args:
        config_path: Path to the INI file. A missing file is not an error.

    Returns:
        SchedulerConfig with all values resolved.

    Raises:
        ValueError: If a numeric value cannot be parsed or the transport
            type is unknown.
    """
    path = Path(config_path or os.getenv("GMS_CONFIG", "config.ini"))
    parser = configparser.ConfigParser()
    if path.exists():
        parser.read(path)
        get_logger().debug("Loaded configuration from %s", path)

    def get(section: str, option: str, env: str) -> str | None:
        if parser.has_option(section, option):
            return parser.get(section, option)
        return os.getenv(env)

    def get_int(section: str, option: str, env: str, default: int | None) -> int | None:
        value = get(section, option, env)
        if value is None or not str(value).strip():
            return default
        return int(value)

    def get_float(section: str, option: str, env: str, default: float) -> float:
        value = get(section, option, env)
        if value is None or not str(value).strip():
            return default
        return float(value)

    def get_bool(section: str, option: str, env: str, default: bool) -> bool:
        return _parse_bool(get(section, option, env), default)

    defaults = SchedulerConfig()
    config = SchedulerConfig(
        db_path=os.path.expanduser(get("storage", "db_path", "GMS_DB_PATH") or defaults.db_path),
        host=get("server", "host", "GMS_HOST") or defaults.host,
        port=get_int("server", "port", "GMS_PORT", defaults.port),
        api_token=(get("server", "api_token", "GMS_API_TOKEN") or "").strip() or None,
        active=get_bool("scheduler", "active", "GMS_SCHEDULER_ACTIVE", defaults.active),
        tick_interval=get_float("scheduler", "tick_interval", "GMS_TICK_INTERVAL", defaults.tick_interval),
        max_retries=get_int("scheduler", "max_retries", "GMS_MAX_RETRIES", defaults.max_retries),
        max_concurrency=get_int("scheduler", "max_concurrency", "GMS_MAX_CONCURRENCY", defaults.max_concurrency),
        batch_size=get_int("scheduler", "batch_size", "GMS_BATCH_SIZE", defaults.batch_size),
        retention_days=get_int("scheduler", "retention_days", "GMS_RETENTION_DAYS", defaults.retention_days),
        stale_claim_seconds=get_int(
            "scheduler", "stale_claim_seconds", "GMS_STALE_CLAIM_SECONDS", defaults.stale_claim_seconds
        ),
        transport=(get("transport", "type", "GMS_TRANSPORT") or defaults.transport).strip().lower(),
        sender=get("transport", "sender", "GMS_SENDER"),
        timeout=get_float("transport", "timeout", "GMS_TRANSPORT_TIMEOUT", defaults.timeout),
        smtp_host=get("transport", "smtp_host", "GMS_SMTP_HOST"),
        smtp_port=get_int("transport", "smtp_port", "GMS_SMTP_PORT", defaults.smtp_port),
        smtp_user=get("transport", "smtp_user", "GMS_SMTP_USER"),
        smtp_password=get("transport", "smtp_password", "GMS_SMTP_PASSWORD"),
        smtp_use_tls=get_bool("transport", "smtp_use_tls", "GMS_SMTP_USE_TLS", defaults.smtp_use_tls),
        webhook_url=get("transport", "webhook_url", "GMS_WEBHOOK_URL"),
        auth_method=(get("transport", "auth_method", "GMS_WEBHOOK_AUTH_METHOD") or defaults.auth_method).lower(),
        auth_token=get("transport", "auth_token", "GMS_WEBHOOK_TOKEN"),
        auth_user=get("transport", "auth_user", "GMS_WEBHOOK_USER"),
        auth_password=get("transport", "auth_password", "GMS_WEBHOOK_PASSWORD"),
        log_level=(get("logging", "level", "GMS_LOG_LEVEL") or defaults.log_level).upper(),
        delivery_activity=get_bool(
            "logging", "delivery_activity", "GMS_LOG_DELIVERY_ACTIVITY", defaults.delivery_activity
        ),
    )
    if config.transport not in TRANSPORT_TYPES:
        raise ValueError(f"Unknown transport type: {config.transport}")
    return config


def build_transport(config: SchedulerConfig) -> Transport:
    """Instantiate the transport adapter named by ``config.transport``.

    Raises:
        ValueError: If the settings required by the adapter are missing.
    """
    if config.transport == "webhook":
        if not config.webhook_url:
            raise ValueError("webhook transport requires webhook_url")
        return WebhookTransport(
            url=config.webhook_url,
            sender=config.sender,
            auth_method=config.auth_method,
            token=config.auth_token,
            user=config.auth_user,
            password=config.auth_password,
            timeout=config.timeout,
        )
    if config.transport == "smtp":
        if not config.smtp_host:
            raise ValueError("smtp transport requires smtp_host")
        return SMTPTransport(
            host=config.smtp_host,
            port=config.smtp_port,
            sender=config.sender or config.smtp_user or "",
            user=config.smtp_user,
            password=config.smtp_password,
            use_tls=config.smtp_use_tls,
            timeout=config.timeout,
        )
    raise ValueError(f"Unknown transport type: {config.transport}")
