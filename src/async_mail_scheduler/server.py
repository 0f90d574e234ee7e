# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""ASGI application entry point for uvicorn.

This module builds the FastAPI application and the MailSchedulerCore
service from the INI file and ``GMS_*`` environment variables.

Usage:
    uvicorn async_mail_scheduler.server:create_server --factory --host 0.0.0.0 --port 8000

Environment variables:
    GMS_CONFIG: Path to config.ini (default: ./config.ini)
    GMS_DB_PATH: Path to SQLite database (default: /data/mail_scheduler.db)
    GMS_SCHEDULER_ACTIVE: Start the scheduler loop with the service
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .api import create_app
from .config_loader import SchedulerConfig, build_transport, load_scheduler_config
from .core import MailSchedulerCore
from .logger import get_logger


def build_core(config: SchedulerConfig) -> MailSchedulerCore:
    """Create the core service described by ``config``.

    Raises:
        ValueError: If the transport settings are incomplete.
    """
    return MailSchedulerCore(
        db_path=config.db_path,
        transport=build_transport(config),
        start_active=config.active,
        tick_interval=config.tick_interval,
        max_concurrency=config.max_concurrency,
        batch_size=config.batch_size,
        retention_days=config.retention_days,
        stale_claim_seconds=config.stale_claim_seconds,
        default_max_retries=config.max_retries,
        log_delivery_activity=config.delivery_activity,
    )


def build_app(config: SchedulerConfig, core: MailSchedulerCore | None = None) -> FastAPI:
    """Create the application with a lifespan that drives the scheduler loop."""
    core = core or build_core(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan handler - starts and stops the core service."""
        await core.init()
        if core.start_active:
            await core.start()
        else:
            get_logger().info("Scheduler loop inactive, start it with POST /commands/start")
        yield
        await core.stop()

    return create_app(core, api_token=config.api_token, lifespan=lifespan)


def create_server() -> FastAPI:
    """Application factory for ``uvicorn --factory``."""
    return build_app(load_scheduler_config())
