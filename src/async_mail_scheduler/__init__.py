"""Deferred message delivery engine for CRM outbound email.

This package persists outbound messages together with their desired send
time and delivers them in the background with bounded retries:

- Durable message store with a status-based state machine (SQLite)
- Periodic scheduler loop feeding due messages to a dispatcher
- Atomic claims so manual "send now" and the loop never double send
- Exponential backoff for failed delivery attempts
- Pluggable transports (SMTP via aiosmtplib, HTTP provider via aiohttp)
- Prometheus metrics and a FastAPI control surface

Example:
    Running the engine with the FastAPI application::

        from async_mail_scheduler.core import MailSchedulerCore
        from async_mail_scheduler.api import create_app
        from async_mail_scheduler.transport import SMTPTransport

        core = MailSchedulerCore(
            db_path="/data/mail_scheduler.db",
            transport=SMTPTransport(host="smtp.example.com", port=587, sender="crm@example.com"),
        )
        app = create_app(core, api_token="secret")
"""
