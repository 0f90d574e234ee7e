"""Logging helper for the mail scheduler.

Handlers, level and format are configured once with ``logging.basicConfig()``
by the entry point (``main.py`` or the uvicorn server). Modules only ask for
a named logger.

Example:
    Typical usage in a module::

        from async_mail_scheduler.logger import get_logger

        logger = get_logger("Dispatcher")
        logger.info("Message %s sent", msg_id)
"""

import logging


def get_logger(name: str = "MailScheduler") -> logging.Logger:
    """Return the standard library logger bound to ``name``.

    Args:
        name: The logger name. Defaults to "MailScheduler".

    Returns:
        A ``logging.Logger`` instance bound to the given name.
    """
    return logging.getLogger(name)
