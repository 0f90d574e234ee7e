import logging
import os

import uvicorn

from async_mail_scheduler.config_loader import load_scheduler_config
from async_mail_scheduler.server import build_app

# Configure logging level from environment
log_level = os.getenv("GMS_LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, log_level, logging.INFO),
    format='[%(asctime)s] [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S',
    force=True  # Force reconfiguration to avoid duplicate handlers
)


if __name__ == "__main__":
    # Settings come from GMS_CONFIG (default: config.ini) with GMS_* environment fallbacks.
    settings = load_scheduler_config()
    logging.getLogger().setLevel(getattr(logging, settings.log_level, logging.INFO))
    app = build_app(settings)
    uvicorn.run(app, host=settings.host, port=int(settings.port))
