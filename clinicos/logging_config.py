import logging
import sys

import structlog

from .config import settings


def setup_logging():
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, settings.LOG_LEVEL, logging.INFO),
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    log = structlog.get_logger("clinicos")
    log.info(
        "logging_initialized",
        app="clinicos",
        level=settings.LOG_LEVEL,
        default_timezone=settings.CLINIC_DEFAULT_TIMEZONE,
        auto_assign=settings.AUTO_ASSIGN_POLICY,
        slot_guard=settings.BOOKING_SLOT_GUARD,
        guard_retries=settings.BOOKING_GUARD_RETRIES,
    )
