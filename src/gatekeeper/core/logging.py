"""
Gatekeeper - Logging
====================

structlog configuration shared by every entry point. Modules that use
``logging.getLogger`` end up in the same pipeline through the stdlib bridge.
"""

import logging
import sys
from typing import Optional

import structlog

from gatekeeper.core.config import Settings, settings as default_settings


def configure_logging(config: Optional[Settings] = None) -> None:
    """Configure structlog and the stdlib root logger."""
    config = config or default_settings

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if config.is_production else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
