"""structlog setup for RallyNet.

Modules log through ``structlog.get_logger()``; this module only decides
how those events are rendered and filtered.
"""

from __future__ import annotations

import logging
import sys
from typing import Optional, TextIO

import structlog

from rallynet.core.config import LoggingConfig


def configure_logging(config: Optional[LoggingConfig] = None, stream: Optional[TextIO] = None) -> None:
    """Install structlog processors according to ``config``.

    Args:
        config: Logging section of the settings; defaults apply when None.
        stream: Output stream; stderr by default so CLI output stays clean.
    """
    config = config or LoggingConfig()
    renderer = (
        structlog.dev.ConsoleRenderer()
        if config.format == "console"
        else structlog.processors.JSONRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(config.level)
        ),
        logger_factory=structlog.PrintLoggerFactory(file=stream or sys.stderr),
        cache_logger_on_first_use=False,
    )
