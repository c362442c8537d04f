"""Structured logging configuration using structlog.

Engine modules log key=value events through ``structlog.get_logger(__name__)``;
messages written by the ``log`` step go to the ``workflow.log`` logger so
they can be levelled separately. The engine binds ``execution_id`` for the
duration of each top-level run, so every event emitted by that run (steps,
retries, checkpoints, entity actions) carries it.
"""

import logging
import sys
from typing import Optional

import structlog
from app.config import get_settings

WORKFLOW_LOG = "workflow.log"


def _shared_processors() -> list:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]


def _renderer(fmt: str, development: bool):
    if development or fmt == "text":
        return structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
    return structlog.processors.JSONRenderer()


def setup_logging(
    level: Optional[str] = None,
    fmt: Optional[str] = None,
    workflow_log_level: Optional[str] = None,
) -> None:
    """Configure structlog over stdlib logging.

    Args:
        level: Root level (default: ``LOG_LEVEL``)
        fmt: ``json`` or ``text`` (default: ``LOG_FORMAT``)
        workflow_log_level: Level for ``log`` step messages
            (default: ``WORKFLOW_LOG_LEVEL``, else the root level)
    """
    settings = get_settings()
    shared_processors = _shared_processors()

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=not settings.is_testing,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            _renderer(fmt or settings.LOG_FORMAT, settings.is_development),
        ],
        foreign_pre_chain=shared_processors,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(_level(level or settings.LOG_LEVEL))

    workflow_level = workflow_log_level or settings.WORKFLOW_LOG_LEVEL
    logging.getLogger(WORKFLOW_LOG).setLevel(_level(workflow_level) if workflow_level else logging.NOTSET)

    # Checkpoint store chatter
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.DEBUG if settings.SQLALCHEMY_ECHO else logging.WARNING
    )
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)


def _level(name: str) -> int:
    return getattr(logging, str(name).upper(), logging.INFO)
