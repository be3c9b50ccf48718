"""structlog setup for the desk.

Every price fetch, RPC call and projection refresh logs one snake_case event
with key/value context (component, user_id, trade_id, pair). LIVE runs emit
JSON lines; DEMO runs get the coloured console renderer.
"""

from __future__ import annotations

import logging
import sys
from typing import Any, List

import structlog

# Transport libraries log every frame/request at INFO.
_NOISY_LOGGERS = ("aiohttp.access", "websockets.client", "uvicorn.access")


def _renderer(environment: str) -> Any:
    if environment.upper() == "LIVE":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())


def configure_logging(log_level: str = "INFO", environment: str = "DEMO") -> None:
    level = getattr(logging, log_level.upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    processors: List[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]
    if environment.upper() == "LIVE":
        # the console renderer prints exceptions itself
        processors.append(structlog.processors.format_exc_info)
    processors.append(_renderer(environment))
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(component: str, **kwargs: Any) -> structlog.BoundLogger:
    return structlog.get_logger().bind(component=component, **kwargs)


def bind_user(user_id: str) -> None:
    """Attach the signed-in user to every log line emitted from this context."""
    structlog.contextvars.bind_contextvars(user_id=user_id)


def clear_user() -> None:
    structlog.contextvars.unbind_contextvars("user_id")
