import logging
import sys
from typing import Any

import structlog
from structlog.typing import EventDict, Processor, WrappedLogger

from .settings import Settings, get_settings

# Library loggers that drown out application events unless debugging
NOISY_LOGGERS = ("sqlalchemy.engine", "uvicorn.access", "websockets")


def _project_adder(project: str) -> Processor:
    def add_project(_: WrappedLogger, __: str, event_dict: EventDict) -> EventDict:
        event_dict.setdefault("project", project)
        return event_dict

    return add_project


def setup_logging(settings: Settings | None = None) -> None:
    """
    Configure structlog for the process.

    Console output with call sites in debug mode, one JSON object per line
    otherwise. Every event carries the project name so several deployments
    can share a log sink.
    """
    settings = settings or get_settings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(level if settings.debug else logging.WARNING)

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        _project_adder(settings.project),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
    ]
    if settings.debug:
        processors.append(
            structlog.processors.CallsiteParameterAdder(
                parameters=[
                    structlog.processors.CallsiteParameter.MODULE,
                    structlog.processors.CallsiteParameter.FUNC_NAME,
                ]
            )
        )
        processors.append(structlog.dev.ConsoleRenderer())
    else:
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.WriteLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = __name__) -> structlog.BoundLogger:
    return structlog.get_logger(name)


def add_request_context(request_id: str, **context: Any) -> None:
    """Replace the log context with the current request's."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id, **context)
