"""Structured logging configuration."""

import logging
import sys
from typing import Any

import structlog
from pythonjsonlogger import jsonlogger

from fleetdispatch.config import Settings, get_settings


# Chatty at INFO; raised to WARNING unless the service itself logs at DEBUG
NOISY_LOGGERS = ("uvicorn.access", "redis", "httpx")


def _stdlib_handler(log_format: str) -> logging.Handler:
    """Handler for records emitted by uvicorn, redis and other libraries."""
    handler = logging.StreamHandler(sys.stdout)

    if log_format == "json":
        handler.setFormatter(
            jsonlogger.JsonFormatter(
                fmt="%(asctime)s %(levelname)s %(name)s %(message)s",
                rename_fields={"levelname": "level", "asctime": "timestamp"},
            )
        )
    else:
        handler.setFormatter(
            logging.Formatter(
                fmt="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
                datefmt="%H:%M:%S",
            )
        )

    return handler


def setup_logging(settings: Settings | None = None) -> None:
    """Configure structured logging for the application."""
    settings = settings or get_settings()
    log_level = getattr(logging, settings.log_level)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()
    root_logger.addHandler(_stdlib_handler(settings.log_format))

    library_level = log_level if log_level <= logging.DEBUG else logging.WARNING
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(library_level)

    if settings.log_format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Every event names the deployment it came from
    structlog.contextvars.bind_contextvars(
        service="fleet-dispatch",
        environment=settings.environment,
        backend=settings.state_backend,
    )


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


class DispatchLogger:
    """Logger for the recurring state-change records of a component."""

    def __init__(self, component: str):
        self.component = component
        self.logger = get_logger(component)

    def log_transition(
        self,
        entity_type: str,
        entity_id: str,
        from_status: str,
        to_status: str,
        version: int,
        **kwargs: Any,
    ) -> None:
        """Log an accepted status transition."""
        self.logger.info(
            f"{entity_type}_status_changed",
            component=self.component,
            entity_id=entity_id,
            from_status=from_status,
            to_status=to_status,
            version=version,
            **kwargs,
        )

    def log_assignment(
        self,
        order_id: str,
        outcome: str,
        driver_id: str | None = None,
        duration_ms: float | None = None,
        **kwargs: Any,
    ) -> None:
        """Log the outcome of an assignment attempt."""
        log_data = {
            "component": self.component,
            "order_id": order_id,
            "outcome": outcome,
        }

        if driver_id is not None:
            log_data["driver_id"] = driver_id
        if duration_ms is not None:
            log_data["duration_ms"] = duration_ms

        log_data.update(kwargs)
        self.logger.info("order_assignment", **log_data)

    def log_rejection(
        self,
        driver_id: str,
        reason: str,
        **kwargs: Any,
    ) -> None:
        """Log a rejected location fix."""
        self.logger.info(
            "location_fix_rejected",
            component=self.component,
            driver_id=driver_id,
            reason=reason,
            **kwargs,
        )

    def log_conflict(
        self,
        entity_type: str,
        entity_id: str,
        **kwargs: Any,
    ) -> None:
        """Log a version conflict that the caller resolves by retrying."""
        self.logger.debug(
            "version_conflict",
            component=self.component,
            entity_type=entity_type,
            entity_id=entity_id,
            **kwargs,
        )
