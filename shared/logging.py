"""
Shared logging configuration for the identity cache layer.

Events are key/value pairs rendered by structlog on top of the standard
library. Every event emitted inside a memoization scope carries that
scope's ``context_id``, so all cache traffic of one unit of work can be
pulled out of the log stream together.
"""

import sys
import structlog
import logging
from typing import Any, Callable, Dict, Optional
from contextvars import ContextVar

# Id of the memoization context bound to the running task or thread
context_id_var: ContextVar[Optional[str]] = ContextVar('idc_context_id', default=None)

Processor = Callable[[Any, str, Dict[str, Any]], Dict[str, Any]]


def configure_logging(service_name: str, log_level: str = "info", json_output: bool = True) -> None:
    """Configure structlog and stdlib logging for a process embedding the cache."""
    renderer = structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            service_context(service_name),
            add_correlation_context,
            renderer
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )


def configure_from_settings(settings: Any) -> None:
    """Configure logging from an ``IdentityCacheSettings`` instance.

    Local environments get console rendering, everything else JSON.
    """
    configure_logging(settings.service_name, settings.log_level, json_output=settings.env != "local")


def service_context(service_name: str) -> Processor:
    """Processor stamping events with the service name and emitting component."""

    def processor(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
        event_dict.setdefault("service", service_name)
        logger_name = event_dict.get("logger", "")
        if logger_name.startswith("identity_cache."):
            event_dict["component"] = logger_name.split(".", 1)[1]
        return event_dict

    return processor


def add_correlation_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add the memoization context id to log events."""
    context_id = context_id_var.get()
    if context_id:
        event_dict["context_id"] = context_id

    return event_dict


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)
