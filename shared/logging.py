"""
Shared logging configuration for the ClientFlow API layer.
"""

import sys
import structlog
import logging
import uuid
import time
from typing import Any, Dict, Optional
from contextvars import ContextVar

# Context variables for correlation IDs
request_id_var: ContextVar[Optional[str]] = ContextVar('request_id', default=None)
client_ip_var: ContextVar[Optional[str]] = ContextVar('client_ip', default=None)
organization_id_var: ContextVar[Optional[str]] = ContextVar('organization_id', default=None)
service_name_var: ContextVar[Optional[str]] = ContextVar('service_name', default=None)

# Event keys whose values are credentials and must never reach a log sink
REDACTED_KEYS = frozenset({"token", "authorization", "jwt_secret", "secret", "password"})
REDACTED = "[REDACTED]"


def configure_logging(service_name: str, log_level: str = "info") -> None:
    """Configure structured logging for a service."""

    # Configure structlog
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
            add_service_context,
            add_correlation_context,
            redact_credentials,
            add_timestamp,
            structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    # Configure standard library logging; unknown level names fall back to INFO
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO),
    )


def add_service_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add service context to log events."""
    # Loggers are named "<service>.<component>", e.g. "api.rate_limiter"
    logger_name = event_dict.get("logger", "")
    if "." in logger_name:
        event_dict["service"] = logger_name.split(".")[0]

    return event_dict


def add_correlation_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add correlation context to log events."""
    # Add request ID
    request_id = request_id_var.get()
    if request_id:
        event_dict["request_id"] = request_id

    client_ip = client_ip_var.get()
    if client_ip:
        event_dict.setdefault("client_ip", client_ip)

    # Add caller context; explicit fields on the event win
    organization_id = organization_id_var.get()
    if organization_id:
        event_dict.setdefault("organization_id", organization_id)

    service_name = service_name_var.get()
    if service_name:
        event_dict.setdefault("service_name", service_name)

    return event_dict


def redact_credentials(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Mask bearer tokens and secrets passed as event fields."""
    for key in event_dict:
        if key.lower() in REDACTED_KEYS and event_dict[key] is not None:
            event_dict[key] = REDACTED
    return event_dict


def add_timestamp(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add high-precision timestamp to log events."""
    event_dict["timestamp"] = time.time()
    return event_dict


def set_request_id(request_id: Optional[str] = None) -> str:
    """Set request ID in context."""
    if request_id is None:
        request_id = str(uuid.uuid4())
    request_id_var.set(request_id)
    return request_id


def set_client_ip(client_ip: Optional[str]):
    """Set the resolved caller IP in logging context."""
    if client_ip:
        client_ip_var.set(client_ip)


def set_caller_context(organization_id: Optional[str] = None, service_name: Optional[str] = None):
    """Set caller context in logging."""
    if organization_id:
        organization_id_var.set(organization_id)
    if service_name:
        service_name_var.set(service_name)


def clear_context():
    """Clear all context variables."""
    request_id_var.set(None)
    client_ip_var.set(None)
    organization_id_var.set(None)
    service_name_var.set(None)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)
