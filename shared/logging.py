"""
Structured logging for the PTO Connect API.

Every event is rendered as one JSON line carrying the service name and,
inside a request, the correlation fields bound by the pipeline: request id,
principal type, user id and organization id.
"""

import re
import sys
import structlog
import logging
import uuid
from typing import Any, Dict, Optional
from contextvars import ContextVar

REQUEST_ID_PATTERN = re.compile(r"^[A-Za-z0-9_.\-]{1,64}$")

# Correlation fields, reset at the end of every request
request_id_var: ContextVar[Optional[str]] = ContextVar('request_id', default=None)
principal_type_var: ContextVar[Optional[str]] = ContextVar('principal_type', default=None)
user_id_var: ContextVar[Optional[str]] = ContextVar('user_id', default=None)
org_id_var: ContextVar[Optional[str]] = ContextVar('org_id', default=None)

_CORRELATION_FIELDS = (
    ("request_id", request_id_var),
    ("principal_type", principal_type_var),
    ("user_id", user_id_var),
    ("org_id", org_id_var),
)


def configure_logging(service_name: str, log_level: str = "info") -> None:
    """Configure structlog and the stdlib root logger for a service."""

    def add_service_name(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
        event_dict.setdefault("service", service_name)
        return event_dict

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            add_service_name,
            add_correlation_context,
            structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO),
    )


def add_correlation_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Copy bound correlation fields onto the event."""
    for name, var in _CORRELATION_FIELDS:
        value = var.get()
        if value:
            event_dict.setdefault(name, value)
    return event_dict


def new_request_id() -> str:
    """Generate a correlation id of the form ``req_<12 hex>``."""
    return f"req_{uuid.uuid4().hex[:12]}"


def set_request_id(inbound: Optional[str] = None) -> str:
    """Bind the request id, honouring a well-formed inbound one."""
    request_id = inbound if inbound and REQUEST_ID_PATTERN.match(inbound) else new_request_id()
    request_id_var.set(request_id)
    return request_id


def set_user_context(
    user_id: Optional[str] = None,
    org_id: Optional[str] = None,
    principal_type: Optional[str] = None,
):
    """Bind caller identity for the rest of the request."""
    if principal_type:
        principal_type_var.set(principal_type)
    if user_id:
        user_id_var.set(user_id)
    if org_id:
        org_id_var.set(org_id)


def clear_context():
    for _, var in _CORRELATION_FIELDS:
        var.set(None)


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)
