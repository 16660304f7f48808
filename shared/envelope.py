"""
Standard response envelope.

Every JSON body leaving the API has the shape::

    {"success": bool, "data": ..., "meta": {...}, "errors": [...] | None}
"""

import json
import math
from datetime import datetime, timezone
from typing import Any, Callable, Coroutine, Dict, List, Optional, Sequence

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from fastapi.routing import APIRoute

from shared.errors import APIError, ErrorCode, ErrorDetail

FALLBACK_ERROR_MESSAGE = "An unexpected error occurred"


def utc_timestamp() -> str:
    """ISO-8601 UTC timestamp with millisecond precision and a Z suffix."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _error_entry(item: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "code": item.get("code") or ErrorCode.UNKNOWN_ERROR.value,
        "message": item.get("error") or item.get("message") or "An error occurred",
        "field": item.get("field"),
        "details": item.get("details"),
    }


def normalize_errors(error: Any) -> List[Dict[str, Any]]:
    """Turn whatever a handler produced as an error into envelope entries."""
    if isinstance(error, APIError):
        return [error.to_error().model_dump()]
    if isinstance(error, ErrorDetail):
        return [error.model_dump()]
    if isinstance(error, str):
        return [_error_entry({"message": error})]
    if isinstance(error, (list, tuple)):
        entries = []
        for item in error:
            if isinstance(item, dict):
                entries.append(_error_entry(item))
            else:
                entries.extend(normalize_errors(item))
        return entries
    if isinstance(error, dict):
        if error.get("error") or error.get("message"):
            return [_error_entry(error)]
        return [_error_entry({"message": json.dumps(error, default=str)})]
    return [_error_entry({"message": FALLBACK_ERROR_MESSAGE})]


def build_meta(request: Request, version: str = "v1") -> Dict[str, Any]:
    return {
        "timestamp": utc_timestamp(),
        "request_id": getattr(request.state, "request_id", None),
        "version": version,
        "endpoint": request.url.path,
        "method": request.method,
    }


def build_envelope(
    request: Request,
    status_code: int,
    payload: Any = None,
    version: str = "v1",
    meta: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Wrap ``payload`` into the envelope. Success is inferred from ``status_code``."""
    success = 200 <= status_code < 300
    envelope_meta = build_meta(request, version)
    data = None
    errors = None

    if success:
        data = payload
        if isinstance(data, dict) and data.get("pagination"):
            envelope_meta["pagination"] = data["pagination"]
            if "data" in data:
                data = data["data"]
    else:
        errors = normalize_errors(payload)

    if meta:
        envelope_meta.update(meta)

    return {
        "success": success,
        "data": data,
        "meta": envelope_meta,
        "errors": errors,
    }


def is_envelope(body: Any) -> bool:
    return isinstance(body, dict) and {"success", "data", "meta", "errors"} <= set(body)


def paginated(
    items: Sequence[Any],
    page: int = 1,
    limit: int = 20,
    total: Optional[int] = None,
    has_more: Optional[bool] = None,
) -> Dict[str, Any]:
    """Build a payload whose pagination block is lifted into ``meta``."""
    total = len(items) if total is None else total
    limit = limit or 20
    total_pages = math.ceil(total / limit) if limit else 0
    return {
        "data": list(items),
        "pagination": {
            "page": page or 1,
            "limit": limit,
            "total": total,
            "has_more": page * limit < total if has_more is None else has_more,
            "total_pages": total_pages,
        },
    }


class EnvelopeRoute(APIRoute):
    """Route class that wraps JSON responses into the envelope.

    Hooks appended to ``request.state.envelope_hooks`` are called with the
    envelope and status code before it is serialized and may amend its meta.
    """

    def get_route_handler(self) -> Callable[[Request], Coroutine[Any, Any, Response]]:
        original_handler = super().get_route_handler()

        async def envelope_handler(request: Request) -> Response:
            response = await original_handler(request)
            if not isinstance(response, JSONResponse) or getattr(response, "enveloped", False):
                return response

            payload = json.loads(response.body) if response.body else None
            version = getattr(request.app.state, "api_version", "v1")
            envelope = build_envelope(request, response.status_code, payload, version=version)

            for hook in getattr(request.state, "envelope_hooks", []):
                hook(envelope, response.status_code)

            wrapped = JSONResponse(content=envelope, status_code=response.status_code)
            for name, value in response.headers.items():
                if name.lower() not in ("content-length", "content-type"):
                    wrapped.headers.append(name, value)
            return wrapped

        return envelope_handler


def envelope_response(
    request: Request,
    status_code: int,
    payload: Any = None,
    meta: Optional[Dict[str, Any]] = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    """Build an already-enveloped ``JSONResponse`` (error handlers, cache replays)."""
    version = getattr(request.app.state, "api_version", "v1")
    response = JSONResponse(
        content=build_envelope(request, status_code, payload, version=version, meta=meta),
        status_code=status_code,
        headers=headers,
    )
    response.enveloped = True
    return response
