"""
Shared utilities for the PTO Connect API.

This package aggregates common building blocks consumed by the service:

- config: Service configuration via pydantic-settings
- logging: Structured logging with request correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and classification
- envelope: Standard response envelope and envelope-aware routes
- tasks: Best-effort background task supervision
- base_service: FastAPI service shell with middleware and handlers

Do not import from service packages into shared/.
"""
