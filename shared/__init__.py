"""
Shared utilities for the flags evaluation service.

This package aggregates common building blocks consumed by the service:

- config: Service configuration via pydantic-settings
- logging: Structured logging with unit correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- retry: Retry decorators for network collaborators

Do not import from service_* packages into shared/.
"""
