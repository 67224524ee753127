"""
Shared utilities for the radio-telescope data gateway.

This package aggregates common building blocks consumed by the gateway:

- config: Service configuration via pydantic-settings
- logging: Structured logging with request correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error kinds and error responses
- retry: Backoff configuration, retry decorator and retry loop
- circuit_breaker: Per-backend failure isolation

Any cross-service logic should live here to avoid import cycles across
service packages. Apart from test_helpers, nothing in shared/ imports from
service_* packages.
"""
