"""
Shared utilities for the identity cache layer.

This package aggregates common building blocks consumed by the cache:

- config: Cache settings via pydantic-settings
- logging: Structured logging with memoization-context correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- test_helpers: Sample models, record store and backend doubles for tests

Only test_helpers may import from identity_cache; everything else here must
stay importable on its own to avoid import cycles.
"""
