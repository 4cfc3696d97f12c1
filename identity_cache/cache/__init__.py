"""
Cache package for the identity cache.

Provides the backend interface with in-memory and Redis implementations,
the per-execution-context memoization proxy, and the encoding of cached
values (including the cached-absence marker).
"""
