"""
Query package for the identity cache.

Batch fetching by id, secondary index and attribute lookups, relationship
population and prefetching, and key expiry on record mutation.
"""
