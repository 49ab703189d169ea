"""
Exceptions raised by the caching subsystem.

Ordinary cache misses are never errors; these cover misconfiguration,
internal store failures and warming failures.
"""


class CacheError(Exception):
    """Base exception for caching errors."""
    pass


class CacheConfigurationError(CacheError):
    """Raised when a cache component is misconfigured or used while disabled."""
    pass


class InvalidationDisabledError(CacheConfigurationError):
    """Raised when invalidation is requested but not enabled."""
    pass


class WarmingDisabledError(CacheConfigurationError):
    """Raised when warming is requested but not enabled."""
    pass


class CacheStoreError(CacheError):
    """Raised when the store's internal bookkeeping is inconsistent."""
    pass


class CacheWarmingError(CacheError):
    """Raised when a warming request cannot be accepted."""
    pass
