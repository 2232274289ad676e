"""Local TTL cache for API key resolution.

Only positive lookups are stored so that a newly registered key is usable
immediately. Removing a tenant must call invalidate_tenant().
"""

from cachetools import TTLCache

from katanaci.app.config import get_settings
from katanaci.infra.models import Tenant

_tenant_cache: TTLCache[str, Tenant] | None = None


def get_tenant_cache() -> TTLCache[str, Tenant]:
    global _tenant_cache
    if _tenant_cache is None:
        config = get_settings().tenants
        _tenant_cache = TTLCache(maxsize=config.cache_maxsize, ttl=config.cache_ttl)
    return _tenant_cache


def invalidate_tenant(api_key: str) -> None:
    get_tenant_cache().pop(api_key, None)


def clear_tenant_cache() -> None:
    """Drop all cached tenants (tests and config reloads)."""
    global _tenant_cache
    _tenant_cache = None
