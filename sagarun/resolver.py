"""
SpecResolver - tenant-first lookup with platform fallback.

Resolution order for ``resolve(smart_code, tenant_id)``:
1. the spec registered under ``tenant_id``
2. the platform default (``PLATFORM_TENANT_ID``)
3. ``SpecNotFound``

Resolved specs are cached in a SpecCache owned by the resolver. Callers
that change the underlying store invalidate the affected entries.
"""

import logging
import threading
from typing import Optional

from sagarun.config import PLATFORM_TENANT_ID
from sagarun.errors import SpecNotFound
from sagarun.registry import SpecStore
from sagarun.schemas import OrchestrationSpec, normalize_smart_code
from sagarun.utils import sha256_hex

logger = logging.getLogger(__name__)


def spec_hash(spec: OrchestrationSpec) -> str:
    """
    Compute SHA256 hash of a spec for content addressing.

    The hash covers the spec definition only, not the tenant it was
    registered under.
    """
    return sha256_hex(spec.to_dict())


class SpecCache:
    """Thread-safe cache of resolved specs keyed by (smart_code, tenant_id)."""

    def __init__(self) -> None:
        self._entries: dict[tuple[str, str], OrchestrationSpec] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _key(smart_code: str, tenant_id: str) -> tuple[str, str]:
        return (normalize_smart_code(smart_code), tenant_id)

    def get(self, smart_code: str, tenant_id: str) -> Optional[OrchestrationSpec]:
        with self._lock:
            return self._entries.get(self._key(smart_code, tenant_id))

    def put(self, smart_code: str, tenant_id: str, spec: OrchestrationSpec) -> None:
        with self._lock:
            self._entries[self._key(smart_code, tenant_id)] = spec

    def invalidate(self, smart_code: str, tenant_id: Optional[str] = None) -> int:
        """
        Drop cached entries for a smart code.

        With ``tenant_id`` only that tenant's entry is dropped; without it,
        every tenant's entry for the smart code goes. Invalidating the platform
        tenant also drops tenant entries that fell back to the platform spec.
        Returns the number of entries removed.
        """
        code = normalize_smart_code(smart_code)
        with self._lock:
            doomed = [
                k for k, spec in self._entries.items()
                if k[0] == code and (
                    tenant_id is None
                    or k[1] == tenant_id
                    or (tenant_id == PLATFORM_TENANT_ID and spec.tenant_id == PLATFORM_TENANT_ID)
                )
            ]
            for k in doomed:
                del self._entries[k]
        return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class SpecResolver:
    """
    Resolve smart codes to specs for a tenant.

    Usage:
        resolver = SpecResolver(FileSpecStore("definitions"))
        spec = resolver.resolve("HERA.SALON.POS.ADD_LINE.v1", tenant_id)
    """

    def __init__(self, store: SpecStore, cache: Optional[SpecCache] = None):
        self._store = store
        self._cache = cache if cache is not None else SpecCache()

    @property
    def store(self) -> SpecStore:
        return self._store

    @property
    def cache(self) -> SpecCache:
        return self._cache

    def resolve(self, smart_code: str, tenant_id: str = PLATFORM_TENANT_ID) -> OrchestrationSpec:
        """
        Resolve a spec, trying the tenant first and the platform second.

        Raises:
            SpecNotFound: If neither lookup finds a spec
        """
        cached = self._cache.get(smart_code, tenant_id)
        if cached is not None:
            return cached

        spec = self._store.get_spec(smart_code, tenant_id)
        if spec is None and tenant_id != PLATFORM_TENANT_ID:
            spec = self._store.get_spec(smart_code, PLATFORM_TENANT_ID)
            if spec is not None:
                logger.debug(f"Resolved {smart_code} from platform defaults for tenant {tenant_id}")

        if spec is None:
            raise SpecNotFound(smart_code, tenant_id)

        self._cache.put(smart_code, tenant_id, spec)
        return spec

    def invalidate(self, smart_code: str, tenant_id: Optional[str] = None) -> int:
        return self._cache.invalidate(smart_code, tenant_id)

    def clear_cache(self) -> None:
        self._cache.clear()
