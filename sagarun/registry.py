"""
Spec stores - where OrchestrationSpecs are registered.

The engine only ever reads from a store. Stores are keyed by
``(tenant_id, smart_code)`` and answer exact-key lookups; the platform
fallback lives in the resolver, not here.

Two implementations:
- InMemorySpecStore: explicit ``register()`` calls (tests, embedding)
- FileSpecStore: YAML/JSON definitions on disk

Example directory structure:
    definitions/
        platform/
            salon/
                add_line.yaml
        tenants/
            7f3c.../
                add_line.yaml
"""

import json
import logging
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

import yaml

from sagarun.config import PLATFORM_TENANT_ID
from sagarun.errors import SpecLoadError
from sagarun.schemas import OrchestrationSpec, normalize_smart_code

logger = logging.getLogger(__name__)

DEFINITION_SUFFIXES = (".yaml", ".yml", ".json")


class SpecStore(ABC):
    """Read-only lookup of registered orchestration specs."""

    @abstractmethod
    def get_spec(self, smart_code: str, tenant_id: str) -> Optional[OrchestrationSpec]:
        """
        Return the spec registered under exactly ``tenant_id``, or None.

        ``smart_code`` is matched after normalization.
        """
        ...

    @abstractmethod
    def list_specs(self, tenant_id: Optional[str] = None) -> list[tuple[str, str]]:
        """List ``(tenant_id, smart_code)`` pairs, optionally for one tenant."""
        ...


class InMemorySpecStore(SpecStore):
    """In-memory spec store for tests and embedded use."""

    def __init__(self) -> None:
        self._specs: dict[tuple[str, str], OrchestrationSpec] = {}
        self._lock = threading.Lock()

    def register(self, spec: OrchestrationSpec, tenant_id: str = PLATFORM_TENANT_ID) -> OrchestrationSpec:
        """
        Register a spec for a tenant (platform default if omitted).

        Re-registering the same key replaces the previous spec; resolvers
        holding a cached copy must be invalidated by the caller.
        """
        stored = spec.with_tenant(tenant_id)
        with self._lock:
            self._specs[(tenant_id, normalize_smart_code(spec.smart_code))] = stored
        return stored

    def get_spec(self, smart_code: str, tenant_id: str) -> Optional[OrchestrationSpec]:
        with self._lock:
            return self._specs.get((tenant_id, normalize_smart_code(smart_code)))

    def list_specs(self, tenant_id: Optional[str] = None) -> list[tuple[str, str]]:
        with self._lock:
            keys = list(self._specs.keys())
        return sorted(k for k in keys if tenant_id is None or k[0] == tenant_id)


class FileSpecStore(SpecStore):
    """
    Spec store backed by a definitions directory.

    Files under ``platform/`` register platform defaults; files under
    ``tenants/<tenant_id>/`` register tenant overrides. The ``smart_code``
    field inside each file is the lookup key, so file names are free-form.
    YAML is preferred over JSON when both define the same smart code.
    Anything under a ``_deprecated`` directory is ignored.

    The directory is scanned once on first access; call ``reload()`` after
    definitions change on disk.
    """

    def __init__(self, definitions_dir: Path | str):
        """
        Initialize the store.

        Args:
            definitions_dir: Root of the definitions tree
        """
        self._definitions_dir = Path(definitions_dir).expanduser()
        self._index: Optional[dict[tuple[str, str], Path]] = None
        self._loaded: dict[tuple[str, str], OrchestrationSpec] = {}
        self._lock = threading.Lock()

    @property
    def definitions_dir(self) -> Path:
        """Get the definitions directory path."""
        return self._definitions_dir

    def reload(self) -> None:
        """Drop the directory index and any parsed specs."""
        with self._lock:
            self._index = None
            self._loaded.clear()

    def get_spec(self, smart_code: str, tenant_id: str) -> Optional[OrchestrationSpec]:
        key = (tenant_id, normalize_smart_code(smart_code))
        with self._lock:
            if key in self._loaded:
                return self._loaded[key]
            path = self._get_index().get(key)
            if path is None:
                return None
            spec = OrchestrationSpec.from_dict(self._load_file(path), tenant_id=tenant_id)
            self._loaded[key] = spec
            return spec

    def list_specs(self, tenant_id: Optional[str] = None) -> list[tuple[str, str]]:
        with self._lock:
            keys = list(self._get_index().keys())
        return sorted(k for k in keys if tenant_id is None or k[0] == tenant_id)

    def _get_index(self) -> dict[tuple[str, str], Path]:
        if self._index is None:
            self._index = self._build_index()
        return self._index

    def _build_index(self) -> dict[tuple[str, str], Path]:
        index: dict[tuple[str, str], Path] = {}
        if not self._definitions_dir.exists():
            return index

        roots: list[tuple[str, Path]] = [(PLATFORM_TENANT_ID, self._definitions_dir / "platform")]
        tenants_dir = self._definitions_dir / "tenants"
        if tenants_dir.is_dir():
            for tenant_dir in sorted(p for p in tenants_dir.iterdir() if p.is_dir()):
                roots.append((tenant_dir.name, tenant_dir))

        for tenant_id, root in roots:
            if not root.is_dir():
                continue
            # JSON first so YAML wins on duplicate smart codes
            paths = sorted(
                (p for p in root.rglob("*") if p.suffix.lower() in DEFINITION_SUFFIXES),
                key=lambda p: (p.suffix.lower() != ".json", str(p)),
            )
            for path in paths:
                if "_deprecated" in path.parts:
                    continue
                data = self._load_file(path)
                smart_code = data.get("smart_code")
                if not smart_code:
                    logger.warning(f"Skipping {path}: no smart_code field")
                    continue
                index[(tenant_id, normalize_smart_code(str(smart_code)))] = path

        logger.debug(f"Indexed {len(index)} spec definitions under {self._definitions_dir}")
        return index

    def _load_file(self, path: Path) -> dict:
        """
        Load a definition file (YAML or JSON).

        Raises:
            SpecLoadError: If the file cannot be parsed or is not a mapping
        """
        suffix = path.suffix.lower()
        try:
            with open(path) as f:
                if suffix in (".yaml", ".yml"):
                    data = yaml.safe_load(f)
                else:
                    data = json.load(f)
        except (OSError, yaml.YAMLError, json.JSONDecodeError) as e:
            raise SpecLoadError(f"Failed to load {path}", [str(e)])

        if not isinstance(data, dict):
            raise SpecLoadError(f"Failed to load {path}", ["definition must be a mapping"])
        return data
