"""Tests for sagarun.registry and sagarun.resolver.

Tests spec stores (in-memory and file-backed), tenant-first resolution with
platform fallback, and the resolver-owned cache.
"""

import json
from pathlib import Path

import pytest
import yaml

from sagarun.config import PLATFORM_TENANT_ID
from sagarun.errors import SpecLoadError, SpecNotFound, ValidationError
from sagarun.registry import FileSpecStore, InMemorySpecStore
from sagarun.resolver import SpecCache, SpecResolver, spec_hash


TENANT = "7f3c9a52-1d4e-4b8a-9c2f-6a1e0d3b5c77"


def _write_yaml(path: Path, data: dict):
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        yaml.dump(data, f)


def _spec_data(smart_code: str, intent: str = "", run: str = "HERA.A.RUN.v1") -> dict:
    return {"smart_code": smart_code, "intent": intent, "nodes": [{"id": "a", "run": run}]}


# =============================================================================
# IN-MEMORY STORE
# =============================================================================


class TestInMemorySpecStore:
    """Tests for explicit registration."""

    def test_register_defaults_to_platform(self, store, make_spec):
        store.register(make_spec("HERA.X.FLOW.v1", [{"id": "a", "run": "HERA.A.v1"}]))
        spec = store.get_spec("HERA.X.FLOW.v1", PLATFORM_TENANT_ID)
        assert spec is not None
        assert spec.tenant_id == PLATFORM_TENANT_ID

    def test_lookup_is_exact_on_tenant(self, store, make_spec):
        store.register(make_spec("HERA.X.FLOW.v1"), tenant_id=TENANT)
        assert store.get_spec("HERA.X.FLOW.v1", PLATFORM_TENANT_ID) is None
        assert store.get_spec("HERA.X.FLOW.v1", TENANT).tenant_id == TENANT

    def test_lookup_normalizes_smart_code(self, store, make_spec):
        store.register(make_spec("hera.x.flow.v1"))
        assert store.get_spec("HERA.X.FLOW.V1", PLATFORM_TENANT_ID) is not None

    def test_list_specs(self, store, make_spec):
        store.register(make_spec("HERA.X.FLOW.v1"))
        store.register(make_spec("HERA.Y.FLOW.v1"), tenant_id=TENANT)
        assert store.list_specs() == [
            (PLATFORM_TENANT_ID, "HERA.X.FLOW.V1"),
            (TENANT, "HERA.Y.FLOW.V1"),
        ]
        assert store.list_specs(TENANT) == [(TENANT, "HERA.Y.FLOW.V1")]


# =============================================================================
# FILE STORE
# =============================================================================


class TestFileSpecStore:
    """Tests for definitions loaded from disk."""

    def test_platform_and_tenant_layout(self, tmp_path):
        _write_yaml(tmp_path / "platform" / "salon" / "add_line.yaml", _spec_data("HERA.SALON.ADD_LINE.v1", "platform"))
        _write_yaml(tmp_path / "tenants" / TENANT / "add_line.yaml", _spec_data("HERA.SALON.ADD_LINE.v1", "tenant"))

        store = FileSpecStore(tmp_path)
        assert store.get_spec("HERA.SALON.ADD_LINE.v1", PLATFORM_TENANT_ID).intent == "platform"
        assert store.get_spec("HERA.SALON.ADD_LINE.v1", TENANT).intent == "tenant"
        assert store.get_spec("HERA.SALON.ADD_LINE.v1", "other") is None

    def test_json_definitions(self, tmp_path):
        path = tmp_path / "platform" / "flow.json"
        path.parent.mkdir(parents=True)
        path.write_text(json.dumps(_spec_data("HERA.JSON.FLOW.v1")))

        spec = FileSpecStore(tmp_path).get_spec("hera.json.flow.v1", PLATFORM_TENANT_ID)
        assert spec.smart_code == "HERA.JSON.FLOW.v1"

    def test_yaml_preferred_over_json(self, tmp_path):
        (tmp_path / "platform").mkdir(parents=True)
        (tmp_path / "platform" / "flow.json").write_text(json.dumps(_spec_data("HERA.DUP.v1", "json")))
        _write_yaml(tmp_path / "platform" / "flow.yaml", _spec_data("HERA.DUP.v1", "yaml"))

        assert FileSpecStore(tmp_path).get_spec("HERA.DUP.v1", PLATFORM_TENANT_ID).intent == "yaml"

    def test_deprecated_ignored(self, tmp_path):
        _write_yaml(tmp_path / "platform" / "_deprecated" / "old.yaml", _spec_data("HERA.OLD.v1"))
        store = FileSpecStore(tmp_path)
        assert store.get_spec("HERA.OLD.v1", PLATFORM_TENANT_ID) is None
        assert store.list_specs() == []

    def test_missing_directory(self, tmp_path):
        store = FileSpecStore(tmp_path / "nope")
        assert store.list_specs() == []
        assert store.get_spec("HERA.X.v1", PLATFORM_TENANT_ID) is None

    def test_unparseable_file(self, tmp_path):
        bad = tmp_path / "platform" / "bad.yaml"
        bad.parent.mkdir(parents=True)
        bad.write_text("nodes: [unclosed")

        with pytest.raises(SpecLoadError) as exc_info:
            FileSpecStore(tmp_path).list_specs()
        assert isinstance(exc_info.value, ValidationError)

    def test_reload_picks_up_changes(self, tmp_path):
        store = FileSpecStore(tmp_path)
        assert store.list_specs() == []

        _write_yaml(tmp_path / "platform" / "new.yaml", _spec_data("HERA.NEW.v1"))
        assert store.list_specs() == []
        store.reload()
        assert store.list_specs() == [(PLATFORM_TENANT_ID, "HERA.NEW.V1")]


# =============================================================================
# RESOLVER
# =============================================================================


class TestSpecResolver:
    """Tests for tenant-first resolution and caching."""

    def test_tenant_spec_wins(self, store, make_spec):
        store.register(make_spec("HERA.X.FLOW.v1", intent="platform"))
        store.register(make_spec("HERA.X.FLOW.v1", intent="tenant"), tenant_id=TENANT)

        spec = SpecResolver(store).resolve("HERA.X.FLOW.v1", TENANT)
        assert spec.intent == "tenant"
        assert spec.tenant_id == TENANT

    def test_falls_back_to_platform(self, store, make_spec):
        store.register(make_spec("HERA.X.FLOW.v1", intent="platform"))

        spec = SpecResolver(store).resolve("hera.x.flow.v1", TENANT)
        assert spec.intent == "platform"
        assert spec.tenant_id == PLATFORM_TENANT_ID

    def test_not_found(self, store):
        with pytest.raises(SpecNotFound) as exc_info:
            SpecResolver(store).resolve("HERA.MISSING.v1", TENANT)
        assert exc_info.value.smart_code == "HERA.MISSING.v1"
        assert exc_info.value.tenant_id == TENANT

    def test_cache_serves_stale_until_invalidated(self, store, make_spec):
        resolver = SpecResolver(store)
        store.register(make_spec("HERA.X.FLOW.v1", intent="first"))
        assert resolver.resolve("HERA.X.FLOW.v1").intent == "first"

        store.register(make_spec("HERA.X.FLOW.v1", intent="second"))
        assert resolver.resolve("HERA.X.FLOW.v1").intent == "first"

        assert resolver.invalidate("HERA.X.FLOW.v1") == 1
        assert resolver.resolve("HERA.X.FLOW.v1").intent == "second"

    def test_invalidate_single_tenant(self, store, make_spec):
        resolver = SpecResolver(store)
        store.register(make_spec("HERA.X.FLOW.v1"))
        resolver.resolve("HERA.X.FLOW.v1", TENANT)
        resolver.resolve("HERA.X.FLOW.v1", PLATFORM_TENANT_ID)
        assert len(resolver.cache) == 2

        assert resolver.invalidate("HERA.X.FLOW.v1", TENANT) == 1
        assert len(resolver.cache) == 1

        resolver.clear_cache()
        assert len(resolver.cache) == 0

    def test_platform_invalidation_reaches_fallback_tenants(self, store, make_spec):
        resolver = SpecResolver(store)
        store.register(make_spec("HERA.X.FLOW.v1", intent="old"))
        store.register(make_spec("HERA.Y.FLOW.v1", intent="own"), tenant_id=TENANT)
        assert resolver.resolve("HERA.X.FLOW.v1", TENANT).intent == "old"

        store.register(make_spec("HERA.X.FLOW.v1", intent="new"))
        assert resolver.invalidate("HERA.X.FLOW.v1", PLATFORM_TENANT_ID) == 1
        assert resolver.resolve("HERA.X.FLOW.v1", TENANT).intent == "new"

    def test_platform_invalidation_keeps_tenant_overrides(self, store, make_spec):
        resolver = SpecResolver(store)
        store.register(make_spec("HERA.X.FLOW.v1", intent="platform"))
        store.register(make_spec("HERA.X.FLOW.v1", intent="tenant"), tenant_id=TENANT)
        resolver.resolve("HERA.X.FLOW.v1", TENANT)
        resolver.resolve("HERA.X.FLOW.v1", PLATFORM_TENANT_ID)

        assert resolver.invalidate("HERA.X.FLOW.v1", PLATFORM_TENANT_ID) == 1
        assert resolver.cache.get("HERA.X.FLOW.v1", TENANT).intent == "tenant"

    def test_shared_cache(self, store, make_spec):
        cache = SpecCache()
        store.register(make_spec("HERA.X.FLOW.v1"))
        SpecResolver(store, cache=cache).resolve("HERA.X.FLOW.v1")
        assert cache.get("hera.x.flow.v1", PLATFORM_TENANT_ID) is not None


class TestSpecHash:
    """Tests for content addressing."""

    def test_hash_is_stable_and_ignores_tenant(self, make_spec):
        spec = make_spec("HERA.X.FLOW.v1", [{"id": "a", "run": "HERA.A.v1"}])
        assert spec_hash(spec) == spec_hash(spec.with_tenant(TENANT))
        assert len(spec_hash(spec)) == 64

    def test_hash_changes_with_content(self, make_spec):
        a = make_spec("HERA.X.FLOW.v1", [{"id": "a", "run": "HERA.A.v1"}])
        b = make_spec("HERA.X.FLOW.v1", [{"id": "a", "run": "HERA.B.v1"}])
        assert spec_hash(a) != spec_hash(b)
