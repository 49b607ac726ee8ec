from typing import Any

import pytest

from sagarun.auditor import InMemoryExecutionAuditor
from sagarun.executor import Executor
from sagarun.locks import InMemoryResourceLockManager
from sagarun.procedures import LocalProcedureRuntime
from sagarun.registry import InMemorySpecStore
from sagarun.resolver import SpecResolver
from sagarun.schemas import OrchestrationSpec


@pytest.fixture(autouse=True)
def isolated_home(request, monkeypatch, tmp_path):
    """Point SAGARUN_HOME at an empty directory so no user config leaks into tests."""
    home = tmp_path / "sagarun_home"
    monkeypatch.setenv("SAGARUN_HOME", str(home))
    return home


class RecordingRuntime(LocalProcedureRuntime):
    """LocalProcedureRuntime that remembers every invocation."""

    def __init__(self):
        super().__init__()
        self.calls: list[tuple[str, dict[str, Any]]] = []

    def invoke(self, run_code, payload):
        self.calls.append((run_code, payload))
        return super().invoke(run_code, payload)

    @property
    def codes(self) -> list[str]:
        return [code for code, _ in self.calls]


@pytest.fixture
def runtime() -> RecordingRuntime:
    return RecordingRuntime()


@pytest.fixture
def store() -> InMemorySpecStore:
    return InMemorySpecStore()


@pytest.fixture
def auditor() -> InMemoryExecutionAuditor:
    return InMemoryExecutionAuditor()


@pytest.fixture
def locks() -> InMemoryResourceLockManager:
    return InMemoryResourceLockManager()


@pytest.fixture
def executor(store, runtime, auditor, locks) -> Executor:
    return Executor(
        resolver=SpecResolver(store),
        runtime=runtime,
        auditor=auditor,
        locks=locks,
        persistence_backoff_seconds=0,
    )


def _make_spec(smart_code: str = "HERA.TEST.FLOW.v1", nodes=None, **extra) -> OrchestrationSpec:
    data = {"smart_code": smart_code, "intent": "test flow", "nodes": nodes or [], **extra}
    return OrchestrationSpec.from_dict(data)


@pytest.fixture
def make_spec():
    """Build a spec from plain dicts the way authored definitions look."""
    return _make_spec


@pytest.fixture
def add_line_spec() -> OrchestrationSpec:
    """The salon POS add-line flow: service lines trigger a locked cart reprice."""
    return _make_spec(
        "HERA.SALON.POS.ADD_LINE.v1",
        [
            {
                "id": "create_line",
                "run": "HERA.SALON.POS.LINE.CREATE.v1",
                "compensation": "HERA.SALON.POS.LINE.DELETE.v1",
            },
            {
                "id": "reprice",
                "run": "HERA.SALON.POS.CART.REPRICE.v1",
                "when": "payload.line_type === 'service'",
                "metadata": {"resource_ref": "cart_id"},
            },
        ],
    )
