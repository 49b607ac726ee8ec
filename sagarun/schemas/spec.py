"""
OrchestrationSpec schema - the declarative DAG definition.

An OrchestrationSpec is authored and registered outside the engine and is
read-only once resolved. Parsing is deliberately lenient: missing node ids or
procedure codes become empty strings so the validator can report every
violation in a single pass instead of failing on the first one.
"""

from dataclasses import dataclass, field, replace
from typing import Any, Optional


@dataclass(frozen=True)
class Trigger:
    """
    An external event mapped to the emissions it causes.

    Informational only: the engine never subscribes to triggers.
    """
    event: str
    emits: tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, Any]:
        return {"event": self.event, "emits": list(self.emits)}

    @classmethod
    def from_dict(cls, data: Any) -> "Trigger":
        if isinstance(data, str):
            return cls(event=data)
        emits = data.get("emits", data.get("emit", []))
        if isinstance(emits, str):
            emits = [emits]
        return cls(event=str(data.get("event", "")), emits=tuple(emits))


@dataclass(frozen=True)
class CompensationPolicy:
    """Saga policy: roll back completed nodes when a later node fails."""
    auto_compensate: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {"auto_compensate": self.auto_compensate}

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> "CompensationPolicy":
        if not data:
            return cls()
        return cls(auto_compensate=bool(data.get("auto_compensate", True)))


@dataclass(frozen=True)
class TransactionBoundary:
    """
    A named grouping of node ids.

    Audit-only: boundaries are projected by simulation and carried in specs,
    but never enforced as atomic commit groups.
    """
    name: str
    nodes: tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "nodes": list(self.nodes)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TransactionBoundary":
        return cls(name=str(data.get("name", "")), nodes=tuple(data.get("nodes", [])))


@dataclass(frozen=True)
class Node:
    """
    A single executable step.

    Attributes:
        id: Unique identifier within the spec
        run: Procedure smart code invoked for this node
        when: Optional boolean condition over the payload
        compensation: Optional procedure smart code invoked on rollback
        metadata: Free-form; ``resource_ref`` names a shared resource
        depends_on: Ids of nodes that must run before this one
        malformed: True when the authored entry was not a mapping
    """
    id: str
    run: str
    when: Optional[str] = None
    compensation: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    depends_on: tuple[str, ...] = field(default_factory=tuple)
    malformed: bool = False

    @property
    def resource_ref(self) -> Optional[str]:
        ref = self.metadata.get("resource_ref")
        return str(ref) if ref else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "run": self.run,
            **({"when": self.when} if self.when is not None else {}),
            **({"compensation": self.compensation} if self.compensation else {}),
            **({"metadata": self.metadata} if self.metadata else {}),
            **({"depends_on": list(self.depends_on)} if self.depends_on else {}),
        }

    @classmethod
    def from_dict(cls, data: Any) -> "Node":
        if not isinstance(data, dict):
            return cls(id="", run="", malformed=True)
        when = data.get("when")
        if isinstance(when, bool):
            when = "true" if when else "false"
        elif when == "":
            when = None
        depends_on = data.get("depends_on") or []
        if isinstance(depends_on, str):
            depends_on = [depends_on]
        return cls(
            id=str(data.get("id") or ""),
            run=str(data.get("run") or ""),
            when=when,
            compensation=data.get("compensation") or None,
            metadata=dict(data.get("metadata") or {}),
            depends_on=tuple(str(d) for d in depends_on),
        )


@dataclass(frozen=True)
class OrchestrationSpec:
    """
    A DAG definition resolved from the spec store.

    Attributes:
        smart_code: Globally unique identifier with version suffix
        intent: Human-readable description
        triggers: External event-to-emission mappings (informational)
        nodes: Ordered node definitions
        compensation_policy: Saga rollback policy
        transaction_boundaries: Named node groupings (audit-only)
        tenant_id: Store key the spec was registered under (None if unregistered)
    """
    smart_code: str
    intent: str = ""
    triggers: tuple[Trigger, ...] = field(default_factory=tuple)
    nodes: tuple[Node, ...] = field(default_factory=tuple)
    compensation_policy: CompensationPolicy = field(default_factory=CompensationPolicy)
    transaction_boundaries: tuple[TransactionBoundary, ...] = field(default_factory=tuple)
    tenant_id: Optional[str] = None

    def get_node(self, node_id: str) -> Optional[Node]:
        """Get a node by ID."""
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    @property
    def node_ids(self) -> list[str]:
        return [n.id for n in self.nodes]

    @property
    def has_edges(self) -> bool:
        """True if any node declares explicit dependency edges."""
        return any(n.depends_on for n in self.nodes)

    def with_tenant(self, tenant_id: str) -> "OrchestrationSpec":
        return replace(self, tenant_id=tenant_id)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON/YAML output."""
        return {
            "smart_code": self.smart_code,
            "intent": self.intent,
            "triggers": [t.to_dict() for t in self.triggers],
            "nodes": [n.to_dict() for n in self.nodes],
            "compensation_policy": self.compensation_policy.to_dict(),
            "transaction_boundaries": [b.to_dict() for b in self.transaction_boundaries],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], tenant_id: Optional[str] = None) -> "OrchestrationSpec":
        """Deserialize from dictionary."""
        nodes = data.get("nodes") or []
        if not isinstance(nodes, (list, tuple)):
            nodes = [nodes]
        return cls(
            smart_code=str(data.get("smart_code") or ""),
            intent=str(data.get("intent") or ""),
            triggers=tuple(Trigger.from_dict(t) for t in data.get("triggers") or []),
            nodes=tuple(Node.from_dict(n) for n in nodes),
            compensation_policy=CompensationPolicy.from_dict(data.get("compensation_policy")),
            transaction_boundaries=tuple(
                TransactionBoundary.from_dict(b) for b in data.get("transaction_boundaries") or []
            ),
            tenant_id=tenant_id,
        )
