"""
Execution schemas - per-invocation state and durable records.

ExecutionContext is owned by a single Executor invocation and discarded when
it ends. ExecutionRecord and ResourceLock outlive the invocation: records are
the permanent audit trail used for idempotency lookups, locks are released at
the end of each node's critical section.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

# ULID type alias for documentation
ULID = str


def _utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


class NodeStatus(str, Enum):
    """State of a node within one invocation."""
    PENDING = "pending"
    CONDITION_CHECKED = "condition_checked"
    SKIPPED = "skipped"
    LOCK_ACQUIRED = "lock_acquired"
    IDEMPOTENT_SKIP = "idempotent_skip"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (
            NodeStatus.SKIPPED,
            NodeStatus.IDEMPOTENT_SKIP,
            NodeStatus.COMPLETED,
            NodeStatus.FAILED,
        )


@dataclass(frozen=True)
class CompensationEntry:
    """A compensation pushed after a node completed successfully."""
    node_id: str
    compensation: str
    output: Any = None


@dataclass
class ExecutionContext:
    """
    Ephemeral state for one invocation.

    Attributes:
        payload: Caller-supplied input map
        run_epoch: Invocation identifier scoping idempotency keys
        tenant_id: Tenant the invocation runs for
        correlation_id: Trace id passed to every procedure
        completed_nodes: Node ids in completion order
        failed_nodes: Node ids that failed
        compensation_stack: LIFO stack of compensations to run on rollback
        outputs: Procedure output per completed node
    """
    payload: dict[str, Any]
    run_epoch: str
    tenant_id: str
    correlation_id: str
    completed_nodes: list[str] = field(default_factory=list)
    failed_nodes: list[str] = field(default_factory=list)
    compensation_stack: list[CompensationEntry] = field(default_factory=list)
    outputs: dict[str, Any] = field(default_factory=dict)

    def push_compensation(self, entry: CompensationEntry) -> None:
        self.compensation_stack.append(entry)

    def pop_compensation(self) -> Optional[CompensationEntry]:
        if not self.compensation_stack:
            return None
        return self.compensation_stack.pop()


@dataclass(frozen=True)
class ExecutionRecord:
    """
    Durable record of a node that actually executed.

    At most one record exists per idempotency_key; its presence turns a later
    execution with the same key into an idempotent replay, which returns the
    stored procedure output instead of invoking the procedure again.
    """
    idempotency_key: str
    node_id: str
    tenant_id: str
    payload_hash: str
    duration_ms: int
    timestamp: datetime = field(default_factory=_utcnow)
    smart_code: Optional[str] = None
    run_epoch: Optional[str] = None
    run_code: Optional[str] = None
    output: Any = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result: dict[str, Any] = {
            "idempotency_key": self.idempotency_key,
            "node_id": self.node_id,
            "tenant_id": self.tenant_id,
            "payload_hash": self.payload_hash,
            "duration_ms": self.duration_ms,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.smart_code is not None:
            result["smart_code"] = self.smart_code
        if self.run_epoch is not None:
            result["run_epoch"] = self.run_epoch
        if self.run_code is not None:
            result["run_code"] = self.run_code
        if self.output is not None:
            result["output"] = self.output
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ExecutionRecord":
        """Deserialize from dictionary."""
        return cls(
            idempotency_key=data["idempotency_key"],
            node_id=data["node_id"],
            tenant_id=data["tenant_id"],
            payload_hash=data["payload_hash"],
            duration_ms=int(data.get("duration_ms", 0)),
            timestamp=datetime.fromisoformat(data["timestamp"]),
            smart_code=data.get("smart_code"),
            run_epoch=data.get("run_epoch"),
            run_code=data.get("run_code"),
            output=data.get("output"),
        )


@dataclass(frozen=True)
class ResourceLock:
    """A held lock on a shared business resource."""
    resource_id: str
    holder_run_epoch: str
    acquired_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "resource_id": self.resource_id,
            "holder_run_epoch": self.holder_run_epoch,
            "acquired_at": self.acquired_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ResourceLock":
        return cls(
            resource_id=data["resource_id"],
            holder_run_epoch=data["holder_run_epoch"],
            acquired_at=datetime.fromisoformat(data["acquired_at"]),
        )


@dataclass
class NodeOutcome:
    """
    The outcome of one node within an invocation.

    Attributes:
        node_id: Identifier of the node
        status: Final (or current) NodeStatus
        run_code: Procedure smart code
        idempotency_key: Key computed for this node (None if skipped by condition)
        resource_id: Resource locked for this node, if any
        started_at: When the procedure was invoked
        completed_at: When the procedure returned
        error: Error details if status is failed
        output: Procedure output; for an idempotent replay, the output stored
            by the run that executed the node
    """
    node_id: str
    status: NodeStatus = NodeStatus.PENDING
    run_code: Optional[str] = None
    idempotency_key: Optional[str] = None
    resource_id: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[dict[str, Any]] = None
    output: Any = None

    @property
    def duration_ms(self) -> Optional[int]:
        """Calculate execution duration in milliseconds if both timestamps present."""
        if self.started_at and self.completed_at:
            delta = self.completed_at - self.started_at
            return int(delta.total_seconds() * 1000)
        return None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "node_id": self.node_id,
            "status": self.status.value,
        }
        if self.run_code is not None:
            result["run_code"] = self.run_code
        if self.idempotency_key is not None:
            result["idempotency_key"] = self.idempotency_key
        if self.resource_id is not None:
            result["resource_id"] = self.resource_id
        if self.started_at is not None:
            result["started_at"] = self.started_at.isoformat()
        if self.completed_at is not None:
            result["completed_at"] = self.completed_at.isoformat()
        if self.duration_ms is not None:
            result["duration_ms"] = self.duration_ms
        if self.error is not None:
            result["error"] = self.error
        if self.output is not None:
            result["output"] = self.output
        if self.status == NodeStatus.IDEMPOTENT_SKIP:
            result["cached"] = True
        return result


@dataclass(frozen=True)
class CompensationOutcome:
    """Result of invoking one compensation procedure during rollback."""
    node_id: str
    compensation: str
    success: bool
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "node_id": self.node_id,
            "compensation": self.compensation,
            "success": self.success,
        }
        if self.error is not None:
            result["error"] = self.error
        return result


@dataclass
class ExecutionSummary:
    """Summary of one invocation, returned on success and attached to errors on failure."""
    smart_code: str
    tenant_id: str
    run_epoch: ULID
    correlation_id: str
    status: str = "running"
    completed_nodes: list[str] = field(default_factory=list)
    skipped_nodes: list[str] = field(default_factory=list)
    idempotent_skips: list[str] = field(default_factory=list)
    failed_nodes: list[str] = field(default_factory=list)
    compensations: list[CompensationOutcome] = field(default_factory=list)
    outcomes: list[NodeOutcome] = field(default_factory=list)
    elapsed_ms: int = 0
    error: Optional[dict[str, Any]] = None

    @property
    def success(self) -> bool:
        return self.status == "completed"

    def get_outcome(self, node_id: str) -> Optional[NodeOutcome]:
        for outcome in self.outcomes:
            if outcome.node_id == node_id:
                return outcome
        return None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result: dict[str, Any] = {
            "smart_code": self.smart_code,
            "tenant_id": self.tenant_id,
            "run_epoch": self.run_epoch,
            "correlation_id": self.correlation_id,
            "status": self.status,
            "completed_nodes": list(self.completed_nodes),
            "skipped_nodes": list(self.skipped_nodes),
            "idempotent_skips": list(self.idempotent_skips),
            "failed_nodes": list(self.failed_nodes),
            "compensations": [c.to_dict() for c in self.compensations],
            "outcomes": [o.to_dict() for o in self.outcomes],
            "elapsed_ms": self.elapsed_ms,
        }
        if self.error is not None:
            result["error"] = self.error
        return result


@dataclass
class SimulationPlan:
    """
    Dry-run projection of an invocation.

    Attributes:
        smart_code: Spec that was simulated
        tenant_id: Tenant the spec resolved for
        order: Execution order computed by the scheduler
        conditions: node_id -> condition result (None when the node has no `when`)
        would_execute: Nodes whose condition passes, in order
        transaction_boundaries: boundary name -> member nodes in execution order
        diagnostics: Condition evaluation problems, by node id
    """
    smart_code: str
    tenant_id: Optional[str]
    order: list[str] = field(default_factory=list)
    conditions: dict[str, Optional[bool]] = field(default_factory=dict)
    would_execute: list[str] = field(default_factory=list)
    transaction_boundaries: dict[str, list[str]] = field(default_factory=dict)
    diagnostics: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "smart_code": self.smart_code,
            "tenant_id": self.tenant_id,
            "order": list(self.order),
            "conditions": dict(self.conditions),
            "would_execute": list(self.would_execute),
            "transaction_boundaries": {k: list(v) for k, v in self.transaction_boundaries.items()},
            "diagnostics": dict(self.diagnostics),
        }
