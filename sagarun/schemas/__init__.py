"""
sagarun.schemas - Data model for the orchestration engine.

OrchestrationSpec -> ExecutionContext -> NodeOutcome -> ExecutionRecord

Lifecycle:
1. OrchestrationSpec: Authored and registered externally, read-only to the engine
2. ExecutionContext: Created at invocation start, discarded at invocation end
3. NodeOutcome / ExecutionSummary: What happened to each node in one invocation
4. ExecutionRecord: Durable, one per node actually executed, never deleted
5. ResourceLock: Held for the critical section of a node touching a shared resource
"""

from .smart_code import (
    SMART_CODE_PATTERN,
    is_valid_smart_code,
    normalize_smart_code,
)
from .spec import (
    OrchestrationSpec,
    Node,
    Trigger,
    CompensationPolicy,
    TransactionBoundary,
)
from .execution import (
    ULID,
    NodeStatus,
    CompensationEntry,
    ExecutionContext,
    ExecutionRecord,
    ResourceLock,
    NodeOutcome,
    CompensationOutcome,
    ExecutionSummary,
    SimulationPlan,
)

__all__ = [
    # Smart codes
    "SMART_CODE_PATTERN",
    "is_valid_smart_code",
    "normalize_smart_code",
    # Spec
    "OrchestrationSpec",
    "Node",
    "Trigger",
    "CompensationPolicy",
    "TransactionBoundary",
    # Execution
    "ULID",
    "NodeStatus",
    "CompensationEntry",
    "ExecutionContext",
    "ExecutionRecord",
    "ResourceLock",
    "NodeOutcome",
    "CompensationOutcome",
    "ExecutionSummary",
    "SimulationPlan",
]
