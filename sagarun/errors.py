"""
Error classes for sagarun orchestration.

Retry classification at execution boundaries is kept from the job layer:
- TransientError: Safe to retry (store hiccups, network issues)
- PermanentError: Do not retry (unknown spec, malformed DAG, busy resource)

The executor catches node-level errors at the boundary to drive the
compensation protocol, then re-raises the original error with the
invocation summary attached as ``error.summary``.

Taxonomy:
- SpecNotFound             fatal, nothing executed
- ValidationError          fatal, nothing executed
- CyclicGraphError         fatal, nothing executed
- ConditionEvalError       non-fatal, condition treated as false
- LockAcquisitionFailure   fatal, no rollback (contended node never started)
- ProcedureExecutionError  fatal to the node, triggers rollback
- ExecutionCancelled       handled exactly like a node failure
- CompensationFailure      non-fatal, rollback continues
- PersistenceError         retried, then escalated or logged per policy
"""

from typing import Any, Optional


class SagarunError(Exception):
    """Base exception for sagarun."""

    # Set by the executor before re-raising so callers can inspect
    # completed nodes and the compensations that were attempted.
    summary: Any = None


class TransientError(SagarunError):
    """
    Transient error - safe to retry.

    Examples:
    - Audit store temporarily unavailable
    - Network timeout talking to the lock backend
    """
    pass


class PermanentError(SagarunError):
    """
    Permanent error - do not retry.

    Examples:
    - Orchestration spec not registered
    - Malformed DAG
    - Resource held by another invocation
    """
    pass


class SpecNotFound(PermanentError):
    """Raised when neither a tenant nor a platform spec exists."""

    def __init__(self, smart_code: str, tenant_id: str):
        self.smart_code = smart_code
        self.tenant_id = tenant_id
        super().__init__(
            f"Orchestration spec not found: {smart_code} (tenant={tenant_id}, no platform default)"
        )


class ValidationError(PermanentError):
    """Raised when an orchestration spec fails structural validation."""

    def __init__(self, message: str, errors: Optional[list[str]] = None):
        self.errors = list(errors or [])
        if self.errors:
            message = f"{message}: " + "; ".join(self.errors)
        super().__init__(message)


class SpecLoadError(ValidationError):
    """Raised when a spec definition file cannot be parsed."""
    pass


class CyclicGraphError(ValidationError):
    """Raised when dependency edges form a cycle."""

    def __init__(self, nodes: list[str]):
        self.nodes = list(nodes)
        super().__init__(
            "Dependency cycle detected",
            [f"cycle involves nodes: {', '.join(self.nodes)}"],
        )


class ConditionEvalError(SagarunError):
    """Raised when a `when` expression cannot be evaluated."""

    def __init__(self, expression: str, reason: str):
        self.expression = expression
        self.reason = reason
        super().__init__(f"Cannot evaluate condition {expression!r}: {reason}")


class LockAcquisitionFailure(PermanentError):
    """Raised when a shared resource is already held by another invocation."""

    def __init__(self, resource_id: str, node_id: Optional[str] = None, holder: Optional[str] = None):
        self.resource_id = resource_id
        self.node_id = node_id
        self.holder = holder
        message = f"Resource busy: {resource_id}"
        if node_id:
            message += f" (node '{node_id}')"
        if holder:
            message += f", held by run {holder}"
        super().__init__(message)


class ProcedureExecutionError(SagarunError):
    """Raised when a node's procedure fails."""

    def __init__(
        self,
        node_id: str,
        run_code: str,
        message: str,
        code: str = "PROCEDURE_ERROR",
        detail: Any = None,
    ):
        self.node_id = node_id
        self.run_code = run_code
        self.code = code
        self.detail = detail
        super().__init__(f"Node '{node_id}' ({run_code}) failed: {message}")


class ExecutionCancelled(SagarunError):
    """Raised when a cancellation signal is observed before node dispatch."""

    def __init__(self, node_id: str):
        self.node_id = node_id
        super().__init__(f"Execution cancelled before node '{node_id}'")


class CompensationFailure(SagarunError):
    """A compensation procedure failed. Logged and recorded, never raised out of rollback."""

    def __init__(self, node_id: str, compensation: str, message: str):
        self.node_id = node_id
        self.compensation = compensation
        super().__init__(f"Compensation {compensation} for node '{node_id}' failed: {message}")


class PersistenceError(TransientError):
    """Raised when an ExecutionRecord cannot be written."""

    def __init__(self, node_id: str, idempotency_key: str, message: str):
        self.node_id = node_id
        self.idempotency_key = idempotency_key
        super().__init__(
            f"Failed to record execution of node '{node_id}' (key={idempotency_key}): {message}"
        )


class DuplicateRecordError(SagarunError):
    """Raised by an auditor when a record already exists for an idempotency key."""

    def __init__(self, idempotency_key: str):
        self.idempotency_key = idempotency_key
        super().__init__(f"Execution record already exists for key {idempotency_key}")
