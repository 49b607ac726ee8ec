"""
Executor - saga execution of orchestration specs.

The Executor implements:
- Spec resolution (tenant first, platform fallback) and validation
- Topological ordering of nodes
- Per-node condition check, idempotency check and resource locking
- Procedure dispatch through a ProcedureRuntime
- Durable execution records through the IdempotencyLedger
- Compensating rollback in reverse completion order
- Dry-run simulation

Execution flow:
1. Resolve and validate the spec (nothing runs if it is invalid)
2. Compute the node order
3. For each node:
   a. Stop if cancellation was requested
   b. Evaluate ``when``; false means SKIPPED
   c. Compute the idempotency key; already recorded means IDEMPOTENT_SKIP
   d. Lock ``resource_ref`` if present and repeat the idempotency check
   e. Invoke the procedure, push its compensation, write the record
   f. Release the lock
4. On failure run compensations newest first, then re-raise with
   ``error.summary`` attached
5. On success return the ExecutionSummary

A busy resource aborts the invocation with LockAcquisitionFailure and no
rollback, since the contended node never started.
"""

import logging
import threading
import time
from datetime import datetime, timezone
from typing import Any, Optional

from sagarun import conditions, scheduler
from sagarun.auditor import ExecutionAuditor, FileExecutionAuditor, InMemoryExecutionAuditor
from sagarun.config import PLATFORM_TENANT_ID, SagarunConfig
from sagarun.errors import (
    CompensationFailure,
    ConditionEvalError,
    ExecutionCancelled,
    LockAcquisitionFailure,
    ProcedureExecutionError,
)
from sagarun.idempotency import IdempotencyLedger
from sagarun.locks import (
    InMemoryResourceLockManager,
    RedisResourceLockManager,
    ResourceLockManager,
)
from sagarun.procedures import ProcedureResult, ProcedureRuntime
from sagarun.registry import FileSpecStore
from sagarun.resolver import SpecResolver
from sagarun.schemas import (
    CompensationEntry,
    CompensationOutcome,
    ExecutionContext,
    ExecutionRecord,
    ExecutionSummary,
    Node,
    NodeOutcome,
    NodeStatus,
    OrchestrationSpec,
    SimulationPlan,
)
from sagarun.utils import generate_correlation_id, generate_ulid, lookup_path
from sagarun.validator import validate

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def _error_info(error: BaseException) -> dict[str, Any]:
    info: dict[str, Any] = {"type": type(error).__name__, "message": str(error)}
    node_id = getattr(error, "node_id", None)
    if node_id:
        info["node_id"] = node_id
    code = getattr(error, "code", None)
    if code:
        info["code"] = code
    return info


class CancellationToken:
    """
    Cooperative cancellation signal for one invocation.

    The executor checks the token before dispatching each node; a node that
    is already running is never interrupted.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class Executor:
    """
    Executor for orchestration specs.

    Usage:
        runtime = LocalProcedureRuntime()
        runtime.register("HERA.SALON.POS.CART.REPRICE.v1", reprice)

        executor = Executor(
            resolver=SpecResolver(store),
            runtime=runtime,
        )
        summary = executor.execute("HERA.SALON.POS.ADD_LINE.v1", payload, tenant_id=tenant)

    Many invocations may share one Executor concurrently; the lock manager
    and auditor are the only shared state.
    """

    def __init__(
        self,
        resolver: SpecResolver,
        runtime: ProcedureRuntime,
        auditor: Optional[ExecutionAuditor] = None,
        locks: Optional[ResourceLockManager] = None,
        ledger: Optional[IdempotencyLedger] = None,
        persistence_policy: str = "escalate",
        persistence_retries: int = 3,
        persistence_backoff_seconds: float = 0.5,
    ):
        """
        Initialize the executor.

        Args:
            resolver: SpecResolver used by ``execute`` and ``simulate``
            runtime: ProcedureRuntime that runs node and compensation procedures
            auditor: ExecutionAuditor for records (defaults to in-memory)
            locks: ResourceLockManager (defaults to in-memory)
            ledger: IdempotencyLedger; built over ``auditor`` when omitted
            persistence_policy: "escalate" or "warn", used when building the ledger
            persistence_retries: Record write attempts, used when building the ledger
            persistence_backoff_seconds: Initial backoff, used when building the ledger
        """
        self._resolver = resolver
        self._runtime = runtime
        if ledger is not None:
            self._ledger = ledger
            self._auditor = ledger.auditor
        else:
            self._auditor = auditor or InMemoryExecutionAuditor()
            self._ledger = IdempotencyLedger(
                self._auditor,
                retry_attempts=persistence_retries,
                retry_backoff_seconds=persistence_backoff_seconds,
                policy=persistence_policy,
            )
        self._locks = locks or InMemoryResourceLockManager()

    @classmethod
    def from_config(cls, config: SagarunConfig, runtime: ProcedureRuntime) -> "Executor":
        """Build an executor with file-backed specs and records, and the configured lock backend."""
        if config.lock_backend == "redis":
            locks: ResourceLockManager = RedisResourceLockManager.from_url(
                config.redis_url, ttl_seconds=config.lock_ttl_seconds
            )
        else:
            locks = InMemoryResourceLockManager()
        return cls(
            resolver=SpecResolver(FileSpecStore(config.definitions_path)),
            runtime=runtime,
            auditor=FileExecutionAuditor(config.state_path),
            locks=locks,
            persistence_policy=config.persistence_policy,
            persistence_retries=config.persistence_retries,
            persistence_backoff_seconds=config.persistence_backoff_seconds,
        )

    @property
    def resolver(self) -> SpecResolver:
        return self._resolver

    @property
    def auditor(self) -> ExecutionAuditor:
        return self._auditor

    @property
    def ledger(self) -> IdempotencyLedger:
        return self._ledger

    @property
    def locks(self) -> ResourceLockManager:
        return self._locks

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def execute(
        self,
        smart_code: str,
        payload: Optional[dict[str, Any]] = None,
        tenant_id: str = PLATFORM_TENANT_ID,
        run_epoch: Optional[str] = None,
        correlation_id: Optional[str] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> ExecutionSummary:
        """
        Resolve and execute a spec.

        Args:
            smart_code: Spec to run
            payload: Input map shared by every node
            tenant_id: Tenant to resolve for (platform default if omitted)
            run_epoch: Scope for idempotency keys; reuse it to replay safely.
                A fresh ULID is generated when omitted.
            correlation_id: Trace id passed to procedures (generated if omitted)
            cancel: Optional CancellationToken

        Returns:
            ExecutionSummary with status "completed"

        Raises:
            SpecNotFound: If no spec resolves
            ValidationError: If the spec is malformed (nothing executed)
            CyclicGraphError: If dependency edges form a cycle
            LockAcquisitionFailure: If a required resource is busy
            ProcedureExecutionError: If a node fails (after rollback)
            ExecutionCancelled: If cancelled (after rollback)
            PersistenceError: If a record cannot be written under the escalate policy
        """
        spec = self._resolver.resolve(smart_code, tenant_id)
        return self.execute_spec(
            spec,
            payload,
            tenant_id=tenant_id,
            run_epoch=run_epoch,
            correlation_id=correlation_id,
            cancel=cancel,
        )

    def execute_spec(
        self,
        spec: OrchestrationSpec,
        payload: Optional[dict[str, Any]] = None,
        tenant_id: Optional[str] = None,
        run_epoch: Optional[str] = None,
        correlation_id: Optional[str] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> ExecutionSummary:
        """Execute an already-resolved spec. See ``execute``."""
        validate(spec).raise_for_errors(spec.smart_code)
        node_order = scheduler.order(spec)

        ctx = ExecutionContext(
            payload=dict(payload or {}),
            run_epoch=run_epoch or generate_ulid(),
            tenant_id=tenant_id or spec.tenant_id or PLATFORM_TENANT_ID,
            correlation_id=correlation_id or generate_correlation_id(),
        )
        summary = ExecutionSummary(
            smart_code=spec.smart_code,
            tenant_id=ctx.tenant_id,
            run_epoch=ctx.run_epoch,
            correlation_id=ctx.correlation_id,
        )
        extra = {
            "smart_code": spec.smart_code,
            "run_epoch": ctx.run_epoch,
            "correlation_id": ctx.correlation_id,
        }
        started = time.monotonic()
        logger.info(
            f"Executing {spec.smart_code} ({len(node_order)} nodes, run_epoch={ctx.run_epoch})",
            extra={**extra, "event": "execution.started"},
        )

        try:
            for node_id in node_order:
                if cancel is not None and cancel.cancelled:
                    raise ExecutionCancelled(node_id)
                node = spec.get_node(node_id)
                outcome = NodeOutcome(node_id=node_id, run_code=node.run)
                summary.outcomes.append(outcome)
                self._run_node(spec, node, ctx, summary, outcome)

        except LockAcquisitionFailure as e:
            summary.status = "failed"
            summary.error = _error_info(e)
            summary.elapsed_ms = int((time.monotonic() - started) * 1000)
            logger.error(f"Aborting {spec.smart_code}: {e}", extra={**extra, "event": "execution.aborted"})
            e.summary = summary
            raise

        except Exception as e:
            summary.status = "failed"
            summary.error = _error_info(e)
            logger.error(f"Execution of {spec.smart_code} failed: {e}", extra={**extra, "event": "execution.failed"})
            if spec.compensation_policy.auto_compensate:
                self._compensate(spec, ctx, summary)
            elif ctx.compensation_stack:
                logger.warning(
                    f"auto_compensate is off; leaving {len(ctx.compensation_stack)} completed nodes in place",
                    extra=extra,
                )
            summary.elapsed_ms = int((time.monotonic() - started) * 1000)
            e.summary = summary
            raise

        summary.status = "completed"
        summary.elapsed_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            f"Completed {spec.smart_code}: {len(summary.completed_nodes)} executed, "
            f"{len(summary.skipped_nodes)} skipped, {len(summary.idempotent_skips)} replayed "
            f"in {summary.elapsed_ms}ms",
            extra={**extra, "event": "execution.completed"},
        )
        return summary

    def _run_node(
        self,
        spec: OrchestrationSpec,
        node: Node,
        ctx: ExecutionContext,
        summary: ExecutionSummary,
        outcome: NodeOutcome,
    ) -> None:
        """Drive one node from PENDING to a terminal state."""
        extra = {"smart_code": spec.smart_code, "node_id": node.id, "run_epoch": ctx.run_epoch}

        if node.when is not None:
            passed = conditions.evaluate(node.when, ctx.payload)
            outcome.status = NodeStatus.CONDITION_CHECKED
            if not passed:
                outcome.status = NodeStatus.SKIPPED
                summary.skipped_nodes.append(node.id)
                logger.info(f"Skipping node '{node.id}': condition is false", extra={**extra, "event": "node.skipped"})
                return
        else:
            outcome.status = NodeStatus.CONDITION_CHECKED

        key = self._ledger.key_for(node.id, ctx.payload, ctx.run_epoch)
        outcome.idempotency_key = key
        previous = self._ledger.lookup(node.id, key)
        if previous is not None:
            self._mark_replayed(node, ctx, summary, outcome, previous, extra)
            return

        resource_id = self._resource_id(node, ctx.payload)
        if resource_id is None:
            self._invoke_node(spec, node, ctx, summary, outcome, key)
            return

        outcome.resource_id = resource_id
        try:
            with self._locks.hold(resource_id, ctx.run_epoch, node_id=node.id):
                outcome.status = NodeStatus.LOCK_ACQUIRED
                logger.debug(f"Locked {resource_id} for node '{node.id}'", extra=extra)
                # Another invocation may have recorded this key while we waited on the first check
                previous = self._ledger.lookup(node.id, key)
                if previous is not None:
                    self._mark_replayed(node, ctx, summary, outcome, previous, extra)
                    return
                self._invoke_node(spec, node, ctx, summary, outcome, key)
        except LockAcquisitionFailure as e:
            if outcome.status != NodeStatus.LOCK_ACQUIRED:
                outcome.status = NodeStatus.FAILED
                outcome.error = _error_info(e)
                summary.failed_nodes.append(node.id)
            raise

    def _mark_replayed(
        self,
        node: Node,
        ctx: ExecutionContext,
        summary: ExecutionSummary,
        outcome: NodeOutcome,
        previous: ExecutionRecord,
        extra: dict[str, Any],
    ) -> None:
        outcome.status = NodeStatus.IDEMPOTENT_SKIP
        outcome.output = previous.output
        ctx.outputs[node.id] = previous.output
        summary.idempotent_skips.append(node.id)
        logger.info(
            f"Node '{node.id}' already executed for this payload and run epoch",
            extra={**extra, "event": "node.idempotent_skip"},
        )

    def _invoke_node(
        self,
        spec: OrchestrationSpec,
        node: Node,
        ctx: ExecutionContext,
        summary: ExecutionSummary,
        outcome: NodeOutcome,
        key: str,
    ) -> None:
        extra = {"smart_code": spec.smart_code, "node_id": node.id, "run_epoch": ctx.run_epoch}
        outcome.status = NodeStatus.EXECUTING
        outcome.started_at = _utcnow()
        logger.info(f"Running node '{node.id}' ({node.run})", extra={**extra, "event": "node.started"})

        t0 = time.monotonic()
        result = self._call(node.run, self._procedure_payload(spec, node, ctx, key))
        duration_ms = int((time.monotonic() - t0) * 1000)
        outcome.completed_at = _utcnow()

        if not result.success:
            outcome.status = NodeStatus.FAILED
            outcome.error = dict(result.error or {})
            ctx.failed_nodes.append(node.id)
            summary.failed_nodes.append(node.id)
            raise ProcedureExecutionError(
                node.id,
                node.run,
                result.error_message,
                code=result.error_code,
                detail=result.error,
            )

        outcome.status = NodeStatus.COMPLETED
        outcome.output = result.output
        ctx.completed_nodes.append(node.id)
        ctx.outputs[node.id] = result.output
        summary.completed_nodes.append(node.id)
        if node.compensation:
            ctx.push_compensation(CompensationEntry(node.id, node.compensation, result.output))
        logger.info(
            f"Node '{node.id}' completed in {duration_ms}ms",
            extra={**extra, "event": "node.completed"},
        )

        self._ledger.record(
            node.id,
            key,
            self._ledger.payload_hash(ctx.payload),
            duration_ms,
            ctx.tenant_id,
            smart_code=spec.smart_code,
            run_epoch=ctx.run_epoch,
            run_code=node.run,
            output=result.output,
        )

    def _call(self, run_code: str, payload: dict[str, Any]) -> ProcedureResult:
        try:
            return self._runtime.invoke(run_code, payload)
        except Exception as e:
            return ProcedureResult.fail(str(e) or type(e).__name__, code="EXECUTION_ERROR")

    def _compensate(self, spec: OrchestrationSpec, ctx: ExecutionContext, summary: ExecutionSummary) -> None:
        """Invoke compensations newest first. Failures are recorded and never stop the rollback."""
        if not ctx.compensation_stack:
            return
        logger.warning(
            f"Rolling back {len(ctx.compensation_stack)} completed nodes of {spec.smart_code}",
            extra={"smart_code": spec.smart_code, "run_epoch": ctx.run_epoch, "event": "rollback.started"},
        )

        entry = ctx.pop_compensation()
        while entry is not None:
            payload = {
                **ctx.payload,
                "_context": {
                    **self._context(spec, ctx, entry.node_id),
                    "compensating": entry.node_id,
                    "output": entry.output,
                },
            }
            result = self._call(entry.compensation, payload)
            if result.success:
                summary.compensations.append(CompensationOutcome(entry.node_id, entry.compensation, True))
                logger.info(
                    f"Compensated node '{entry.node_id}' with {entry.compensation}",
                    extra={"smart_code": spec.smart_code, "node_id": entry.node_id, "event": "compensation.completed"},
                )
            else:
                failure = CompensationFailure(entry.node_id, entry.compensation, result.error_message)
                summary.compensations.append(
                    CompensationOutcome(entry.node_id, entry.compensation, False, str(failure))
                )
                logger.error(
                    str(failure),
                    extra={"smart_code": spec.smart_code, "node_id": entry.node_id, "event": "compensation.failed"},
                )
            entry = ctx.pop_compensation()

    @staticmethod
    def _resource_id(node: Node, payload: dict[str, Any]) -> Optional[str]:
        """
        Resolve the resource a node locks.

        ``resource_ref`` names a payload path; its value is the resource id.
        When the payload has no such field the ref itself is locked.
        """
        ref = node.resource_ref
        if ref is None:
            return None
        value = lookup_path(payload, ref, None)
        if isinstance(value, (str, int, float)) and value != "":
            return str(value)
        return ref

    @staticmethod
    def _context(spec: OrchestrationSpec, ctx: ExecutionContext, node_id: str) -> dict[str, Any]:
        return {
            "tenant_id": ctx.tenant_id,
            "smart_code": spec.smart_code,
            "node_id": node_id,
            "run_epoch": ctx.run_epoch,
            "correlation_id": ctx.correlation_id,
        }

    def _procedure_payload(
        self,
        spec: OrchestrationSpec,
        node: Node,
        ctx: ExecutionContext,
        key: str,
    ) -> dict[str, Any]:
        return {
            **ctx.payload,
            "_context": {**self._context(spec, ctx, node.id), "idempotency_key": key},
        }

    # ------------------------------------------------------------------
    # Simulation
    # ------------------------------------------------------------------

    def simulate(
        self,
        smart_code: str,
        payload: Optional[dict[str, Any]] = None,
        tenant_id: str = PLATFORM_TENANT_ID,
    ) -> SimulationPlan:
        """
        Project what ``execute`` would do without doing any of it.

        No locks, no idempotency lookups, no procedure calls, no writes.

        Raises:
            SpecNotFound: If no spec resolves
            ValidationError: If the spec is malformed
            CyclicGraphError: If dependency edges form a cycle
        """
        spec = self._resolver.resolve(smart_code, tenant_id)
        plan = self.simulate_spec(spec, payload)
        plan.tenant_id = tenant_id
        return plan

    def simulate_spec(
        self,
        spec: OrchestrationSpec,
        payload: Optional[dict[str, Any]] = None,
    ) -> SimulationPlan:
        return simulate_spec(spec, payload)


def simulate_spec(spec: OrchestrationSpec, payload: Optional[dict[str, Any]] = None) -> SimulationPlan:
    """Dry-run a resolved spec. See ``Executor.simulate``."""
    validate(spec).raise_for_errors(spec.smart_code)
    node_order = scheduler.order(spec)
    payload = payload or {}

    plan = SimulationPlan(smart_code=spec.smart_code, tenant_id=spec.tenant_id, order=node_order)
    for node_id in node_order:
        node = spec.get_node(node_id)
        if node.when is None:
            plan.conditions[node_id] = None
            plan.would_execute.append(node_id)
            continue
        try:
            passed = conditions.evaluate_strict(node.when, payload)
        except ConditionEvalError as e:
            passed = False
            plan.diagnostics[node_id] = str(e)
        plan.conditions[node_id] = passed
        if passed:
            plan.would_execute.append(node_id)

    position = {node_id: i for i, node_id in enumerate(node_order)}
    for boundary in spec.transaction_boundaries:
        members = sorted((n for n in set(boundary.nodes) if n in position), key=position.__getitem__)
        if members:
            plan.transaction_boundaries[boundary.name] = members

    return plan
