"""
IdempotencyLedger - decide whether a node already ran for an input.

An idempotency key is the SHA256 of the canonical JSON encoding of
``{node_id, payload, run_epoch}``, so the same node with the same payload in
the same run epoch always maps to the same key, independent of payload key
order.

Records are written through the ExecutionAuditor with retry and backoff.
When every attempt fails the ledger either escalates (raises
PersistenceError, the default) or logs a warning and carries on.
"""

import logging
from typing import Any, Optional

from sagarun.auditor import ExecutionAuditor
from sagarun.config import PERSISTENCE_POLICIES
from sagarun.errors import DuplicateRecordError, PersistenceError
from sagarun.schemas import ExecutionRecord
from sagarun.utils import retry_with_backoff, sha256_hex

logger = logging.getLogger(__name__)


class IdempotencyLedger:
    """Idempotency key computation and execution-record bookkeeping."""

    def __init__(
        self,
        auditor: ExecutionAuditor,
        retry_attempts: int = 3,
        retry_backoff_seconds: float = 0.5,
        policy: str = "escalate",
        sleep=None,
    ):
        if policy not in PERSISTENCE_POLICIES:
            raise ValueError(f"policy must be one of {PERSISTENCE_POLICIES}, got '{policy}'")
        self._auditor = auditor
        self._retry_attempts = max(1, retry_attempts)
        self._retry_backoff_seconds = retry_backoff_seconds
        self._policy = policy
        self._sleep = sleep

    @property
    def auditor(self) -> ExecutionAuditor:
        return self._auditor

    @property
    def policy(self) -> str:
        return self._policy

    @staticmethod
    def key_for(node_id: str, payload: dict[str, Any], run_epoch: str) -> str:
        """Deterministic idempotency key for a node execution."""
        return sha256_hex({"node_id": node_id, "payload": payload, "run_epoch": run_epoch})

    @staticmethod
    def payload_hash(payload: dict[str, Any]) -> str:
        return sha256_hex(payload)

    def lookup(self, node_id: str, idempotency_key: str) -> Optional[ExecutionRecord]:
        """Return the record left by an earlier execution, if any."""
        return self._auditor.find(node_id, idempotency_key)

    def has_executed(self, node_id: str, idempotency_key: str) -> bool:
        return self.lookup(node_id, idempotency_key) is not None

    def record(
        self,
        node_id: str,
        idempotency_key: str,
        payload_hash: str,
        duration_ms: int,
        tenant_id: str,
        **context: Any,
    ) -> Optional[ExecutionRecord]:
        """
        Write an ExecutionRecord for a completed node.

        Extra keyword arguments (smart_code, run_epoch, run_code, output) are
        stored on the record.

        Returns:
            The record written, or None if the write failed under the
            "warn" policy

        Raises:
            PersistenceError: If every attempt failed under the "escalate" policy
        """
        record = ExecutionRecord(
            idempotency_key=idempotency_key,
            node_id=node_id,
            tenant_id=tenant_id,
            payload_hash=payload_hash,
            duration_ms=duration_ms,
            **context,
        )

        def write() -> None:
            try:
                self._auditor.record(record)
            except DuplicateRecordError:
                # Another invocation recorded the same key first
                logger.info(f"Execution record for node '{node_id}' already present")

        kwargs: dict[str, Any] = {}
        if self._sleep is not None:
            kwargs["sleep"] = self._sleep

        try:
            retry_with_backoff(
                write,
                max_attempts=self._retry_attempts,
                backoff_seconds=self._retry_backoff_seconds,
                logger=logger,
                **kwargs,
            )
        except Exception as e:
            if self._policy == "escalate":
                raise PersistenceError(node_id, idempotency_key, str(e)) from e
            logger.warning(
                f"Could not record execution of node '{node_id}' (key={idempotency_key}): {e}. "
                "Continuing; a replay of this node will not be detected."
            )
            return None

        return record
