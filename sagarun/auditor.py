"""
ExecutionAuditor - durable store of ExecutionRecords.

Records are append-only and never deleted. At most one record exists per
idempotency key; a second ``record()`` for the same key raises
DuplicateRecordError so concurrent writers can detect that another
invocation got there first.

Storage backends:
- In-memory (for testing)
- File-based JSON lines (for development and single-host deployments)
"""

import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Iterator, Optional

from sagarun.errors import DuplicateRecordError
from sagarun.schemas import ExecutionRecord

logger = logging.getLogger(__name__)


class ExecutionAuditor(ABC):
    """
    Abstract base class for execution record storage.

    Implementations must be safe for concurrent writers.
    """

    @abstractmethod
    def find(self, node_id: str, idempotency_key: str) -> Optional[ExecutionRecord]:
        """
        Look up the record for an idempotency key.

        Args:
            node_id: The node the key was computed for
            idempotency_key: The key to look up

        Returns:
            The ExecutionRecord if found, None otherwise
        """
        pass

    @abstractmethod
    def record(self, record: ExecutionRecord) -> None:
        """
        Persist an execution record.

        Raises:
            DuplicateRecordError: If a record already exists for the key
        """
        pass

    @abstractmethod
    def list_records(self, tenant_id: Optional[str] = None) -> list[ExecutionRecord]:
        """List records in write order, optionally for one tenant."""
        pass


class InMemoryExecutionAuditor(ExecutionAuditor):
    """
    In-memory implementation of ExecutionAuditor for testing.

    All data is lost when the instance is garbage collected.
    """

    def __init__(self):
        self._records: dict[str, ExecutionRecord] = {}
        self._lock = threading.Lock()

    def find(self, node_id: str, idempotency_key: str) -> Optional[ExecutionRecord]:
        with self._lock:
            record = self._records.get(idempotency_key)
        if record is not None and record.node_id == node_id:
            return record
        return None

    def record(self, record: ExecutionRecord) -> None:
        with self._lock:
            if record.idempotency_key in self._records:
                raise DuplicateRecordError(record.idempotency_key)
            self._records[record.idempotency_key] = record

    def list_records(self, tenant_id: Optional[str] = None) -> list[ExecutionRecord]:
        with self._lock:
            records = list(self._records.values())
        return [r for r in records if tenant_id is None or r.tenant_id == tenant_id]

    def clear(self) -> None:
        """Clear all stored data (for testing)."""
        with self._lock:
            self._records.clear()


class FileExecutionAuditor(ExecutionAuditor):
    """
    File-based implementation of ExecutionAuditor.

    Stores one JSON object per line:
        state_dir/
            execution_records.jsonl

    Lines are written with O_APPEND so concurrent processes never interleave
    partial records. Malformed lines (a torn write from a crashed process)
    are logged and skipped on read. Uniqueness is enforced within a process;
    across processes the first line for a key wins on read.
    """

    FILENAME = "execution_records.jsonl"

    def __init__(self, state_dir: Path | str):
        self._state_dir = Path(state_dir).expanduser()
        self._state_dir.mkdir(parents=True, exist_ok=True)
        self._path = self._state_dir / self.FILENAME
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def _iter_records(self) -> Iterator[ExecutionRecord]:
        if not self._path.exists():
            return
        with open(self._path) as f:
            for lineno, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    yield ExecutionRecord.from_dict(json.loads(line))
                except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
                    # Torn write from a crashed process; the record never committed
                    logger.warning(f"Skipping malformed record at {self._path}:{lineno}: {e}")

    def _find_key(self, idempotency_key: str) -> Optional[ExecutionRecord]:
        for record in self._iter_records():
            if record.idempotency_key == idempotency_key:
                return record
        return None

    def find(self, node_id: str, idempotency_key: str) -> Optional[ExecutionRecord]:
        with self._lock:
            record = self._find_key(idempotency_key)
        if record is not None and record.node_id == node_id:
            return record
        return None

    def record(self, record: ExecutionRecord) -> None:
        line = (json.dumps(record.to_dict(), sort_keys=True, default=str) + "\n").encode()
        with self._lock:
            if self._find_key(record.idempotency_key) is not None:
                raise DuplicateRecordError(record.idempotency_key)
            fd = os.open(self._path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o644)
            try:
                os.write(fd, line)
            finally:
                os.close(fd)

    def list_records(self, tenant_id: Optional[str] = None) -> list[ExecutionRecord]:
        with self._lock:
            seen: set[str] = set()
            records = []
            for record in self._iter_records():
                if record.idempotency_key in seen:
                    continue
                seen.add(record.idempotency_key)
                if tenant_id is None or record.tenant_id == tenant_id:
                    records.append(record)
        return records
