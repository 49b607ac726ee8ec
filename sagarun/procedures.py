"""
Procedure runtime - where node work actually happens.

The engine never implements business logic itself. Each node names a
procedure smart code and the runtime executes it with the node payload.

LocalProcedureRuntime maps smart codes to Python callables. Callables take
the payload dict and either return a plain value (success) or a response
shaped ``{"success": bool, "data": ..., "error": ...}``. Raised exceptions
become failed results.

Procedures can be registered explicitly, with the ``procedure`` decorator,
discovered from installed packages via the ``sagarun.procedures`` entry
point group, or loaded from a ``module:attribute`` reference.
"""

import importlib
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from importlib.metadata import entry_points
from typing import Any, Callable, Optional

from sagarun.schemas import normalize_smart_code

logger = logging.getLogger(__name__)

ENTRY_POINT_GROUP = "sagarun.procedures"

ProcedureFunc = Callable[[dict[str, Any]], Any]


@dataclass(frozen=True)
class ProcedureResult:
    """
    Outcome of a procedure invocation.

    Attributes:
        success: Whether the procedure succeeded
        output: Returned data on success
        error: ``{"code": ..., "message": ...}`` on failure
    """
    success: bool
    output: Any = None
    error: Optional[dict[str, Any]] = None

    @property
    def error_message(self) -> str:
        if not self.error:
            return "unknown error"
        return str(self.error.get("message") or self.error.get("code") or "unknown error")

    @property
    def error_code(self) -> str:
        if not self.error:
            return "PROCEDURE_ERROR"
        return str(self.error.get("code") or "PROCEDURE_ERROR")

    @classmethod
    def ok(cls, output: Any = None) -> "ProcedureResult":
        return cls(success=True, output=output)

    @classmethod
    def fail(cls, message: str, code: str = "PROCEDURE_ERROR", **detail: Any) -> "ProcedureResult":
        return cls(success=False, error={"code": code, "message": message, **detail})


class ProcedureRuntime(ABC):
    """Executes procedures by smart code."""

    @abstractmethod
    def invoke(self, run_code: str, payload: dict[str, Any]) -> ProcedureResult:
        """
        Execute a procedure.

        Implementations should report failures through the result rather
        than raising; the executor treats a raised exception the same way.
        """
        pass


def _coerce_response(response: Any) -> ProcedureResult:
    """Unwrap a ``{success, data, error}`` response; anything else is plain success."""
    if isinstance(response, ProcedureResult):
        return response
    if isinstance(response, dict) and isinstance(response.get("success"), bool):
        if response["success"]:
            return ProcedureResult.ok(response.get("data"))
        error = response.get("error")
        if isinstance(error, dict):
            return ProcedureResult(success=False, error={"code": "PROCEDURE_ERROR", **error})
        return ProcedureResult.fail(str(error) if error else "Procedure reported failure")
    return ProcedureResult.ok(response)


class LocalProcedureRuntime(ProcedureRuntime):
    """
    In-process runtime backed by a table of Python callables.

    Usage:
        runtime = LocalProcedureRuntime()

        @runtime.procedure("HERA.SALON.POS.CART.REPRICE.v1")
        def reprice(payload):
            return {"total": 42}
    """

    def __init__(self, procedures: Optional[dict[str, ProcedureFunc]] = None):
        self._procedures: dict[str, ProcedureFunc] = {}
        for code, func in (procedures or {}).items():
            self.register(code, func)

    def register(self, run_code: str, func: ProcedureFunc) -> None:
        """Register a callable for a procedure smart code (replaces any existing one)."""
        self._procedures[normalize_smart_code(run_code)] = func

    def procedure(self, run_code: str) -> Callable[[ProcedureFunc], ProcedureFunc]:
        """Decorator form of ``register``."""
        def decorator(func: ProcedureFunc) -> ProcedureFunc:
            self.register(run_code, func)
            return func
        return decorator

    def has(self, run_code: str) -> bool:
        return normalize_smart_code(run_code) in self._procedures

    def list_procedures(self) -> list[str]:
        return sorted(self._procedures)

    def invoke(self, run_code: str, payload: dict[str, Any]) -> ProcedureResult:
        func = self._procedures.get(normalize_smart_code(run_code))
        if func is None:
            return ProcedureResult.fail(
                f"No procedure registered for {run_code}", code="PROCEDURE_NOT_FOUND"
            )
        try:
            response = func(payload)
        except Exception as e:
            logger.debug(f"Procedure {run_code} raised", exc_info=True)
            return ProcedureResult.fail(str(e) or type(e).__name__, code="EXECUTION_ERROR")
        return _coerce_response(response)

    def load_entry_points(self, group: str = ENTRY_POINT_GROUP) -> int:
        """Register every procedure advertised under an entry point group."""
        discovered = discover_procedures(group)
        for code, func in discovered.items():
            self.register(code, func)
        return len(discovered)

    def load_reference(self, reference: str) -> None:
        """
        Load procedures from a ``module:attribute`` reference.

        The attribute may be a mapping of smart code to callable, or a
        callable that accepts this runtime and registers procedures on it.
        """
        module_path, _, attr = reference.partition(":")
        if not module_path or not attr:
            raise ValueError(f"Procedure reference must be 'module:attribute', got '{reference}'")
        target = getattr(importlib.import_module(module_path), attr)
        if isinstance(target, dict):
            for code, func in target.items():
                self.register(code, func)
        elif callable(target):
            target(self)
        else:
            raise ValueError(f"{reference} is neither a procedure mapping nor a registration function")


def discover_procedures(group: str = ENTRY_POINT_GROUP) -> dict[str, ProcedureFunc]:
    """
    Discover procedures from installed entry points.

    The entry point name is the procedure smart code:

        [project.entry-points."sagarun.procedures"]
        "HERA.SALON.POS.CART.REPRICE.v1" = "salon.cart:reprice"

    Returns:
        {normalized smart code: callable}
    """
    procedures: dict[str, ProcedureFunc] = {}
    for ep in entry_points().select(group=group):
        procedures[normalize_smart_code(ep.name)] = ep.load()
    logger.debug(f"Discovered {len(procedures)} procedures from {group}")
    return procedures
