"""Tests for sagarun.procedures."""

import sys
import types
from unittest.mock import MagicMock, patch

import pytest

from sagarun.procedures import (
    ENTRY_POINT_GROUP,
    LocalProcedureRuntime,
    ProcedureResult,
    discover_procedures,
)


@pytest.fixture
def procedure_module(monkeypatch):
    """Install a throwaway module exposing procedures two different ways."""
    module = types.ModuleType("salon_procedures")
    module.PROCEDURES = {"HERA.SALON.POS.LINE.CREATE.v1": lambda p: {"line_id": "L1"}}

    def register(runtime):
        runtime.register("HERA.SALON.POS.CART.REPRICE.v1", lambda p: {"total": 10})

    module.register = register
    module.NOT_PROCEDURES = 42
    monkeypatch.setitem(sys.modules, "salon_procedures", module)
    return module


class TestProcedureResult:
    """Tests for result helpers."""

    def test_ok(self):
        result = ProcedureResult.ok({"total": 1})
        assert result.success
        assert result.output == {"total": 1}

    def test_fail(self):
        result = ProcedureResult.fail("no stock", code="OUT_OF_STOCK", sku="X1")
        assert not result.success
        assert result.error_code == "OUT_OF_STOCK"
        assert result.error_message == "no stock"
        assert result.error["sku"] == "X1"


class TestLocalProcedureRuntime:
    """Tests for the in-process runtime."""

    def test_register_and_invoke(self):
        runtime = LocalProcedureRuntime()
        runtime.register("HERA.SALON.POS.CART.REPRICE.v1", lambda p: {"total": p["qty"] * 10})

        result = runtime.invoke("hera.salon.pos.cart.reprice.V1", {"qty": 3})
        assert result.success
        assert result.output == {"total": 30}
        assert runtime.has("HERA.SALON.POS.CART.REPRICE.v1")

    def test_decorator(self):
        runtime = LocalProcedureRuntime()

        @runtime.procedure("HERA.SALON.POS.LINE.DELETE.v1")
        def delete_line(payload):
            return None

        assert runtime.list_procedures() == ["HERA.SALON.POS.LINE.DELETE.V1"]
        assert delete_line({}) is None

    def test_constructor_mapping(self):
        runtime = LocalProcedureRuntime({"HERA.A.v1": lambda p: 1, "HERA.B.v1": lambda p: 2})
        assert runtime.invoke("HERA.B.v1", {}).output == 2

    def test_unregistered(self):
        result = LocalProcedureRuntime().invoke("HERA.MISSING.v1", {})
        assert not result.success
        assert result.error_code == "PROCEDURE_NOT_FOUND"

    def test_exception_becomes_failure(self):
        def explode(payload):
            raise KeyError("cart_id")

        runtime = LocalProcedureRuntime({"HERA.A.v1": explode})
        result = runtime.invoke("HERA.A.v1", {})
        assert not result.success
        assert result.error_code == "EXECUTION_ERROR"
        assert "cart_id" in result.error_message

    @pytest.mark.parametrize("response, success, output, code", [
        ({"success": True, "data": {"id": 1}}, True, {"id": 1}, None),
        ({"success": False, "error": "denied"}, False, None, "PROCEDURE_ERROR"),
        ({"success": False, "error": {"code": "LIMIT", "message": "over"}}, False, None, "LIMIT"),
        ({"success": False}, False, None, "PROCEDURE_ERROR"),
        ({"total": 5}, True, {"total": 5}, None),
        (None, True, None, None),
    ])
    def test_response_unwrapping(self, response, success, output, code):
        result = LocalProcedureRuntime({"HERA.A.v1": lambda p: response}).invoke("HERA.A.v1", {})
        assert result.success is success
        if success:
            assert result.output == output
        else:
            assert result.error_code == code

    def test_result_passthrough(self):
        runtime = LocalProcedureRuntime({"HERA.A.v1": lambda p: ProcedureResult.fail("x", code="CUSTOM")})
        assert runtime.invoke("HERA.A.v1", {}).error_code == "CUSTOM"


class TestLoading:
    """Tests for module references and entry point discovery."""

    def test_load_reference_mapping(self, procedure_module):
        runtime = LocalProcedureRuntime()
        runtime.load_reference("salon_procedures:PROCEDURES")
        assert runtime.has("HERA.SALON.POS.LINE.CREATE.v1")

    def test_load_reference_registration_function(self, procedure_module):
        runtime = LocalProcedureRuntime()
        runtime.load_reference("salon_procedures:register")
        assert runtime.invoke("HERA.SALON.POS.CART.REPRICE.v1", {}).output == {"total": 10}

    @pytest.mark.parametrize("reference, error", [
        ("salon_procedures", ValueError),
        ("salon_procedures:NOT_PROCEDURES", ValueError),
        ("salon_procedures:missing", AttributeError),
        ("no_such_module_anywhere:PROCEDURES", ImportError),
    ])
    def test_load_reference_errors(self, procedure_module, reference, error):
        with pytest.raises(error):
            LocalProcedureRuntime().load_reference(reference)

    def test_discover_procedures(self):
        reprice = MagicMock(return_value={"total": 1})
        ep = MagicMock()
        ep.name = "HERA.SALON.POS.CART.REPRICE.v1"
        ep.load.return_value = reprice

        eps = MagicMock()
        eps.select.return_value = [ep]

        with patch("sagarun.procedures.entry_points", return_value=eps):
            found = discover_procedures()
            runtime = LocalProcedureRuntime()
            count = runtime.load_entry_points()

        eps.select.assert_called_with(group=ENTRY_POINT_GROUP)
        assert found == {"HERA.SALON.POS.CART.REPRICE.V1": reprice}
        assert count == 1
        assert runtime.invoke("HERA.SALON.POS.CART.REPRICE.v1", {}).output == {"total": 1}
