# tests/test_errors.py
"""Tests for the error hierarchy and the diagnostic stream."""

import pytest

from fxinfer.errors import (
    Codes,
    ConfigError,
    ConvergenceError,
    DiagnosticSink,
    FxError,
    InfeasibleFormatError,
    Severity,
)


class TestCodes:

    def test_lookup_by_code_and_name(self):
        assert Codes.lookup("FXI-2002") is Codes.RANGE_EXPANSION
        assert Codes.lookup("range-expansion") is Codes.RANGE_EXPANSION
        assert Codes.lookup("FXI-0000") is None

    def test_codes_are_unique(self):
        numbers = [c.number for c in Codes.all()]
        assert len(numbers) == len(set(numbers))

    def test_severity_order(self):
        assert Severity.INFO < Severity.WARNING < Severity.ERROR < Severity.FATAL
        assert Severity.FATAL.is_error()
        assert not Severity.WARNING.is_error()


class TestExceptions:

    def test_default_codes(self):
        assert ConfigError("x").code == Codes.INVALID_CONFIG
        assert InfeasibleFormatError("x").code == Codes.INFEASIBLE_WIDTH
        assert ConvergenceError("x").severity is Severity.FATAL

    def test_explicit_code(self):
        exc = ConvergenceError("stuck", pass_no=2, code=Codes.UNRESOLVED_FORMATS)
        assert exc.code == Codes.UNRESOLVED_FORMATS
        assert exc.pass_no == 2

    def test_str(self):
        exc = ConfigError("bad key", key="foo", hint="see options")
        assert str(exc) == "FXI-9000: bad key [foo] (hint: see options)"

    def test_hierarchy(self):
        assert issubclass(ConvergenceError, FxError)


class TestDiagnosticSink:

    def test_collects_in_order(self):
        sink = DiagnosticSink()
        sink.warning(Codes.POSSIBLE_OVERFLOW, "first")
        sink.info(Codes.PESSIMISTIC_FORMAT, "second")
        assert [d.message for d in sink] == ["first", "second"]
        assert sink.count(Severity.INFO) == 1
        assert not sink.has_errors()

    def test_context_is_recorded(self):
        sink = DiagnosticSink()
        sink.pass_no, sink.statement = 3, "s1"
        diag = sink.warning(Codes.DIVIDE_BY_ZERO, "y / z")
        assert (diag.pass_no, diag.statement) == (3, "s1")
        assert diag.to_dict()["code"] == "FXI-1002"

    @pytest.mark.parametrize("fatal", ["FXI-1001", "possible-overflow"])
    def test_promotion(self, fatal):
        sink = DiagnosticSink(fatal=[fatal])
        with pytest.raises(FxError) as info:
            sink.warning(Codes.POSSIBLE_OVERFLOW, "overflow")
        assert info.value.code == Codes.POSSIBLE_OVERFLOW
        assert len(sink) == 0
