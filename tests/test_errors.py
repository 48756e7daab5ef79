# tests/test_errors.py
"""
Tests for the error hierarchy.
"""

import pytest

from ghihorn.errors import (
    AnalysisBusyError,
    CancelledError,
    ConditionSyntaxError,
    ConfigError,
    DecompileError,
    ErrorCode,
    GenerationFault,
    GhiHornError,
    ProgramFormatError,
    QueryError,
    SolverFault,
)
from ghihorn.program import Address


class TestHierarchy:

    @pytest.mark.parametrize("cls", [
        CancelledError, SolverFault, QueryError, ProgramFormatError,
        ConfigError, AnalysisBusyError,
    ])
    def test_all_derive_from_base(self, cls):
        assert issubclass(cls, GhiHornError)

    def test_codes_are_unique(self):
        values = [c.value for c in ErrorCode]
        assert len(values) == len(set(values))


class TestRendering:

    def test_plain_message(self):
        assert str(QueryError("no such block")) == "[GH-4001] no such block"

    def test_context_sorted_and_none_dropped(self):
        e = GenerationFault("boom", function=Address(0x10), predicate=None)
        assert str(e) == "[GH-2099] boom (function=0x10)"
        assert e.context == {"function": Address(0x10)}

    def test_code_override(self):
        e = GenerationFault("x", code=ErrorCode.ARITY_MISMATCH)
        assert e.code is ErrorCode.ARITY_MISMATCH
        assert GenerationFault("y").code is ErrorCode.GENERATION_FAILED

    def test_decompile_error_fields(self):
        e = DecompileError(Address(0x3000), "bad opcode")
        assert e.address == Address(0x3000)
        assert e.reason == "bad opcode"
        assert "0x3000" in e.message

    def test_to_dict(self):
        e = ConditionSyntaxError("x >", "expected operand")
        d = e.to_dict()
        assert d["code"] == "GH-4002"
        assert d["kind"] == "ConditionSyntaxError"
        assert "x >" in d["message"]
        assert "context" not in d

    def test_cancelled_default_message(self):
        assert CancelledError().message == "operation cancelled"
