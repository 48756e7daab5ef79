# tests/test_loader.py
"""
Tests for the program model and its S-expression loader.
"""

import pytest

from ghihorn.errors import ProgramFormatError
from ghihorn.loader import build_term, load_program, load_program_file, read_forms
from ghihorn.program import Address, Branch, Call, Jump, Return
from ghihorn.terms import ArithOp, CArith, CConst, CUnaryOp, CVar
from tests.conftest import ARITH, DOUBLE_FREE, TWO_FUNCTIONS, WITH_GAP


class TestAddress:

    def test_parse_forms(self):
        assert Address.parse("0x10") == Address(16)
        assert Address.parse("16") == Address(16)
        assert Address.parse(16) == Address(16)

    def test_ordering_and_str(self):
        assert Address(1) < Address(2)
        assert sorted([Address(3), Address(1)]) == [Address(1), Address(3)]
        assert str(Address(0x1000)) == "0x1000"

    def test_bool_is_not_an_address(self):
        with pytest.raises(ValueError):
            Address.parse(True)


class TestReadForms:

    def test_hex_symbols_become_ints(self):
        forms = read_forms("(block 0x10 (jump 0x20))")
        assert forms == [["block", 16, ["jump", 32]]]

    def test_t_stays_a_symbol(self):
        assert read_forms("(return t)") == [["return", "t"]]

    def test_syntax_error(self):
        with pytest.raises(ProgramFormatError):
            read_forms("(unbalanced")


class TestBuildTerm:

    def test_nary_folding(self):
        t = build_term(["+", "a", "b", 1])
        assert t == CArith(ArithOp.ADD, CArith(ArithOp.ADD, CVar("a"), CVar("b")), CConst(1))

    def test_unary_minus(self):
        assert build_term(["-", "x"]) == CUnaryOp("-", CVar("x"))

    def test_booleans(self):
        assert build_term("true") == CConst(True)

    def test_unknown_form(self):
        with pytest.raises(ProgramFormatError):
            build_term(["frobnicate", 1, 2])


class TestLoadProgram:

    def test_functions_and_blocks(self):
        image = load_program(TWO_FUNCTIONS)
        f = image.function_named("f")
        assert f.address == Address(0x1000)
        assert [b.address for b in f.blocks] == [Address(0x1000), Address(0x1010), Address(0x1020)]
        assert isinstance(f.entry_block.terminator, Branch)

    def test_named_call_linked_to_local_function(self):
        image = load_program(TWO_FUNCTIONS)
        (_, call), = list(image.function_named("f").call_sites())
        assert call.callee == Address(0x2000)
        assert call.name == "g"
        assert call.target == "t"

    def test_address_call_named_after_import(self):
        image = load_program(DOUBLE_FREE)
        calls = [c for _, c in image.function_named("main").call_sites()]
        assert [c.label for c in calls] == ["malloc", "free", "free"]
        assert calls[0].callee == Address(0x5000)
        assert calls[1].target is None

    def test_globals_and_exports(self):
        image = load_program(ARITH)
        assert image.globals == {"counter": 0}
        assert image.entry_points() == [Address(0x1000)]

    def test_broken_functions(self):
        image = load_program(WITH_GAP)
        assert image.failures == {Address(0x3000): "unsupported instruction"}

    def test_fallthrough_and_implicit_return(self):
        image = load_program("""
            (program p
              (function main 0x10 (params)
                (block 0x10 (assign x 1))
                (block 0x20 (assign y x))))
        """)
        main = image.function_named("main")
        assert main.block(Address(0x10)).terminator == Jump(Address(0x20))
        assert isinstance(main.block(Address(0x20)).terminator, Return)

    def test_entry_named_entry_comes_first(self):
        image = load_program("""
            (program p
              (export main entry)
              (function main 0x10 (params) (block 0x10 (return 0)))
              (function entry 0x20 (params) (block 0x20 (return 0))))
        """)
        assert image.entry_points() == [Address(0x20), Address(0x10)]

    def test_variables_exclude_globals(self):
        image = load_program(ARITH)
        main = image.function_named("main")
        assert main.variables(exclude=("counter",)) == ("n", "r")

    def test_statement_after_terminator(self):
        with pytest.raises(ProgramFormatError):
            load_program("(program p (function f 0x10 (block 0x10 (return 0) (assign x 1))))")

    def test_duplicate_function_address(self):
        with pytest.raises(ProgramFormatError):
            load_program("""
                (program p
                  (function f 0x10 (block 0x10 (return 0)))
                  (function g 0x10 (block 0x10 (return 0))))
            """)

    def test_unknown_declaration(self):
        with pytest.raises(ProgramFormatError):
            load_program("(program p (section .text))")

    def test_call_statement_fields(self):
        image = load_program(ARITH)
        (_, call), = list(image.function_named("main").call_sites())
        assert isinstance(call, Call)
        assert call.args == (CVar("n"),)


class TestLoadFile:

    def test_missing_file(self, tmp_path):
        with pytest.raises(ProgramFormatError):
            load_program_file(tmp_path / "nope.sexp")

    def test_round_trip_from_disk(self, tmp_path):
        path = tmp_path / "two.sexp"
        path.write_text(TWO_FUNCTIONS, encoding="utf-8")
        assert load_program_file(path).name == "two"
