# tests/test_condition.py
"""
Tests for the infix path-condition language.
"""

import pytest

from ghihorn.condition import parse_condition, resolve_names
from ghihorn.errors import ConditionSyntaxError, QueryError
from ghihorn.terms import (
    ArithOp,
    CAnd,
    CArith,
    CConst,
    CNot,
    COr,
    CRelation,
    CUnaryOp,
    CVar,
    RelOp,
)


class TestParse:

    def test_simple_relation(self):
        assert parse_condition("x > 3") == CRelation(RelOp.GT, CVar("x"), CConst(3))

    def test_hex_literal(self):
        assert parse_condition("x == 0x10") == CRelation(RelOp.EQ, CVar("x"), CConst(16))

    def test_precedence_mul_over_add(self):
        t = parse_condition("a + b * 2 == 0")
        expected_lhs = CArith(ArithOp.ADD, CVar("a"), CArith(ArithOp.MUL, CVar("b"), CConst(2)))
        assert t == CRelation(RelOp.EQ, expected_lhs, CConst(0))

    def test_left_associative_subtraction(self):
        t = parse_condition("a - b - c == 0")
        lhs = CArith(ArithOp.SUB, CArith(ArithOp.SUB, CVar("a"), CVar("b")), CVar("c"))
        assert t.lhs == lhs

    def test_and_binds_tighter_than_or(self):
        t = parse_condition("a > 0 || b > 0 && c > 0")
        assert isinstance(t, COr)
        assert isinstance(t.rhs, CAnd)

    def test_word_operators(self):
        t = parse_condition("x > 0 and not done")
        assert isinstance(t, CAnd)
        assert t.rhs == CNot(CRelation(RelOp.NE, CVar("done"), CConst(0)))

    def test_bang_is_not_confused_with_ne(self):
        t = parse_condition("x != 1 && !y")
        assert t.lhs == CRelation(RelOp.NE, CVar("x"), CConst(1))
        assert isinstance(t.rhs, CNot)

    def test_bare_value_is_nonzero_test(self):
        assert parse_condition("ret") == CRelation(RelOp.NE, CVar("ret"), CConst(0))

    def test_bitwise_and_shift(self):
        t = parse_condition("(len & 0xff) << 2 != 0")
        assert t.lhs == CArith(ArithOp.SHL, CArith(ArithOp.BAND, CVar("len"), CConst(255)),
                               CConst(2))

    def test_negative_literal_and_complement(self):
        assert parse_condition("x == -5").rhs == CConst(-5)
        assert parse_condition("~x == 0").lhs == CUnaryOp("~", CVar("x"))

    def test_dotted_identifiers(self):
        assert parse_condition("in.x < 0").lhs == CVar("in.x")

    @pytest.mark.parametrize("text", ["", "x >", "(x > 1", "x > > 1", "3 +"])
    def test_syntax_errors(self, text):
        with pytest.raises(ConditionSyntaxError):
            parse_condition(text)


class TestResolveNames:

    def test_known_names_pass_through(self):
        cond = parse_condition("ret > 1")
        assert resolve_names(cond, ["ret", "x"]) == cond

    def test_aliases_rewrite(self):
        cond = parse_condition("x > 1")
        out = resolve_names(cond, ["in.x", "ret"], {"x": "in.x"})
        assert out == CRelation(RelOp.GT, CVar("in.x"), CConst(1))

    def test_unknown_name(self):
        with pytest.raises(QueryError) as exc:
            resolve_names(parse_condition("y > 1"), ["x"])
        assert "y" in str(exc.value)
