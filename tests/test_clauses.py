# tests/test_clauses.py
"""
Tests for the Horn clause model.
"""

import pytest

from ghihorn.clauses import (
    ClauseKind,
    ClauseSet,
    HornClause,
    Predicate,
    PredicateKind,
)
from ghihorn.errors import ErrorCode, GenerationFault
from ghihorn.program import Address
from ghihorn.terms import CConst, CRelation, CVar, RelOp


def _pred(name, block, params, kind=PredicateKind.BLOCK):
    return Predicate(name, kind, Address(0x10), Address(block), tuple(params))


ENTRY = _pred("f.entry", 0x10, ["x"], PredicateKind.ENTRY)
NEXT = _pred("f.b20", 0x20, ["x"])


class TestHornClause:

    def test_fact_with_declared_vars(self):
        c = HornClause(ENTRY.atom(), (), declared=frozenset({"x"}), kind=ClauseKind.ENTRY)
        c.check_bound()
        assert str(c) == "f.entry(x) :- true"

    def test_unbound_head_variable(self):
        c = HornClause(NEXT("y"), (ENTRY("x"),))
        with pytest.raises(GenerationFault) as exc:
            c.check_bound()
        assert exc.value.code is ErrorCode.UNBOUND_VARIABLE
        assert exc.value.predicate == "f.b20"

    def test_unbound_constraint_variable(self):
        c = HornClause(NEXT("x"), (ENTRY("x"),),
                       CRelation(RelOp.GT, CVar("z"), CConst(0)))
        with pytest.raises(GenerationFault):
            c.check_bound()

    def test_variable_order(self):
        c = HornClause(NEXT("x2"), (ENTRY("x"),),
                       CRelation(RelOp.EQ, CVar("x2"), CVar("x")),
                       declared=frozenset({"x2"}))
        assert c.variables() == ["x", "x2"]

    def test_metadata_not_part_of_equality(self):
        a = HornClause(NEXT("x"), (ENTRY("x"),), kind=ClauseKind.TRANSFER)
        b = HornClause(NEXT("x"), (ENTRY("x"),), kind=ClauseKind.CALL)
        assert a == b


class TestClauseSet:

    def test_deduplicates(self):
        cs = ClauseSet()
        c = HornClause(NEXT("x"), (ENTRY("x"),))
        assert cs.add(c)
        assert not cs.add(HornClause(NEXT("x"), (ENTRY("x"),)))
        assert len(cs) == 1

    def test_predicates_in_first_use_order(self):
        cs = ClauseSet([
            HornClause(ENTRY.atom(), (), declared=frozenset({"x"})),
            HornClause(NEXT("x"), (ENTRY("x"),)),
        ])
        assert cs.signature() == [("f.entry", 1), ("f.b20", 1)]
        assert cs.predicate("f.b20") == NEXT

    def test_arity_mismatch(self):
        cs = ClauseSet([HornClause(NEXT("x"), (ENTRY("x"),))])
        wider = _pred("f.b20", 0x20, ["x", "y"])
        with pytest.raises(GenerationFault) as exc:
            cs.add(HornClause(wider("x", "y"), (ENTRY("x"),), declared=frozenset({"y"})))
        assert exc.value.code is ErrorCode.ARITY_MISMATCH

    def test_atom_with_wrong_argument_count(self):
        from ghihorn.clauses import Atom
        bad = Atom(NEXT, (CVar("x"), CVar("y")))
        with pytest.raises(GenerationFault):
            ClauseSet().add(HornClause(bad, (ENTRY("x"),), declared=frozenset({"y"})))

    def test_name_clash_between_program_points(self):
        cs = ClauseSet([HornClause(NEXT("x"), (ENTRY("x"),))])
        other = _pred("f.b20", 0x30, ["x"])
        with pytest.raises(GenerationFault):
            cs.add(HornClause(other("x"), (ENTRY("x"),)))


class TestSmt2:

    def test_render_script(self):
        cs = ClauseSet([
            HornClause(ENTRY.atom(), (), declared=frozenset({"x"})),
            HornClause(NEXT("x"), (ENTRY("x"),), CRelation(RelOp.GT, CVar("x"), CConst(0))),
        ])
        text = cs.to_smt2(NEXT)
        lines = text.splitlines()
        assert lines[0] == "(set-logic HORN)"
        assert "(declare-fun f.entry (Int) Bool)" in lines
        assert "(assert (forall ((x Int)) (=> (and (f.entry x) (> x 0)) (f.b20 x))))" in lines
        assert "(assert (=> (exists ((x Int)) (f.b20 x)) false))" in lines
        assert lines[-1] == "(check-sat)"

    def test_nullary_goal(self):
        goal = Predicate("goal", PredicateKind.GOAL, None, None, ())
        cs = ClauseSet([
            HornClause(ENTRY.atom(), (), declared=frozenset({"x"})),
            HornClause(goal.atom(), (ENTRY("x"),)),
        ])
        assert "(assert (=> goal false))" in cs.to_smt2(goal)
