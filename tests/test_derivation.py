# tests/test_derivation.py
"""
Tests for counterexample derivation trees (no solver needed).
"""

from ghihorn.clauses import ClauseKind, HornClause, Predicate, PredicateKind
from ghihorn.hornifier import Hornifier, PathQuery
from ghihorn.program import Address
from ghihorn.solver import build_derivation, linearize


def _chain():
    a = Predicate("a", PredicateKind.ENTRY, Address(0x10), None, ("x",), label="a")
    b = Predicate("b", PredicateKind.BLOCK, Address(0x10), Address(0x20), ("x",), label="b")
    goal = Predicate("goal", PredicateKind.GOAL, None, None, (), label="goal")
    fact = HornClause(a("x"), (), declared=frozenset({"x"}), kind=ClauseKind.FACT)
    step = HornClause(b("x"), (a("x"),))
    query = HornClause(goal.atom(), (b("x"),), kind=ClauseKind.GOAL)
    return fact, step, query


def _labels(nodes):
    return [n.clause.head.predicate.label for n in nodes]


class TestBuildDerivation:

    def test_goal_first(self):
        fact, step, query = _chain()
        root = build_derivation([query, step, fact])
        assert root.clause is query
        assert _labels(linearize(root)) == ["a", "b"]

    def test_goal_last_is_reversed(self):
        fact, step, query = _chain()
        root = build_derivation([fact, step, query])
        assert root.clause is query
        assert _labels(linearize(root)) == ["a", "b"]

    def test_greedy_fallback(self):
        fact, step, query = _chain()
        root = build_derivation([query, fact, step])
        assert _labels(linearize(root)) == ["a", "b"]

    def test_empty(self):
        assert build_derivation([]) is None


class TestInterprocedural:

    def _clauses(self, image):
        hz = Hornifier(image.functions, image)
        return hz.generate([Address(0x1000)], PathQuery(Address(0x1020)))

    @staticmethod
    def _by_head(cs, name):
        (clause,) = [c for c in cs if c.head.predicate.name == name]
        return clause

    def test_callee_branch_is_cut_at_the_call(self, two_functions):
        cs = self._clauses(two_functions)
        h = lambda name: self._by_head(cs, name)
        trace = [
            h("goal"), h("f.bb_1020"), h("f.call_g_1004"), h("g.exit"),
            h("f.bb_1000"), h("g.bb_2000"), h("f.entry"), h("g.entry"),
            h("f.call_g_1004"), h("f.bb_1000"), h("f.entry"),
        ]
        root = build_derivation(trace)
        assert root.children[0].clause.kind is ClauseKind.RETURN
        assert _labels(linearize(root)) == [
            "f.entry", "f.bb_1000", "f.call_g", "g.entry", "g.bb_2000", "g.exit", "f.bb_1020",
        ]

    def test_nodes_keep_trace_indices(self, two_functions):
        cs = self._clauses(two_functions)
        trace = [self._by_head(cs, n) for n in ("goal", "f.bb_1020")]
        root = build_derivation(trace)
        assert [n.index for n in root.walk()][:2] == [0, 1]
