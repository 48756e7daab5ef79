# ghihorn/terms.py
"""
terms.py — Typed term language for program semantics and clause constraints
==========================================================================

Provides:

1. A small first-order term language over integer program variables:
   constants, variables, arithmetic, relations, Boolean connectives and
   if-then-else.  Terms are immutable value objects; structural equality
   is what clause deduplication relies on.
2. An abstract :class:`SMTContext` that translates terms to a solver
   backend, and :class:`SmtLibContext`, which renders SMT-LIB2 text.

The z3-backed context lives in :mod:`ghihorn.solver`, next to the engine
that consumes it.

Sorts
-----
Every term is either *integer*-valued or *Boolean*-valued
(:attr:`Term.is_boolean`).  :func:`as_condition` and :func:`as_value`
convert between the two the way C does (non-zero is true; true is 1).
"""

from __future__ import annotations

import enum
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, FrozenSet, List, Mapping, Sequence, Union


class Term(ABC):
    """Base class for all terms."""

    @property
    def is_boolean(self) -> bool:
        return False

    @abstractmethod
    def free_vars(self) -> FrozenSet[str]:
        """Return the set of variable names mentioned in this term."""
        ...

    @abstractmethod
    def substitute(self, mapping: Mapping[str, "Term"]) -> "Term":
        """Replace variables according to *mapping*."""
        ...

    @abstractmethod
    def to_smt(self, ctx: "SMTContext") -> Any:
        """Translate this term in the given context."""
        ...

    @abstractmethod
    def pretty(self) -> str:
        ...

    def rename(self, mapping: Mapping[str, str]) -> "Term":
        return self.substitute({old: CVar(new) for old, new in mapping.items()})

    def negate(self) -> "Term":
        return CNot(as_condition(self))

    def __str__(self) -> str:
        return self.pretty()

    def __repr__(self) -> str:
        return f"<{type(self).__name__}: {self.pretty()}>"

    # Logical combinators (syntactic sugar)
    def __and__(self, other: "Term") -> "Term":
        return conjunction(self, other)

    def __or__(self, other: "Term") -> "Term":
        return disjunction(self, other)

    def __invert__(self) -> "Term":
        return self.negate()


@dataclass(frozen=True, repr=False)
class CTrue(Term):
    """Trivially-true condition."""

    @property
    def is_boolean(self) -> bool:
        return True

    def free_vars(self):
        return frozenset()

    def substitute(self, mapping):
        return self

    def negate(self):
        return CFalse()

    def to_smt(self, ctx):
        return ctx.mk_bool(True)

    def pretty(self):
        return "true"


@dataclass(frozen=True, repr=False)
class CFalse(Term):
    """Trivially-false condition."""

    @property
    def is_boolean(self) -> bool:
        return True

    def free_vars(self):
        return frozenset()

    def substitute(self, mapping):
        return self

    def negate(self):
        return CTrue()

    def to_smt(self, ctx):
        return ctx.mk_bool(False)

    def pretty(self):
        return "false"


@dataclass(frozen=True, repr=False)
class CVar(Term):
    """A reference to an integer variable."""

    name: str

    def free_vars(self):
        return frozenset({self.name})

    def substitute(self, mapping):
        return mapping.get(self.name, self)

    def to_smt(self, ctx):
        return ctx.mk_var(self.name)

    def pretty(self):
        return self.name


@dataclass(frozen=True, repr=False)
class CConst(Term):
    """An integer (or Boolean) literal."""

    value: Union[int, bool]

    @property
    def is_boolean(self) -> bool:
        return isinstance(self.value, bool)

    def free_vars(self):
        return frozenset()

    def substitute(self, mapping):
        return self

    def to_smt(self, ctx):
        if isinstance(self.value, bool):
            return ctx.mk_bool(self.value)
        return ctx.mk_const(self.value)

    def pretty(self):
        if isinstance(self.value, bool):
            return "true" if self.value else "false"
        return str(self.value)


class RelOp(enum.Enum):
    EQ = "=="
    NE = "!="
    LT = "<"
    LE = "<="
    GT = ">"
    GE = ">="

    def flip(self) -> "RelOp":
        _flips = {
            RelOp.EQ: RelOp.EQ, RelOp.NE: RelOp.NE,
            RelOp.LT: RelOp.GT, RelOp.LE: RelOp.GE,
            RelOp.GT: RelOp.LT, RelOp.GE: RelOp.LE,
        }
        return _flips[self]

    def negate(self) -> "RelOp":
        _negs = {
            RelOp.EQ: RelOp.NE, RelOp.NE: RelOp.EQ,
            RelOp.LT: RelOp.GE, RelOp.LE: RelOp.GT,
            RelOp.GT: RelOp.LE, RelOp.GE: RelOp.LT,
        }
        return _negs[self]


@dataclass(frozen=True, repr=False)
class CRelation(Term):
    """A binary comparison:  lhs <op> rhs."""

    op: RelOp
    lhs: Term
    rhs: Term

    @property
    def is_boolean(self) -> bool:
        return True

    def free_vars(self):
        return self.lhs.free_vars() | self.rhs.free_vars()

    def substitute(self, mapping):
        return CRelation(self.op, self.lhs.substitute(mapping),
                         self.rhs.substitute(mapping))

    def negate(self):
        return CRelation(self.op.negate(), self.lhs, self.rhs)

    def to_smt(self, ctx):
        return ctx.mk_rel(self.op, self.lhs.to_smt(ctx), self.rhs.to_smt(ctx))

    def pretty(self):
        return f"({self.lhs.pretty()} {self.op.value} {self.rhs.pretty()})"


class ArithOp(enum.Enum):
    ADD = "+"
    SUB = "-"
    MUL = "*"
    DIV = "/"
    MOD = "%"
    BAND = "&"
    BOR = "|"
    BXOR = "^"
    SHL = "<<"
    SHR = ">>"

    @property
    def is_bitwise(self) -> bool:
        return self in (ArithOp.BAND, ArithOp.BOR, ArithOp.BXOR,
                        ArithOp.SHL, ArithOp.SHR)


@dataclass(frozen=True, repr=False)
class CArith(Term):
    """An arithmetic / bitwise expression."""

    op: ArithOp
    lhs: Term
    rhs: Term

    def free_vars(self):
        return self.lhs.free_vars() | self.rhs.free_vars()

    def substitute(self, mapping):
        return CArith(self.op, self.lhs.substitute(mapping),
                      self.rhs.substitute(mapping))

    def to_smt(self, ctx):
        return ctx.mk_arith(self.op, self.lhs.to_smt(ctx), self.rhs.to_smt(ctx))

    def pretty(self):
        return f"({self.lhs.pretty()} {self.op.value} {self.rhs.pretty()})"


@dataclass(frozen=True, repr=False)
class CUnaryOp(Term):
    """Arithmetic negation ``-``, complement ``~`` or logical not ``!``.

    ``!`` takes an integer operand and yields a condition, as in C.
    """

    op: str
    operand: Term

    @property
    def is_boolean(self) -> bool:
        return self.op == "!"

    def free_vars(self):
        return self.operand.free_vars()

    def substitute(self, mapping):
        return CUnaryOp(self.op, self.operand.substitute(mapping))

    def negate(self):
        if self.op == "!":
            return as_condition(self.operand)
        return super().negate()

    def to_smt(self, ctx):
        if self.op == "!":
            return ctx.mk_not(as_condition(self.operand).to_smt(ctx))
        inner = self.operand.to_smt(ctx)
        if self.op == "-":
            return ctx.mk_arith(ArithOp.SUB, ctx.mk_const(0), inner)
        if self.op == "~":
            # two's complement identity: ~x == -x - 1
            neg = ctx.mk_arith(ArithOp.SUB, ctx.mk_const(0), inner)
            return ctx.mk_arith(ArithOp.SUB, neg, ctx.mk_const(1))
        raise ValueError(f"unknown unary operator {self.op!r}")

    def pretty(self):
        return f"({self.op}{self.operand.pretty()})"


@dataclass(frozen=True, repr=False)
class CAnd(Term):
    """Logical conjunction."""

    lhs: Term
    rhs: Term

    @property
    def is_boolean(self) -> bool:
        return True

    def free_vars(self):
        return self.lhs.free_vars() | self.rhs.free_vars()

    def substitute(self, mapping):
        return CAnd(self.lhs.substitute(mapping), self.rhs.substitute(mapping))

    def negate(self):
        return COr(self.lhs.negate(), self.rhs.negate())

    def to_smt(self, ctx):
        return ctx.mk_and(as_condition(self.lhs).to_smt(ctx),
                          as_condition(self.rhs).to_smt(ctx))

    def pretty(self):
        return f"({self.lhs.pretty()} && {self.rhs.pretty()})"


@dataclass(frozen=True, repr=False)
class COr(Term):
    """Logical disjunction."""

    lhs: Term
    rhs: Term

    @property
    def is_boolean(self) -> bool:
        return True

    def free_vars(self):
        return self.lhs.free_vars() | self.rhs.free_vars()

    def substitute(self, mapping):
        return COr(self.lhs.substitute(mapping), self.rhs.substitute(mapping))

    def negate(self):
        return CAnd(self.lhs.negate(), self.rhs.negate())

    def to_smt(self, ctx):
        return ctx.mk_or(as_condition(self.lhs).to_smt(ctx),
                         as_condition(self.rhs).to_smt(ctx))

    def pretty(self):
        return f"({self.lhs.pretty()} || {self.rhs.pretty()})"


@dataclass(frozen=True, repr=False)
class CNot(Term):
    """Logical negation."""

    inner: Term

    @property
    def is_boolean(self) -> bool:
        return True

    def free_vars(self):
        return self.inner.free_vars()

    def substitute(self, mapping):
        return CNot(self.inner.substitute(mapping))

    def negate(self):
        return as_condition(self.inner)

    def to_smt(self, ctx):
        return ctx.mk_not(as_condition(self.inner).to_smt(ctx))

    def pretty(self):
        return f"!{self.inner.pretty()}"


@dataclass(frozen=True, repr=False)
class CImplies(Term):
    """Logical implication."""

    antecedent: Term
    consequent: Term

    @property
    def is_boolean(self) -> bool:
        return True

    def free_vars(self):
        return self.antecedent.free_vars() | self.consequent.free_vars()

    def substitute(self, mapping):
        return CImplies(self.antecedent.substitute(mapping),
                        self.consequent.substitute(mapping))

    def negate(self):
        return CAnd(self.antecedent, self.consequent.negate())

    def to_smt(self, ctx):
        return ctx.mk_implies(as_condition(self.antecedent).to_smt(ctx),
                              as_condition(self.consequent).to_smt(ctx))

    def pretty(self):
        return f"({self.antecedent.pretty()} => {self.consequent.pretty()})"


@dataclass(frozen=True, repr=False)
class CIte(Term):
    """Integer-valued if-then-else."""

    cond: Term
    then: Term
    otherwise: Term

    def free_vars(self):
        return (self.cond.free_vars() | self.then.free_vars()
                | self.otherwise.free_vars())

    def substitute(self, mapping):
        return CIte(self.cond.substitute(mapping), self.then.substitute(mapping),
                    self.otherwise.substitute(mapping))

    def to_smt(self, ctx):
        return ctx.mk_ite(as_condition(self.cond).to_smt(ctx),
                          as_value(self.then).to_smt(ctx),
                          as_value(self.otherwise).to_smt(ctx))

    def pretty(self):
        return (f"({self.cond.pretty()} ? {self.then.pretty()} : "
                f"{self.otherwise.pretty()})")


# -------------------------------------------------------------------
# Term utilities
# -------------------------------------------------------------------

def as_condition(t: Term) -> Term:
    """View *t* as a condition (integers: non-zero is true)."""
    if t.is_boolean:
        return t
    return CRelation(RelOp.NE, t, CConst(0))


def as_value(t: Term) -> Term:
    """View *t* as an integer (conditions: true is 1)."""
    if not t.is_boolean:
        return t
    return CIte(t, CConst(1), CConst(0))


def _conjunction(cs: Sequence[Term]) -> Term:
    """Fold conditions into a conjunction, with identity CTrue."""
    result: Term = CTrue()
    for c in cs:
        c = as_condition(c)
        if isinstance(c, CFalse):
            return CFalse()
        if isinstance(c, CTrue):
            continue
        result = c if isinstance(result, CTrue) else CAnd(result, c)
    return result


def _disjunction(cs: Sequence[Term]) -> Term:
    """Fold conditions into a disjunction, with identity CFalse."""
    result: Term = CFalse()
    for c in cs:
        c = as_condition(c)
        if isinstance(c, CTrue):
            return CTrue()
        if isinstance(c, CFalse):
            continue
        result = c if isinstance(result, CFalse) else COr(result, c)
    return result


def conjunction(*args: Term) -> Term:
    return _conjunction(args)


def disjunction(*args: Term) -> Term:
    return _disjunction(args)


def collect_conjuncts(c: Term) -> List[Term]:
    """Flatten nested conjunctions into a list."""
    if isinstance(c, CAnd):
        return collect_conjuncts(c.lhs) + collect_conjuncts(c.rhs)
    if isinstance(c, CTrue):
        return []
    return [c]


def eq(lhs: Term, rhs: Term) -> Term:
    return CRelation(RelOp.EQ, as_value(lhs), as_value(rhs))


def var(name: str) -> CVar:
    return CVar(name)


def const(value: int) -> CConst:
    return CConst(value)


# ===================================================================
#  SMT CONTEXTS
# ===================================================================

class SMTContext(ABC):
    """Abstract interface for translating terms to a solver backend."""

    @abstractmethod
    def mk_bool(self, value: bool) -> Any: ...
    @abstractmethod
    def mk_var(self, name: str) -> Any: ...
    @abstractmethod
    def mk_const(self, value: int) -> Any: ...
    @abstractmethod
    def mk_rel(self, op: RelOp, lhs: Any, rhs: Any) -> Any: ...
    @abstractmethod
    def mk_arith(self, op: ArithOp, lhs: Any, rhs: Any) -> Any: ...
    @abstractmethod
    def mk_and(self, a: Any, b: Any) -> Any: ...
    @abstractmethod
    def mk_or(self, a: Any, b: Any) -> Any: ...
    @abstractmethod
    def mk_not(self, a: Any) -> Any: ...
    @abstractmethod
    def mk_implies(self, a: Any, b: Any) -> Any: ...
    @abstractmethod
    def mk_ite(self, c: Any, a: Any, b: Any) -> Any: ...
    @abstractmethod
    def mk_ediv(self, lhs: Any, rhs: Any) -> Any:
        """Euclidean quotient (SMT-LIB ``div``)."""
    @abstractmethod
    def mk_emod(self, lhs: Any, rhs: Any) -> Any:
        """Euclidean remainder (SMT-LIB ``mod``), never negative."""

    def mk_cdiv(self, op: ArithOp, lhs: Any, rhs: Any) -> Any:
        """C ``/`` and ``%``: the quotient truncates toward zero.

        Euclidean and truncating division agree unless the dividend is
        negative and the division inexact; there the quotient moves one
        step toward zero.  The remainder follows ``a == b*(a/b) + a%b``.
        """
        zero = self.mk_const(0)
        q = self.mk_ediv(lhs, rhs)
        exact = self.mk_or(self.mk_rel(RelOp.GE, lhs, zero),
                           self.mk_rel(RelOp.EQ, self.mk_emod(lhs, rhs), zero))
        step = self.mk_ite(self.mk_rel(RelOp.GT, rhs, zero),
                           self.mk_const(1), self.mk_const(-1))
        quot = self.mk_ite(exact, q, self.mk_arith(ArithOp.ADD, q, step))
        if op == ArithOp.DIV:
            return quot
        return self.mk_arith(ArithOp.SUB, lhs, self.mk_arith(ArithOp.MUL, rhs, quot))


def smt_symbol(name: str) -> str:
    """Quote *name* as an SMT-LIB2 symbol when it is not a simple one."""
    simple = name and all(ch.isalnum() or ch in "_.!$@-" for ch in name)
    if simple and not name[0].isdigit():
        return name
    return "|" + name.replace("|", "_") + "|"


class SmtLibContext(SMTContext):
    """Renders terms as SMT-LIB2 text over the ``Int`` sort."""

    _REL = {
        RelOp.EQ: "=", RelOp.LT: "<", RelOp.LE: "<=",
        RelOp.GT: ">", RelOp.GE: ">=",
    }
    _ARITH = {
        ArithOp.ADD: "+", ArithOp.SUB: "-", ArithOp.MUL: "*",
    }

    def mk_bool(self, value: bool) -> str:
        return "true" if value else "false"

    def mk_var(self, name: str) -> str:
        return smt_symbol(name)

    def mk_const(self, value: int) -> str:
        return str(value) if value >= 0 else f"(- {-value})"

    def mk_rel(self, op: RelOp, lhs, rhs) -> str:
        if op == RelOp.NE:
            return f"(not (= {lhs} {rhs}))"
        return f"({self._REL[op]} {lhs} {rhs})"

    def mk_arith(self, op: ArithOp, lhs, rhs) -> str:
        if op in (ArithOp.DIV, ArithOp.MOD):
            return self.mk_cdiv(op, lhs, rhs)
        if op not in self._ARITH:
            raise ValueError(f"operator {op.value!r} has no integer encoding")
        return f"({self._ARITH[op]} {lhs} {rhs})"

    def mk_and(self, a, b) -> str:
        return f"(and {a} {b})"

    def mk_or(self, a, b) -> str:
        return f"(or {a} {b})"

    def mk_not(self, a) -> str:
        return f"(not {a})"

    def mk_implies(self, a, b) -> str:
        return f"(=> {a} {b})"

    def mk_ite(self, c, a, b) -> str:
        return f"(ite {c} {a} {b})"

    def mk_ediv(self, lhs, rhs) -> str:
        return f"(div {lhs} {rhs})"

    def mk_emod(self, lhs, rhs) -> str:
        return f"(mod {lhs} {rhs})"
