# ghihorn/clauses.py
"""
clauses.py — Clause Model
=========================

Pure data types for Constrained Horn Clauses::

    head(x'...) :- body_1(...) /\\ body_2(...) /\\ constraint

A :class:`Predicate` is a named relation over a fixed vector of integer
variables, one per program point of interest.  A :class:`HornClause` is an
immutable value; a :class:`ClauseSet` is the ordered, de-duplicated
collection one analysis run submits to the solver.

Invariants enforced here (violations raise
:class:`~ghihorn.errors.GenerationFault`, which is fatal to a run):

  * every variable in a clause head or constraint is bound, either by a
    body atom or by the clause's own ``declared`` variables;
  * predicate arity is fixed at first use within a clause set.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, Iterator, List, Optional, Tuple

from .errors import ErrorCode, GenerationFault
from .program import Address
from .terms import CTrue, CVar, SmtLibContext, Term, smt_symbol

logger = logging.getLogger(__name__)


class PredicateKind(enum.Enum):
    ENTRY = "entry"
    BLOCK = "block"
    CALL = "call"
    EXIT = "exit"
    GOAL = "goal"


class ClauseKind(enum.Enum):
    FACT = "fact"
    ENTRY = "entry"
    TRANSFER = "transfer"
    CALL = "call"
    RETURN = "return"
    SUMMARY = "summary"
    HAVOC = "havoc"
    GOAL = "goal"


@dataclass(frozen=True)
class Predicate:
    """A relation over a fixed vector of integer variables.

    Identity is ``(scope, function, block, kind)``; ``name`` and
    ``params`` are derived data.  ``scope`` separates predicates of the
    program under analysis (``""``) from those of synthesized library
    summaries.  CALL predicates also record the callee label and the call
    instruction address.
    """

    name: str
    kind: PredicateKind
    function: Optional[Address]
    block: Optional[Address]
    params: Tuple[str, ...]
    scope: str = ""
    label: str = field(default="", compare=False)
    callee: Optional[str] = field(default=None, compare=False)
    site: Optional[Address] = field(default=None, compare=False)

    @property
    def arity(self) -> int:
        return len(self.params)

    @property
    def key(self) -> Tuple[str, Optional[Address], Optional[Address], PredicateKind]:
        return (self.scope, self.function, self.block, self.kind)

    def __call__(self, *args: str) -> "Atom":
        return Atom(self, tuple(CVar(a) for a in args))

    def atom(self, prefix: str = "") -> "Atom":
        """Application to the predicate's own parameter names."""
        return Atom(self, tuple(CVar(prefix + p) for p in self.params))

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class Atom:
    """A predicate applied to variables."""

    predicate: Predicate
    args: Tuple[CVar, ...]

    def free_vars(self) -> FrozenSet[str]:
        return frozenset(a.name for a in self.args)

    def __str__(self) -> str:
        return f"{self.predicate.name}({', '.join(a.name for a in self.args)})"


@dataclass(frozen=True)
class HornClause:
    """``head :- body /\\ constraint``.

    ``declared`` lists the variables quantified at clause scope that no
    body atom binds (fresh head values, havocked values).  ``kind`` and
    ``function`` are diagnostic metadata and do not take part in equality.
    """

    head: Atom
    body: Tuple[Atom, ...]
    constraint: Term = field(default_factory=CTrue)
    declared: FrozenSet[str] = frozenset()
    kind: ClauseKind = field(default=ClauseKind.TRANSFER, compare=False)
    function: Optional[Address] = field(default=None, compare=False)
    address: Optional[Address] = field(default=None, compare=False)

    @property
    def key(self) -> Tuple[Atom, Tuple[Atom, ...], Term]:
        return (self.head, self.body, self.constraint)

    def body_vars(self) -> FrozenSet[str]:
        out: FrozenSet[str] = frozenset()
        for a in self.body:
            out = out | a.free_vars()
        return out

    def variables(self) -> List[str]:
        """Every variable of the clause, in a stable order."""
        seen: Dict[str, None] = {}
        for atom in self.body:
            for a in atom.args:
                seen.setdefault(a.name)
        for a in self.head.args:
            seen.setdefault(a.name)
        for v in sorted(self.declared | self.constraint.free_vars()):
            seen.setdefault(v)
        return list(seen)

    def check_bound(self) -> None:
        bound = self.body_vars() | self.declared
        unbound = (self.head.free_vars() | self.constraint.free_vars()) - bound
        if unbound:
            raise GenerationFault(
                f"unbound variable(s) {', '.join(sorted(unbound))} in clause {self}",
                function=self.function,
                predicate=self.head.predicate.name,
                code=ErrorCode.UNBOUND_VARIABLE,
            )

    def __str__(self) -> str:
        parts = [str(a) for a in self.body]
        if not isinstance(self.constraint, CTrue):
            parts.append(self.constraint.pretty())
        sep = " /\\ "
        return f"{self.head} :- {sep.join(parts) or 'true'}"


class ClauseSet:
    """Ordered, de-duplicated set of Horn clauses for one analysis run."""

    def __init__(self, clauses: Iterable[HornClause] = ()):
        self._clauses: List[HornClause] = []
        self._keys: set = set()
        self._arity: Dict[tuple, Predicate] = {}
        self._order: List[Predicate] = []
        self._names: Dict[str, Predicate] = {}
        for c in clauses:
            self.add(c)

    # -- registration ----------------------------------------------------

    def declare(self, pred: Predicate, function: Optional[Address] = None) -> Predicate:
        """Register *pred*, fixing its arity on first use."""
        known = self._arity.get(pred.key)
        if known is None:
            clash = self._names.get(pred.name)
            if clash is not None:
                raise GenerationFault(
                    f"predicate name {pred.name} already names another program point",
                    function=function if function is not None else pred.function,
                    predicate=pred.name,
                )
            self._names[pred.name] = pred
            self._arity[pred.key] = pred
            self._order.append(pred)
            return pred
        if known.arity != pred.arity or known.name != pred.name:
            raise GenerationFault(
                f"predicate {pred.name} used with arity {pred.arity}, "
                f"first declared with arity {known.arity}",
                function=function if function is not None else pred.function,
                predicate=pred.name,
                code=ErrorCode.ARITY_MISMATCH,
            )
        return known

    def add(self, clause: HornClause) -> bool:
        """Add *clause*; returns False when an identical clause is present."""
        for atom in (clause.head,) + clause.body:
            self.declare(atom.predicate, clause.function)
            if len(atom.args) != atom.predicate.arity:
                raise GenerationFault(
                    f"atom {atom} has {len(atom.args)} arguments, predicate "
                    f"{atom.predicate.name} takes {atom.predicate.arity}",
                    function=clause.function,
                    predicate=atom.predicate.name,
                    code=ErrorCode.ARITY_MISMATCH,
                )
        clause.check_bound()
        if clause.key in self._keys:
            return False
        self._keys.add(clause.key)
        self._clauses.append(clause)
        return True

    def extend(self, clauses: Iterable[HornClause]) -> int:
        return sum(1 for c in clauses if self.add(c))

    # -- access ----------------------------------------------------------

    def predicates(self) -> List[Predicate]:
        return list(self._order)

    def predicate(self, name: str) -> Optional[Predicate]:
        for p in self._order:
            if p.name == name:
                return p
        return None

    @property
    def clauses(self) -> Tuple[HornClause, ...]:
        return tuple(self._clauses)

    def __len__(self) -> int:
        return len(self._clauses)

    def __iter__(self) -> Iterator[HornClause]:
        return iter(self._clauses)

    def __getitem__(self, index: int) -> HornClause:
        return self._clauses[index]

    def signature(self) -> List[Tuple[str, int]]:
        return [(p.name, p.arity) for p in self._order]

    # -- rendering -------------------------------------------------------

    def to_smt2(self, query: Optional[Predicate] = None) -> str:
        """Render the set as an SMT-LIB2 ``HORN`` script."""
        ctx = SmtLibContext()
        lines = ["(set-logic HORN)"]
        for p in self._order:
            sorts = " ".join("Int" for _ in p.params)
            lines.append(f"(declare-fun {smt_symbol(p.name)} ({sorts}) Bool)")
        for c in self._clauses:
            lines.append(f"; {c.kind.value} {c.head.predicate.name}")
            lines.append(_clause_smt2(c, ctx))
        if query is not None:
            goal = _app(query.atom())
            if query.arity:
                binders = " ".join(f"({smt_symbol(v)} Int)" for v in query.params)
                goal = f"(exists ({binders}) {goal})"
            lines.append(f"(assert (=> {goal} false))")
            lines.append("(check-sat)")
        return "\n".join(lines) + "\n"

    def __str__(self) -> str:
        return "\n".join(str(c) for c in self._clauses)


def _app(atom: Atom) -> str:
    if not atom.args:
        return smt_symbol(atom.predicate.name)
    args = " ".join(smt_symbol(a.name) for a in atom.args)
    return f"({smt_symbol(atom.predicate.name)} {args})"


def _clause_smt2(c: HornClause, ctx: SmtLibContext) -> str:
    body = [_app(a) for a in c.body]
    if not isinstance(c.constraint, CTrue):
        body.append(c.constraint.to_smt(ctx))
    if not body:
        antecedent = "true"
    elif len(body) == 1:
        antecedent = body[0]
    else:
        antecedent = f"(and {' '.join(body)})"
    formula = f"(=> {antecedent} {_app(c.head)})"
    vs = c.variables()
    if vs:
        binders = " ".join(f"({smt_symbol(v)} Int)" for v in vs)
        formula = f"(forall ({binders}) {formula})"
    return f"(assert {formula})"
