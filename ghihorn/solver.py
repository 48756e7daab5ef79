# ghihorn/solver.py
"""
solver.py — Solver Adapter over the z3 Horn engine
==================================================

``HornSolver.solve(clauses, goal, timeout, token)`` submits a
:class:`~ghihorn.clauses.ClauseSet` to z3's ``Fixedpoint`` (Spacer
engine) and asks whether the goal predicate is derivable.

  * ``sat``   → the goal is reachable.  The rule names along z3's trace are
    rebuilt into a derivation tree, replayed with a plain ``z3.Solver`` to
    recover concrete values, and linearised into witness steps.
  * ``unsat`` → unreachable; the per-predicate covers (inductive
    invariants) are returned as strings.
  * ``unknown``, or the wall-clock budget expiring → ``UNKNOWN`` verdict.

Every solve uses a private ``z3.Context`` so that interrupting it (on
cancellation or timeout) never disturbs another run.

Depends on:
    - z3-solver
"""

from __future__ import annotations

import hashlib
import logging
import threading
import time
from collections import deque
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .clauses import ClauseKind, ClauseSet, HornClause, Predicate, PredicateKind
from .decompiler import CancellationToken
from .errors import CancelledError, SolverFault
from .interpreter import Verdict, VerdictStatus, WitnessStep
from .terms import ArithOp, RelOp, SMTContext

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════
#  PART 1 — Z3 TERM CONTEXT
# ═══════════════════════════════════════════════════════════════════

class Z3SMTContext(SMTContext):
    """SMTContext over z3 integers, bound to one ``z3.Context``."""

    def __init__(self, ctx: Any = None):
        try:
            import z3
            self._z3 = z3
        except ImportError:
            raise ImportError("Z3 Python bindings ('z3-solver') required for Z3SMTContext")
        self.ctx = ctx if ctx is not None else z3.Context()
        self._vars: Dict[str, Any] = {}
        self.rename: Dict[str, str] = {}

    def mk_bool(self, value: bool):
        return self._z3.BoolVal(value, self.ctx)

    def mk_var(self, name: str):
        name = self.rename.get(name, name)
        if name not in self._vars:
            self._vars[name] = self._z3.Int(name, self.ctx)
        return self._vars[name]

    def mk_const(self, value: int):
        return self._z3.IntVal(int(value), self.ctx)

    def mk_rel(self, op: RelOp, lhs, rhs):
        if op == RelOp.EQ: return lhs == rhs
        if op == RelOp.NE: return lhs != rhs
        if op == RelOp.LT: return lhs < rhs
        if op == RelOp.LE: return lhs <= rhs
        if op == RelOp.GT: return lhs > rhs
        if op == RelOp.GE: return lhs >= rhs
        raise ValueError(f"unknown relation {op!r}")

    def mk_arith(self, op: ArithOp, lhs, rhs):
        _ops = {
            ArithOp.ADD: lambda a, b: a + b,
            ArithOp.SUB: lambda a, b: a - b,
            ArithOp.MUL: lambda a, b: a * b,
        }
        if op in (ArithOp.DIV, ArithOp.MOD):
            return self.mk_cdiv(op, lhs, rhs)
        fn = _ops.get(op)
        if fn is None:
            raise ValueError(f"operator {op.value!r} has no integer encoding")
        return fn(lhs, rhs)

    def mk_and(self, a, b):
        return self._z3.And(a, b)

    def mk_or(self, a, b):
        return self._z3.Or(a, b)

    def mk_not(self, a):
        return self._z3.Not(a)

    def mk_implies(self, a, b):
        return self._z3.Implies(a, b)

    def mk_ite(self, c, a, b):
        return self._z3.If(c, a, b)

    def mk_ediv(self, lhs, rhs):
        return lhs / rhs

    def mk_emod(self, lhs, rhs):
        return lhs % rhs


# ═══════════════════════════════════════════════════════════════════
#  PART 2 — DERIVATION TREES
# ═══════════════════════════════════════════════════════════════════

class DerivationNode:
    """One clause application in a counterexample derivation."""

    __slots__ = ("index", "clause", "children")

    def __init__(self, index: int, clause: HornClause):
        self.index = index
        self.clause = clause
        self.children: List["DerivationNode"] = []

    def walk(self):
        yield self
        for c in self.children:
            yield from c.walk()


def _consume_bfs(rules: Sequence[HornClause]) -> Optional[DerivationNode]:
    root = DerivationNode(0, rules[0])
    queue = deque([root])
    pos = 1
    while queue:
        node = queue.popleft()
        for atom in node.clause.body:
            if pos >= len(rules) or rules[pos].head.predicate != atom.predicate:
                return None
            child = DerivationNode(pos, rules[pos])
            pos += 1
            node.children.append(child)
            queue.append(child)
    return root


def _consume_dfs(rules: Sequence[HornClause]) -> Optional[DerivationNode]:
    pos = [1]

    def build(node: DerivationNode) -> bool:
        for atom in node.clause.body:
            if pos[0] >= len(rules) or rules[pos[0]].head.predicate != atom.predicate:
                return False
            child = DerivationNode(pos[0], rules[pos[0]])
            pos[0] += 1
            node.children.append(child)
            if not build(child):
                return False
        return True

    root = DerivationNode(0, rules[0])
    return root if build(root) else None


def _consume_greedy(rules: Sequence[HornClause]) -> DerivationNode:
    used = [False] * len(rules)
    used[0] = True
    root = DerivationNode(0, rules[0])
    queue = deque([root])
    while queue:
        node = queue.popleft()
        for atom in node.clause.body:
            for i, r in enumerate(rules):
                if not used[i] and r.head.predicate == atom.predicate:
                    used[i] = True
                    child = DerivationNode(i, r)
                    node.children.append(child)
                    queue.append(child)
                    break
    return root


def build_derivation(rules: Sequence[HornClause]) -> Optional[DerivationNode]:
    """Rebuild the derivation tree from the rules along a trace.

    The trace lists one rule per derivation step starting from the goal;
    it is read breadth-first, then depth-first, and as a last resort
    matched greedily by head predicate.
    """
    rules = list(rules)
    if not rules:
        return None
    if rules[0].head.predicate.kind is not PredicateKind.GOAL and \
            rules[-1].head.predicate.kind is PredicateKind.GOAL:
        rules.reverse()
    return _consume_bfs(rules) or _consume_dfs(rules) or _consume_greedy(rules)


def linearize(root: DerivationNode) -> List[DerivationNode]:
    """Execution order of a derivation.

    Post-order, except that below a RETURN (or any multi-atom) clause the
    callee branch is *cut*: it stops at the CALL clause feeding the callee
    entry, because the caller's prefix was already emitted by the first
    branch.  The goal itself is not a program point.
    """
    out: List[DerivationNode] = []

    def visit(node: DerivationNode, cut: bool) -> None:
        if cut and node.clause.kind is ClauseKind.CALL:
            out.append(node)
            return
        for i, child in enumerate(node.children):
            visit(child, cut if i == 0 else True)
        if node.clause.head.predicate.kind is not PredicateKind.GOAL:
            out.append(node)

    visit(root, False)
    return out


# ═══════════════════════════════════════════════════════════════════
#  PART 3 — SOLVER
# ═══════════════════════════════════════════════════════════════════

def _z3():
    try:
        import z3
    except ImportError as e:
        raise SolverFault("the z3-solver package is required") from e
    return z3


class HornSolver:
    """Solver Adapter: ``solve(clauses, goal, timeout) -> Verdict``.

    Parameters
    ----------
    engine : str
        z3 fixedpoint engine (``spacer`` by default).
    smt_output_dir : str, optional
        Directory receiving an SMT-LIB2 copy of every submitted clause set.
    extract_invariants : bool
        Collect per-predicate covers on ``unsat``.
    """

    def __init__(self, engine: str = "spacer", smt_output_dir: Optional[str] = None,
                 extract_invariants: bool = True):
        self.engine = engine
        self.smt_output_dir = smt_output_dir
        self.extract_invariants = extract_invariants

    def solve(
        self,
        clauses: ClauseSet,
        goal: Predicate,
        timeout: float,
        token: Optional[CancellationToken] = None,
        query: str = "",
    ) -> Verdict:
        token = token or CancellationToken()
        token.raise_if_cancelled("solving")
        if timeout <= 0:
            logger.info("solver budget is %.1fs; not invoking the engine", timeout)
            return Verdict.unknown("timeout", query=query)
        if self.smt_output_dir:
            self._dump(clauses, goal)

        z3 = _z3()
        ctx = z3.Context()
        timed_out = threading.Event()

        def expire() -> None:
            timed_out.set()
            ctx.interrupt()

        timer = threading.Timer(timeout, expire)
        timer.daemon = True
        unregister = token.register(ctx.interrupt)
        started = time.monotonic()
        timer.start()
        try:
            verdict = self._run(z3, ctx, clauses, goal, timeout, started, query)
            token.raise_if_cancelled("solving")
            if verdict.status is VerdictStatus.UNKNOWN and timed_out.is_set():
                verdict = verdict.with_(reason="timeout")
            return verdict
        except z3.Z3Exception as e:
            elapsed = time.monotonic() - started
            if token.cancelled:
                raise CancelledError("solver interrupted by cancellation") from e
            if timed_out.is_set():
                return Verdict.unknown("timeout", query=query, elapsed=elapsed)
            raise SolverFault(f"z3 rejected the clause set: {e}") from e
        finally:
            timer.cancel()
            unregister()

    # -- engine -------------------------------------------------------

    def _configure(self, fp, timeout: float) -> None:
        params = (
            ("engine", self.engine),
            ("xform.slice", False),
            ("xform.inline_linear", False),
            ("xform.inline_eager", False),
            ("timeout", max(1, int(timeout * 1000))),
        )
        for name, value in params:
            try:
                fp.set(name, value)
            except Exception as e:
                logger.debug("fixedpoint parameter %s=%r rejected: %s", name, value, e)

    def _run(self, z3, ctx, clauses: ClauseSet, goal: Predicate, timeout: float,
             started: float, query: str) -> Verdict:
        zctx = Z3SMTContext(ctx)
        fp = z3.Fixedpoint(ctx=ctx)
        self._configure(fp, timeout)

        relations: Dict[str, Any] = {}
        for pred in clauses.predicates() + [goal]:
            if pred.name in relations:
                continue
            sorts = [z3.IntSort(ctx) for _ in pred.params] + [z3.BoolSort(ctx)]
            rel = z3.Function(pred.name, *sorts)
            relations[pred.name] = rel
            fp.register_relation(rel)

        for index, clause in enumerate(clauses):
            fp.add_rule(self._formula(z3, zctx, relations, clause), None, f"r{index}")

        logger.debug("solving %d clauses over %d relations (timeout %.1fs)",
                     len(clauses), len(relations), timeout)
        answer = fp.query(relations[goal.name])
        elapsed = time.monotonic() - started

        if answer == z3.sat:
            witness = self._witness(z3, ctx, fp, clauses, max(0.1, timeout - elapsed))
            return Verdict(VerdictStatus.SAT, query=query, witness=tuple(witness),
                           elapsed=time.monotonic() - started)
        if answer == z3.unsat:
            invariants = self._invariants(z3, ctx, fp, clauses) if self.extract_invariants else []
            return Verdict(VerdictStatus.UNSAT, query=query, invariants=tuple(invariants),
                           elapsed=elapsed)
        reason = fp.reason_unknown() or "unknown"
        if elapsed >= timeout or "timeout" in reason or "canceled" in reason:
            reason = "timeout"
        return Verdict.unknown(reason, query=query, elapsed=elapsed)

    def _app(self, z3, zctx: Z3SMTContext, relations, atom, suffix: str = ""):
        rel = relations[atom.predicate.name]
        return rel(*[zctx.mk_var(a.name + suffix) for a in atom.args])

    def _formula(self, z3, zctx: Z3SMTContext, relations, clause: HornClause):
        body = [self._app(z3, zctx, relations, a) for a in clause.body]
        body.append(clause.constraint.to_smt(zctx))
        antecedent = body[0] if len(body) == 1 else z3.And(*body)
        formula = z3.Implies(antecedent, self._app(z3, zctx, relations, clause.head))
        variables = [zctx.mk_var(v) for v in clause.variables()]
        if variables:
            formula = z3.ForAll(variables, formula)
        return formula

    # -- sat ----------------------------------------------------------

    def _witness(self, z3, ctx, fp, clauses: ClauseSet, budget: float) -> List[WitnessStep]:
        names = fp.get_rule_names_along_trace()
        rules: List[HornClause] = []
        for name in names:
            name = str(name).strip()
            if name.startswith("r") and name[1:].isdigit():
                index = int(name[1:])
                if index < len(clauses):
                    rules.append(clauses[index])
        root = build_derivation(rules)
        if root is None:
            logger.warning("solver returned no usable trace; witness is empty")
            return []
        order = linearize(root)
        values = self._replay(z3, ctx, root, budget)
        steps = []
        for node in order:
            pred = node.clause.head.predicate
            assignment = values.get(node.index, {})
            address = pred.site if pred.kind is PredicateKind.CALL else (
                pred.block if pred.block is not None else pred.function)
            steps.append(WitnessStep(
                predicate=pred.label or pred.name,
                kind=pred.kind,
                function=pred.function,
                address=address,
                assignments=tuple((p, assignment[p]) for p in pred.params if p in assignment),
                callee=pred.callee,
            ))
        return steps

    def _replay(self, z3, ctx, root: DerivationNode, budget: float) -> Dict[int, Dict[str, int]]:
        """Concrete head values of every node, via one satisfiability check."""
        zctx = Z3SMTContext(ctx)
        solver = z3.Solver(ctx=ctx)
        solver.set("timeout", max(1, int(budget * 1000)))
        heads: Dict[int, List[Any]] = {}

        for node in root.walk():
            tag = f"#{node.index}"
            zctx.rename = {v: v + tag for v in node.clause.variables()}
            solver.add(node.clause.constraint.to_smt(zctx))
            heads[node.index] = [zctx.mk_var(a.name) for a in node.clause.head.args]
            for atom, child in zip(node.clause.body, node.children):
                ctag = f"#{child.index}"
                for a, h in zip(atom.args, child.clause.head.args):
                    solver.add(zctx.mk_var(a.name) == z3.Int(h.name + ctag, ctx))
            zctx.rename = {}

        try:
            if solver.check() != z3.sat:
                logger.debug("witness replay was not satisfiable; values omitted")
                return {}
            model = solver.model()
        except z3.Z3Exception as e:
            logger.debug("witness replay failed: %s", e)
            return {}

        out: Dict[int, Dict[str, int]] = {}
        for node in root.walk():
            params = node.clause.head.predicate.params
            vals: Dict[str, int] = {}
            for p, term in zip(params, heads[node.index]):
                v = model.eval(term, model_completion=True)
                if z3.is_int_value(v):
                    vals[p] = v.as_long()
            out[node.index] = vals
        return out

    # -- unsat --------------------------------------------------------

    def _invariants(self, z3, ctx, fp, clauses: ClauseSet) -> List[Tuple[str, str]]:
        out: List[Tuple[str, str]] = []
        for pred in clauses.predicates():
            if pred.kind is PredicateKind.GOAL:
                continue
            try:
                rel = z3.Function(pred.name, *([z3.IntSort(ctx)] * pred.arity + [z3.BoolSort(ctx)]))
                cover = fp.get_cover_delta(-1, rel)
                if pred.arity:
                    cover = z3.substitute_vars(cover, *[z3.Int(p, ctx) for p in pred.params])
                cover = z3.simplify(cover)
            except z3.Z3Exception as e:
                logger.debug("no cover for %s: %s", pred.name, e)
                continue
            if z3.is_true(cover):
                continue
            out.append((pred.label or pred.name, str(cover)))
        return out

    # -- diagnostics --------------------------------------------------

    def _dump(self, clauses: ClauseSet, goal: Predicate) -> Optional[Path]:
        text = clauses.to_smt2(goal)
        digest = hashlib.sha1(text.encode("utf-8")).hexdigest()[:12]
        directory = Path(self.smt_output_dir).expanduser()
        try:
            directory.mkdir(parents=True, exist_ok=True)
            path = directory / f"ghihorn-{digest}.smt2"
            path.write_text(text, encoding="utf-8")
        except OSError as e:
            logger.warning("cannot write SMT-LIB2 dump to %s: %s", directory, e)
            return None
        logger.debug("wrote clause set to %s", path)
        return path
