# ghihorn/hornifier.py
"""
hornifier.py — Horn Clause Generator
====================================

Translates decompiled functions into Constrained Horn Clauses.

For every function ``f`` in the working set:

    f.entry(params, globals)
    f.bb_<addr>(in.params, in.globals, locals, globals)     one per block
    f.call_<callee>(...same as a block...)                   one per call site
    f.exit(in.params, in.globals, ret, globals)

Blocks are split at call sites, so every clause encodes a straight-line
segment: the statements between two program points, with branch
conditions split over the two successor clauses.  ``in.*`` variables
freeze the values a function was entered with; that is what makes the
entry/exit pair usable as a compositional summary at call sites.

Calls are resolved in this order:

1. the callee is in the working set: a CALL clause feeds the callee's
   entry predicate and a RETURN clause joins the call-site predicate with
   the callee's exit predicate (nothing is inlined);
2. the API database has an entry: closed-form summaries become one
   SUMMARY clause; synthesized entries are threaded like (1);
3. otherwise: a HAVOC clause leaves the result and every program global
   unconstrained, which keeps the analysis sound.

Generation is deterministic: functions, blocks and call sites are visited
in address order and fresh variable names are numbered per clause.

An :class:`ApiOrderMonitor` adds two ghost globals, ``__api_seq`` and
``__api_obj``, advanced on the clause that leaves a matching call site.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Sequence, Set, Tuple

from .apidb import ApiEntry, ApiIdentity, ApiResolver
from .clauses import Atom, ClauseKind, ClauseSet, HornClause, Predicate, PredicateKind
from .condition import parse_condition, resolve_names
from .errors import GenerationFault, QueryError
from .program import (
    Address,
    Assign,
    Assume,
    BasicBlock,
    Branch,
    Call,
    FunctionSummary,
    Havoc,
    Jump,
    ProgramImage,
    Return,
    Terminator,
)
from .terms import (
    ArithOp,
    CAnd,
    CArith,
    CConst,
    CImplies,
    CIte,
    CNot,
    COr,
    CRelation,
    CTrue,
    CUnaryOp,
    CVar,
    RelOp,
    Term,
    as_condition,
    as_value,
    conjunction,
    eq,
)

logger = logging.getLogger(__name__)

SEQ = "__api_seq"
OBJ = "__api_obj"

RET = "ret"
CALLEE_PREFIX = "@"

_MAX_EXACT_SHIFT = 64


def inbound(name: str) -> str:
    return f"in.{name}"


# ═══════════════════════════════════════════════════════════════════
#  PART 1 — QUERIES
# ═══════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ApiStep:
    """One element of an ordered API-call pattern.

    ``capture`` records the call's return value as the tracked object;
    ``same_object`` is the index of the argument that must equal it.
    """

    name: str
    capture: bool = False
    same_object: Optional[int] = None

    @classmethod
    def parse(cls, text: str) -> "ApiStep":
        """``malloc``, ``malloc:capture`` or ``free:arg0``."""
        name, _, mod = text.partition(":")
        name = name.strip()
        if not name:
            raise QueryError(f"empty API name in step {text!r}")
        mod = mod.strip()
        if not mod:
            return cls(name)
        if mod == "capture":
            return cls(name, capture=True)
        if mod.startswith("arg") and mod[3:].isdigit():
            return cls(name, same_object=int(mod[3:]))
        raise QueryError(f"unknown step modifier {mod!r} in {text!r}")

    def matches(self, label: str) -> bool:
        return ApiIdentity.from_symbol(label).name == ApiIdentity.from_symbol(self.name).name

    def __str__(self) -> str:
        if self.capture:
            return f"{self.name}:capture"
        if self.same_object is not None:
            return f"{self.name}:arg{self.same_object}"
        return self.name


class ApiOrderMonitor:
    """Ghost state for an ordered API-call query."""

    ghosts = (SEQ, OBJ)

    def __init__(self, steps: Sequence[ApiStep]):
        if not steps:
            raise QueryError("an API-order query needs at least one step")
        self.steps = tuple(steps)

    def steps_for(self, label: str) -> List[Tuple[int, ApiStep]]:
        return [(k, s) for k, s in enumerate(self.steps) if s.matches(label)]

    @property
    def final(self) -> int:
        return len(self.steps)


class Query(ABC):
    """What a run asks the solver."""

    kind = "query"
    start: Optional[Address] = None

    def monitor(self) -> Optional[ApiOrderMonitor]:
        return None

    @abstractmethod
    def goal_clauses(self, hz: "Hornifier") -> List[HornClause]:
        """Clauses whose head is the goal predicate."""

    @abstractmethod
    def describe(self) -> str:
        ...


@dataclass(frozen=True)
class PathQuery(Query):
    """Is ``target`` reachable with ``condition`` holding there?

    ``target`` names a function (its exit is the goal) or a block.  The
    condition ranges over the target predicate's variables; a bare
    parameter name ``x`` of a target function means ``in.x``.
    """

    target: Address
    condition: Optional[str] = None
    start: Optional[Address] = None

    kind = "path"

    def goal_clauses(self, hz: "Hornifier") -> List[HornClause]:
        fn = hz.functions.get(self.target)
        aliases: Dict[str, str] = {}
        if fn is not None:
            pred = hz.exit_predicate(fn)
            aliases = {p: inbound(p) for p in fn.params if p not in hz.globals}
        else:
            located = hz.locate_block(self.target)
            if located is None:
                raise QueryError(f"target {self.target} is not in the working set",
                                 target=self.target)
            fn, blk = located
            pred = hz.block_predicate(fn, blk.address)
        cond: Term = CTrue()
        if self.condition:
            cond = resolve_names(parse_condition(self.condition), pred.params, aliases)
        seg = _Segment((pred.atom(),), {}, ClauseKind.GOAL)
        seg.constraints.append(as_condition(seg.lower(cond)))
        return [seg.close(hz.goal_predicate(), {}, fn.address, self.target)]

    def describe(self) -> str:
        text = f"reach {self.target}"
        if self.condition:
            text += f" where {self.condition}"
        if self.start is not None:
            text += f" from {self.start}"
        return text


@dataclass(frozen=True)
class ApiOrderQuery(Query):
    """Can the API calls in ``steps`` happen in this order on one path?"""

    steps: Tuple[ApiStep, ...]

    kind = "api"

    def monitor(self) -> ApiOrderMonitor:
        return ApiOrderMonitor(self.steps)

    def goal_clauses(self, hz: "Hornifier") -> List[HornClause]:
        return hz.monitor_goals()

    def describe(self) -> str:
        return " -> ".join(str(s) for s in self.steps)


# ═══════════════════════════════════════════════════════════════════
#  PART 2 — SEGMENTS
# ═══════════════════════════════════════════════════════════════════

class _Segment:
    """A straight-line stretch between two program points.

    ``env`` maps each state variable to its symbolic value in terms of the
    body atoms' variables.
    """

    def __init__(self, body: Tuple[Atom, ...], env: Dict[str, Term], kind: ClauseKind):
        self.body = body
        self.env = env
        self.kind = kind
        self.constraints: List[Term] = []
        self.declared: Set[str] = set()
        self.ret: Optional[Term] = None
        self._fresh = 0

    def fresh(self, base: str) -> CVar:
        self._fresh += 1
        name = f"{base}!{self._fresh}"
        self.declared.add(name)
        return CVar(name)

    def lower(self, t: Term) -> Term:
        """Rewrite operators with no integer encoding.

        Left shifts by constants become exact multiplication and right
        shifts a floored quotient pinned by two bounds;
        any other bitwise operation is a fresh unconstrained value.
        """
        if isinstance(t, CArith):
            lhs, rhs = self.lower(t.lhs), self.lower(t.rhs)
            if not t.op.is_bitwise:
                return CArith(t.op, lhs, rhs)
            if (t.op in (ArithOp.SHL, ArithOp.SHR) and isinstance(rhs, CConst)
                    and not isinstance(rhs.value, bool) and 0 <= rhs.value < _MAX_EXACT_SHIFT):
                scale = CConst(2 ** rhs.value)
                if t.op == ArithOp.SHL:
                    return CArith(ArithOp.MUL, lhs, scale)
                # arithmetic shift floors, C division truncates
                q = self.fresh("shr")
                self.constraints.append(CAnd(
                    CRelation(RelOp.LE, CArith(ArithOp.MUL, q, scale), lhs),
                    CRelation(RelOp.LT, lhs,
                              CArith(ArithOp.MUL, CArith(ArithOp.ADD, q, CConst(1)), scale))))
                return q
            return self.fresh("bits")
        if isinstance(t, CRelation):
            return CRelation(t.op, self.lower(t.lhs), self.lower(t.rhs))
        if isinstance(t, CUnaryOp):
            return CUnaryOp(t.op, self.lower(t.operand))
        if isinstance(t, CAnd):
            return CAnd(self.lower(t.lhs), self.lower(t.rhs))
        if isinstance(t, COr):
            return COr(self.lower(t.lhs), self.lower(t.rhs))
        if isinstance(t, CNot):
            return CNot(self.lower(t.inner))
        if isinstance(t, CImplies):
            return CImplies(self.lower(t.antecedent), self.lower(t.consequent))
        if isinstance(t, CIte):
            return CIte(self.lower(t.cond), self.lower(t.then), self.lower(t.otherwise))
        return t

    def eval(self, t: Term) -> Term:
        return self.lower(t.substitute(self.env))

    def close(
        self,
        head: Predicate,
        values: Mapping[str, Optional[Term]],
        function: Optional[Address],
        address: Optional[Address] = None,
        extra: Sequence[Term] = (),
        kind: Optional[ClauseKind] = None,
    ) -> HornClause:
        """Emit ``head(p'...) :- body /\\ constraints /\\ p' == values[p]``.

        Head parameters without a value stay unconstrained.
        """
        primes = [f"{p}'" for p in head.params]
        cons = list(self.constraints) + [as_condition(c) for c in extra]
        for p, prime in zip(head.params, primes):
            v = values.get(p)
            if v is not None:
                cons.append(eq(CVar(prime), v))
        return HornClause(
            head=Atom(head, tuple(CVar(x) for x in primes)),
            body=self.body,
            constraint=conjunction(*cons),
            declared=frozenset(self.declared | set(primes)),
            kind=kind or self.kind,
            function=function,
            address=address,
        )


# ═══════════════════════════════════════════════════════════════════
#  PART 3 — HORNIFIER
# ═══════════════════════════════════════════════════════════════════

class Hornifier:
    """Emits the clause set of one working set.

    Parameters
    ----------
    functions : mapping of Address to FunctionSummary
        The decompiled working set.
    image : ProgramImage, optional
        Supplies globals, their initial values and import names.
    apis : ApiResolver, optional
        Consulted for calls without a body in the working set.
    global_names : sequence of str, optional
        Overrides the image's globals (synthesized summaries use none).
    monitor : ApiOrderMonitor, optional
        Instruments call sites for an ordered API query.
    scope : str
        Prefix separating synthesized library predicates from the program's.
    """

    def __init__(
        self,
        functions: Mapping[Address, FunctionSummary],
        image: Optional[ProgramImage] = None,
        apis: Optional[ApiResolver] = None,
        global_names: Optional[Sequence[str]] = None,
        monitor: Optional[ApiOrderMonitor] = None,
        scope: str = "",
    ):
        self.functions: Dict[Address, FunctionSummary] = dict(functions)
        self.image = image
        self.apis = apis
        self.monitor = monitor
        self.scope = scope
        if global_names is None:
            global_names = image.global_names() if image is not None else ()
        self.program_globals: Tuple[str, ...] = tuple(global_names)
        self.globals: Tuple[str, ...] = self.program_globals + (
            monitor.ghosts if monitor is not None else ())
        self.initial: Dict[str, Optional[int]] = (
            dict(image.initial_values()) if image is not None else {})
        self._prefix = f"{scope}::" if scope else ""
        self._locals: Dict[Address, Tuple[str, ...]] = {}
        self._extra: List[HornClause] = []
        self._extra_keys: Set[tuple] = set()
        self._goals: List[HornClause] = []
        self.stats: Counter = Counter()

    # -- predicates ---------------------------------------------------

    def _local_vars(self, fn: FunctionSummary) -> Tuple[str, ...]:
        cached = self._locals.get(fn.address)
        if cached is None:
            cached = fn.variables(exclude=self.globals)
            self._locals[fn.address] = cached
        return cached

    def _state_vars(self, fn: FunctionSummary) -> Tuple[str, ...]:
        return self._local_vars(fn) + self.globals

    def _frozen_vars(self, fn: FunctionSummary) -> Tuple[str, ...]:
        return tuple(inbound(p) for p in fn.params) + tuple(inbound(g) for g in self.globals)

    def entry_predicate(self, fn: FunctionSummary) -> Predicate:
        return Predicate(
            f"{self._prefix}{fn.name}.entry", PredicateKind.ENTRY, fn.address, None,
            tuple(fn.params) + self.globals, self.scope, label=f"{fn.name}.entry")

    def block_predicate(self, fn: FunctionSummary, address: Address) -> Predicate:
        label = f"{fn.name}.bb_{address.offset:x}"
        return Predicate(
            f"{self._prefix}{label}", PredicateKind.BLOCK, fn.address, address,
            self._frozen_vars(fn) + self._state_vars(fn), self.scope, label=label)

    def call_predicate(self, fn: FunctionSummary, call: Call) -> Predicate:
        callee = self.callee_label(call)
        label = f"{fn.name}.call_{callee}"
        return Predicate(
            f"{self._prefix}{label}_{call.address.offset:x}", PredicateKind.CALL,
            fn.address, call.address, self._frozen_vars(fn) + self._state_vars(fn),
            self.scope, label=label, callee=callee, site=call.address)

    def exit_predicate(self, fn: FunctionSummary) -> Predicate:
        return Predicate(
            f"{self._prefix}{fn.name}.exit", PredicateKind.EXIT, fn.address, None,
            self._frozen_vars(fn) + (RET,) + self.globals, self.scope,
            label=f"{fn.name}.exit")

    def goal_predicate(self) -> Predicate:
        return Predicate(f"{self._prefix}goal", PredicateKind.GOAL, None, None, (),
                         self.scope, label="goal")

    def callee_label(self, call: Call) -> str:
        if call.callee is not None:
            fn = self.functions.get(call.callee)
            if fn is not None:
                return fn.name
            if self.image is not None and call.callee in self.image.imports:
                return self.image.imports[call.callee]
        return call.label.replace(" ", "_")

    def locate_block(self, address: Address) -> Optional[Tuple[FunctionSummary, BasicBlock]]:
        for faddr in sorted(self.functions):
            fn = self.functions[faddr]
            blk = fn.block_containing(address)
            if blk is not None:
                return fn, blk
        return None

    # -- generation ---------------------------------------------------

    def generate(self, entry_points: Sequence[Address], query: Optional[Query] = None) -> ClauseSet:
        """Clause set for the whole working set, facts and goals included."""
        cs = ClauseSet()
        start = query.start if query is not None else None
        if start is not None:
            located = self.locate_block(start)
            if located is None:
                raise QueryError(f"start block {start} is not in the working set", start=start)
            cs.add(self.block_fact(*located))
        else:
            facts = 0
            for addr in entry_points:
                fn = self.functions.get(addr)
                if fn is None:
                    logger.warning("entry point %s has no decompiled body; skipped", addr)
                    continue
                cs.add(self.entry_fact(fn))
                facts += 1
            if not facts:
                raise QueryError("none of the entry points is in the working set")
        for addr in sorted(self.functions):
            cs.extend(self.hornify_function(self.functions[addr]))
        cs.extend(self.dependency_clauses())
        if query is not None:
            cs.extend(query.goal_clauses(self))
        logger.debug("generated %d clauses over %d predicates (%s)", len(cs),
                     len(cs.predicates()), dict(sorted(self.stats.items())))
        return cs

    def entry_fact(self, fn: FunctionSummary) -> HornClause:
        seg = _Segment((), {}, ClauseKind.FACT)
        return seg.close(self.entry_predicate(fn), self._initial_values(), fn.address, fn.address)

    def block_fact(self, fn: FunctionSummary, blk: BasicBlock) -> HornClause:
        seg = _Segment((), {}, ClauseKind.FACT)
        values: Dict[str, Optional[Term]] = {}
        if self.monitor is not None:
            values[SEQ] = CConst(0)
            values[inbound(SEQ)] = CConst(0)
        return seg.close(self.block_predicate(fn, blk.address), values, fn.address, blk.address)

    def _initial_values(self) -> Dict[str, Optional[Term]]:
        values: Dict[str, Optional[Term]] = {}
        for g in self.program_globals:
            init = self.initial.get(g)
            if init is not None:
                values[g] = CConst(init)
        if self.monitor is not None:
            values[SEQ] = CConst(0)
        return values

    def dependency_clauses(self) -> List[HornClause]:
        """Clauses of synthesized summaries referenced so far."""
        return list(self._extra)

    def monitor_goals(self) -> List[HornClause]:
        return list(self._goals)

    def hornify_function(self, fn: FunctionSummary) -> List[HornClause]:
        """All clauses of one function, in block-address order."""
        try:
            out = [self._entry_clause(fn)]
            for blk in fn.blocks:
                out.extend(self._block_clauses(fn, blk))
        except GenerationFault:
            raise
        except (KeyError, ValueError, TypeError) as e:
            raise GenerationFault(f"cannot hornify {fn.name}: {e}", function=fn.address) from e
        for c in out:
            c.check_bound()
        return out

    def _entry_clause(self, fn: FunctionSummary) -> HornClause:
        entry = self.entry_predicate(fn)
        seg = _Segment((entry.atom(),), {}, ClauseKind.ENTRY)
        values: Dict[str, Optional[Term]] = {}
        for p in fn.params:
            values[inbound(p)] = CVar(p)
            values[p] = CVar(p)
        for g in self.globals:
            values[inbound(g)] = CVar(g)
            values[g] = CVar(g)
        head = self.block_predicate(fn, fn.entry_block.address)
        return seg.close(head, values, fn.address, fn.address)

    def _identity(self, fn: FunctionSummary) -> Dict[str, Term]:
        return {v: CVar(v) for v in self._state_vars(fn)}

    def _point_values(self, fn: FunctionSummary, seg: _Segment) -> Dict[str, Optional[Term]]:
        values: Dict[str, Optional[Term]] = {v: CVar(v) for v in self._frozen_vars(fn)}
        for v in self._state_vars(fn):
            values[v] = seg.env.get(v, CVar(v))
        return values

    def _block_clauses(self, fn: FunctionSummary, blk: BasicBlock) -> List[HornClause]:
        bpred = self.block_predicate(fn, blk.address)
        seg = _Segment((bpred.atom(),), self._identity(fn), ClauseKind.TRANSFER)
        out: List[HornClause] = []
        for stmt in blk.statements:
            if isinstance(stmt, Assign):
                seg.env[stmt.target] = as_value(seg.eval(stmt.value))
            elif isinstance(stmt, Havoc):
                seg.env[stmt.target] = seg.fresh(stmt.target)
            elif isinstance(stmt, Assume):
                seg.constraints.append(as_condition(seg.eval(stmt.cond)))
            elif isinstance(stmt, Call):
                cpred = self.call_predicate(fn, stmt)
                out.append(seg.close(cpred, self._point_values(fn, seg), fn.address, stmt.address))
                seg, extra = self._after_call(fn, stmt, cpred)
                out.extend(extra)
            else:
                raise GenerationFault(f"unsupported statement {stmt!r}", function=fn.address,
                                      predicate=bpred.name)
        out.extend(self._terminator_clauses(fn, seg, blk.terminator, bpred))
        return out

    def _terminator_clauses(self, fn: FunctionSummary, seg: _Segment, term: Terminator,
                            bpred: Predicate) -> List[HornClause]:
        if isinstance(term, Return):
            values: Dict[str, Optional[Term]] = {v: CVar(v) for v in self._frozen_vars(fn)}
            values[RET] = as_value(seg.eval(term.value)) if term.value is not None else None
            for g in self.globals:
                values[g] = seg.env.get(g, CVar(g))
            return [seg.close(self.exit_predicate(fn), values, fn.address, term.address)]
        if isinstance(term, Jump):
            return [seg.close(self._successor(fn, term.dest, bpred),
                              self._point_values(fn, seg), fn.address, term.address)]
        if isinstance(term, Branch):
            cond = as_condition(seg.eval(term.cond))
            values = self._point_values(fn, seg)
            return [
                seg.close(self._successor(fn, term.on_true, bpred), values, fn.address,
                          term.address, extra=(cond,)),
                seg.close(self._successor(fn, term.on_false, bpred), values, fn.address,
                          term.address, extra=(cond.negate(),)),
            ]
        raise GenerationFault(f"unsupported terminator {term!r}", function=fn.address,
                              predicate=bpred.name)

    def _successor(self, fn: FunctionSummary, dest: Address, bpred: Predicate) -> Predicate:
        if fn.block(dest) is None:
            raise GenerationFault(f"jump to unknown block {dest}", function=fn.address,
                                  predicate=bpred.name)
        return self.block_predicate(fn, dest)

    # -- call sites ---------------------------------------------------

    def resolve(self, call: Call) -> Tuple[str, Optional[object]]:
        """Classify a call site as internal, api or havoc."""
        if call.callee is not None and call.callee in self.functions:
            return "internal", self.functions[call.callee]
        if self.apis is not None:
            entry = self.apis.lookup(ApiIdentity.from_symbol(self.callee_label(call)))
            if entry is not None and not entry.unconstrained:
                return "api", entry
        return "havoc", None

    def _after_call(self, fn: FunctionSummary, call: Call,
                    cpred: Predicate) -> Tuple[_Segment, List[HornClause]]:
        kind, target = self.resolve(call)
        extra: List[HornClause] = []
        if kind == "internal":
            callee = target
            self.stats["internal"] += 1
            seg, clause = self._thread_call(
                fn, call, cpred, self.entry_predicate(callee), self.exit_predicate(callee),
                callee.params, self.globals)
            extra.append(clause)
        elif kind == "api" and target.entry is not None:
            self.stats["synthesized"] += 1
            for c in target.clauses:
                if c.key not in self._extra_keys:
                    self._extra_keys.add(c.key)
                    self._extra.append(c)
            seg, clause = self._thread_call(
                fn, call, cpred, target.entry, target.exit, target.params, ())
            extra.append(clause)
        elif kind == "api":
            self.stats["summary"] += 1
            seg = self._summary_segment(fn, call, cpred, target)
        else:
            self.stats["havoc"] += 1
            logger.debug("call to %s at %s is unresolved; effect left unconstrained",
                         self.callee_label(call), call.address)
            seg = self._havoc_segment(fn, call, cpred)
        if self.monitor is not None:
            self._instrument(fn, call, cpred, seg)
        return seg, extra

    def _args(self, seg: _Segment, call: Call, n: int) -> List[Term]:
        """The first *n* arguments, over the call-site predicate's variables."""
        out: List[Term] = []
        for i in range(n):
            if i < len(call.args):
                out.append(as_value(seg.lower(call.args[i])))
            else:
                out.append(seg.fresh(f"arg{i}"))
        return out

    def _thread_call(self, fn: FunctionSummary, call: Call, cpred: Predicate,
                     entry: Predicate, exit_: Predicate, params: Sequence[str],
                     callee_globals: Sequence[str]) -> Tuple[_Segment, HornClause]:
        # CALL: call site -> callee entry
        into = _Segment((cpred.atom(),), {}, ClauseKind.CALL)
        values: Dict[str, Optional[Term]] = {}
        for p, a in zip(params, self._args(into, call, len(params))):
            values[p] = a
        for g in callee_globals:
            values[g] = CVar(g)
        call_clause = into.close(entry, values, fn.address, call.address)

        # RETURN: call site /\ callee exit -> rest of the block
        seg = _Segment((cpred.atom(), exit_.atom(prefix=CALLEE_PREFIX)), self._identity(fn),
                       ClauseKind.RETURN)
        for p, a in zip(params, self._args(seg, call, len(params))):
            seg.constraints.append(eq(CVar(CALLEE_PREFIX + inbound(p)), a))
        for g in callee_globals:
            seg.constraints.append(eq(CVar(CALLEE_PREFIX + inbound(g)), CVar(g)))
        for g in callee_globals:
            if g in seg.env:
                seg.env[g] = CVar(CALLEE_PREFIX + g)
        seg.ret = CVar(CALLEE_PREFIX + RET)
        if call.target:
            seg.env[call.target] = seg.ret
        return seg, call_clause

    def _summary_segment(self, fn: FunctionSummary, call: Call, cpred: Predicate,
                         entry: ApiEntry) -> _Segment:
        seg = _Segment((cpred.atom(),), self._identity(fn), ClauseKind.SUMMARY)
        ret = CVar(CALLEE_PREFIX + RET)
        seg.declared.add(ret.name)
        mapping: Dict[str, Term] = dict(zip(entry.params, self._args(seg, call, len(entry.params))))
        mapping[RET] = ret
        seg.constraints.append(as_condition(seg.lower(entry.pre.substitute(mapping))))
        seg.constraints.append(as_condition(seg.lower(entry.post.substitute(mapping))))
        seg.ret = ret
        if call.target:
            seg.env[call.target] = ret
        return seg

    def _havoc_segment(self, fn: FunctionSummary, call: Call, cpred: Predicate) -> _Segment:
        seg = _Segment((cpred.atom(),), self._identity(fn), ClauseKind.HAVOC)
        ret = CVar(CALLEE_PREFIX + RET)
        seg.declared.add(ret.name)
        for g in self.program_globals:
            fresh = CVar(CALLEE_PREFIX + g)
            seg.declared.add(fresh.name)
            seg.env[g] = fresh
        seg.ret = ret
        if call.target:
            seg.env[call.target] = ret
        return seg

    def _instrument(self, fn: FunctionSummary, call: Call, cpred: Predicate, seg: _Segment) -> None:
        steps = self.monitor.steps_for(self.callee_label(call))
        if not steps:
            return
        seq = seg.env.get(SEQ, CVar(SEQ))
        obj = seg.env.get(OBJ, CVar(OBJ))
        new_seq: Term = seq
        new_obj: Term = obj
        for k, step in reversed(steps):
            fires = eq(seq, CConst(k))
            if step.same_object is not None:
                if step.same_object >= len(call.args):
                    continue
                arg = as_value(seg.lower(call.args[step.same_object]))
                fires = conjunction(fires, eq(arg, obj))
            new_seq = CIte(fires, CConst(k + 1), new_seq)
            if step.capture:
                new_obj = CIte(fires, seg.ret, new_obj)
        seg.env[SEQ] = new_seq
        seg.env[OBJ] = new_obj
        if any(k == self.monitor.final - 1 for k, _ in steps):
            goal = seg.close(self.goal_predicate(), {}, fn.address, call.address,
                             extra=(eq(new_seq, CConst(self.monitor.final)),),
                             kind=ClauseKind.GOAL)
            self._goals.append(goal)
