# ghihorn/interpreter.py
"""
interpreter.py — Verdicts and the Result Interpreter
====================================================

A :class:`Verdict` is the immutable outcome of one run: ``SAT`` (the goal
is reachable, with a witness), ``UNSAT`` (unreachable, optionally with the
per-predicate invariants the solver found) or ``UNKNOWN`` (timeout or
incomplete search).

The interpreters turn a verdict into what the caller asked about:

``PathInterpreter``
    the ordered basic-block path of a witness, or "unreachable" plus the
    separating invariant;
``ApiInterpreter``
    the call sites that matched each step of an ordered API query, in
    witness order.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .clauses import PredicateKind
from .hornifier import SEQ
from .program import Address

logger = logging.getLogger(__name__)


class VerdictStatus(enum.Enum):
    SAT = "sat"
    UNSAT = "unsat"
    UNKNOWN = "unknown"

    @property
    def reachable(self) -> bool:
        return self is VerdictStatus.SAT


@dataclass(frozen=True)
class WitnessStep:
    """One program point on a witness path."""

    predicate: str
    kind: PredicateKind
    function: Optional[Address]
    address: Optional[Address]
    assignments: Tuple[Tuple[str, int], ...] = ()
    callee: Optional[str] = None

    @property
    def values(self) -> Dict[str, int]:
        return dict(self.assignments)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "predicate": self.predicate,
            "kind": self.kind.value,
            "function": str(self.function) if self.function is not None else None,
            "address": str(self.address) if self.address is not None else None,
            "assignments": dict(self.assignments),
        }
        if self.callee is not None:
            out["callee"] = self.callee
        return out

    def __str__(self) -> str:
        where = f" @ {self.address}" if self.address is not None else ""
        if not self.assignments:
            return f"{self.predicate}{where}"
        vals = ", ".join(f"{k}={v}" for k, v in self.assignments)
        return f"{self.predicate}{where} [{vals}]"


@dataclass(frozen=True)
class Verdict:
    """Result of one analysis run.  Created once, never mutated."""

    status: VerdictStatus
    query: str = ""
    witness: Tuple[WitnessStep, ...] = ()
    invariants: Tuple[Tuple[str, str], ...] = ()
    reason: str = ""
    elapsed: float = 0.0
    coverage_gaps: Tuple[Tuple[Address, str], ...] = ()
    report: Tuple[str, ...] = ()

    @property
    def reachable(self) -> bool:
        return self.status.reachable

    def path(self, kinds: Optional[Sequence[PredicateKind]] = None) -> List[str]:
        """Predicate labels along the witness, optionally filtered by kind."""
        return [s.predicate for s in self.witness if kinds is None or s.kind in kinds]

    def with_(self, **changes: Any) -> "Verdict":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "query": self.query,
            "reason": self.reason,
            "elapsed": round(self.elapsed, 3),
            "witness": [s.to_dict() for s in self.witness],
            "invariants": {name: inv for name, inv in self.invariants},
            "coverage_gaps": {str(a): r for a, r in self.coverage_gaps},
            "report": list(self.report),
        }

    @classmethod
    def unknown(cls, reason: str, query: str = "", elapsed: float = 0.0) -> "Verdict":
        return cls(VerdictStatus.UNKNOWN, query=query, reason=reason, elapsed=elapsed)


class _Pending:
    """Marker returned by ``get_verdict`` while a run is still active."""

    _instance: Optional["_Pending"] = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "PENDING"


PENDING = _Pending()


# ═══════════════════════════════════════════════════════════════════
#  INTERPRETERS
# ═══════════════════════════════════════════════════════════════════

class ResultInterpreter:
    """Renders a verdict as report lines."""

    def render(self, verdict: Verdict) -> List[str]:
        if verdict.status is VerdictStatus.SAT:
            lines = self.render_witness(verdict)
        elif verdict.status is VerdictStatus.UNSAT:
            lines = self.render_unreachable(verdict)
        else:
            lines = [f"unknown: {verdict.reason or 'solver gave no answer'}"]
        for addr, reason in verdict.coverage_gaps:
            lines.append(f"note: {addr} was not decompiled ({reason}); its effect was left unconstrained")
        return lines

    def interpret(self, verdict: Verdict) -> Verdict:
        return verdict.with_(report=tuple(self.render(verdict)))

    def render_witness(self, verdict: Verdict) -> List[str]:
        return ["reachable"] + [f"  {s}" for s in verdict.witness]

    def render_unreachable(self, verdict: Verdict) -> List[str]:
        lines = ["unreachable"]
        for name, inv in verdict.invariants:
            lines.append(f"  {name}: {inv}")
        return lines


class PathInterpreter(ResultInterpreter):
    """Witness as an ordered list of basic-block addresses."""

    @staticmethod
    def block_path(verdict: Verdict) -> List[Address]:
        out: List[Address] = []
        for s in verdict.witness:
            if s.kind is PredicateKind.BLOCK and s.address is not None:
                out.append(s.address)
        return out

    def render_witness(self, verdict: Verdict) -> List[str]:
        lines = ["reachable; feasible path:"]
        for s in verdict.witness:
            lines.append(f"  {s}")
        blocks = self.block_path(verdict)
        if blocks:
            lines.append("blocks: " + " -> ".join(str(a) for a in blocks))
        return lines

    def render_unreachable(self, verdict: Verdict) -> List[str]:
        lines = ["unreachable"]
        if verdict.invariants:
            lines.append("separating invariant:")
            lines.extend(f"  {name}: {inv}" for name, inv in verdict.invariants)
        return lines


class ApiInterpreter(ResultInterpreter):
    """Matched call sites of an ordered API query."""

    def __init__(self, steps: Sequence[Any]):
        self.steps = list(steps)

    def matches(self, verdict: Verdict) -> List[WitnessStep]:
        """Call sites that advanced the monitor, in witness order.

        A call step fires query step ``k`` when ``__api_seq`` is ``k`` at
        the call and ``k + 1`` at the next witness step.  The last step
        has no successor: the goal clause only holds when it fired.
        Without replayed values, sites are matched by callee name alone.
        """
        witness = verdict.witness
        if not any(SEQ in s.values for s in witness):
            return self._by_name(witness)
        out: List[WitnessStep] = []
        for i, s in enumerate(witness):
            if s.kind is not PredicateKind.CALL or not s.callee:
                continue
            k = s.values.get(SEQ)
            if k is None or not 0 <= k < len(self.steps) or not self.steps[k].matches(s.callee):
                continue
            if i + 1 < len(witness):
                fired = witness[i + 1].values.get(SEQ) == k + 1
            else:
                fired = k == len(self.steps) - 1
            if fired:
                out.append(s)
        return out

    def _by_name(self, witness: Sequence[WitnessStep]) -> List[WitnessStep]:
        out: List[WitnessStep] = []
        k = 0
        for s in witness:
            if k >= len(self.steps):
                break
            if s.kind is PredicateKind.CALL and s.callee and self.steps[k].matches(s.callee):
                out.append(s)
                k += 1
        return out

    def render_witness(self, verdict: Verdict) -> List[str]:
        lines = ["API sequence reachable:"]
        for step, site in zip(self.steps, self.matches(verdict)):
            lines.append(f"  {step}: {site.callee} called from {site.predicate.split('.')[0]} at {site.address}")
        return lines

