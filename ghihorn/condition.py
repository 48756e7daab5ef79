# ghihorn/condition.py
"""
condition.py — Infix path-condition language
============================================

Users state path conditions in C-like infix notation::

    ret == 7 && (x > 0 || !flag)
    (len & 0xff) != 0 and not done

Precedence, lowest first: ``||``/``or``, ``&&``/``and``, ``!``/``not``,
relations, ``|``, ``^``, ``&``, shifts, ``+ -``, ``* / %``, unary ``- ~``.
A bare integer expression is true when non-zero.

Depends on:
    - parsimonious (PEG parser)
"""

from __future__ import annotations

import logging
from typing import Iterable, List, Mapping, Optional, Tuple

from parsimonious.exceptions import ParseError, VisitationError
from parsimonious.grammar import Grammar
from parsimonious.nodes import NodeVisitor

from .errors import ConditionSyntaxError, QueryError
from .terms import (
    ArithOp,
    CArith,
    CConst,
    CNot,
    CRelation,
    CUnaryOp,
    CVar,
    RelOp,
    Term,
    as_condition,
    as_value,
    conjunction,
    disjunction,
)

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════
#  PART 1 — GRAMMAR
# ═══════════════════════════════════════════════════════════════════

CONDITION_GRAMMAR = Grammar(r'''
    condition         = ws or_expr ws

    or_expr           = and_expr or_tail*
    or_tail           = ws or_op ws and_expr
    or_op             = "||" / ~r"or\b"

    and_expr          = not_expr and_tail*
    and_tail          = ws and_op ws not_expr
    and_op            = "&&" / ~r"and\b"

    not_expr          = negation / relation_or_value
    negation          = not_op ws not_expr
    not_op            = ~r"!(?!=)" / ~r"not\b"

    relation_or_value = relation / bitor_expr
    relation          = bitor_expr ws rel_op ws bitor_expr
    rel_op            = "==" / "!=" / "<=" / ">=" / "<" / ">"

    bitor_expr        = bitxor_expr bitor_tail*
    bitor_tail        = ws bitor_op ws bitxor_expr
    bitor_op          = ~r"\|(?!\|)"

    bitxor_expr       = bitand_expr bitxor_tail*
    bitxor_tail       = ws bitxor_op ws bitand_expr
    bitxor_op         = "^"

    bitand_expr       = shift_expr bitand_tail*
    bitand_tail       = ws bitand_op ws shift_expr
    bitand_op         = ~r"&(?!&)"

    shift_expr        = additive shift_tail*
    shift_tail        = ws shift_op ws additive
    shift_op          = "<<" / ">>"

    additive          = term add_tail*
    add_tail          = ws add_op ws term
    add_op            = "+" / "-"

    term              = unary mul_tail*
    mul_tail          = ws mul_op ws unary
    mul_op            = "*" / "/" / "%"

    unary             = neg / compl / primary
    neg               = "-" ws unary
    compl             = "~" ws unary

    primary           = number / bool_lit / paren / identifier
    paren             = "(" ws or_expr ws ")"
    bool_lit          = ~r"(true|false)\b"
    number            = ~r"0[xX][0-9a-fA-F]+|[0-9]+"
    identifier        = ~r"[A-Za-z_][A-Za-z0-9_.$@]*"
    ws                = ~r"\s*"
''')

_REL_OPS = {op.value: op for op in RelOp}
_ARITH_OPS = {op.value: op for op in ArithOp}


# ═══════════════════════════════════════════════════════════════════
#  PART 2 — PARSE TREE → TERM
# ═══════════════════════════════════════════════════════════════════

def _many(visited) -> List:
    """Children of a ``*`` repetition (a bare Node when nothing matched)."""
    return visited if isinstance(visited, list) else []


class ConditionBuilder(NodeVisitor):
    """Transforms a parsimonious parse tree into a :class:`Term`."""

    grammar = CONDITION_GRAMMAR

    def generic_visit(self, node, visited_children):
        return visited_children or node

    def visit_condition(self, node, visited_children):
        _, expr, _ = visited_children
        return as_condition(expr)

    # -- Boolean layer --------------------------------------------------

    def visit_or_expr(self, node, visited_children):
        first, tails = visited_children
        rest = _many(tails)
        return disjunction(first, *rest) if rest else first

    def visit_or_tail(self, node, visited_children):
        return visited_children[3]

    def visit_and_expr(self, node, visited_children):
        first, tails = visited_children
        rest = _many(tails)
        return conjunction(first, *rest) if rest else first

    def visit_and_tail(self, node, visited_children):
        return visited_children[3]

    def visit_not_expr(self, node, visited_children):
        return visited_children[0]

    def visit_negation(self, node, visited_children):
        _, _, inner = visited_children
        return CNot(as_condition(inner))

    def visit_relation_or_value(self, node, visited_children):
        return visited_children[0]

    def visit_relation(self, node, visited_children):
        lhs, _, op, _, rhs = visited_children
        return CRelation(_REL_OPS[op], as_value(lhs), as_value(rhs))

    def visit_rel_op(self, node, visited_children):
        return node.text

    # -- arithmetic layer -----------------------------------------------

    def _fold(self, visited_children) -> Term:
        first, tails = visited_children
        result = first
        for op, rhs in _many(tails):
            result = CArith(_ARITH_OPS[op], as_value(result), as_value(rhs))
        return result

    def _tail(self, node, visited_children) -> Tuple[str, Term]:
        return node.children[1].text, visited_children[3]

    def visit_bitor_expr(self, node, visited_children):
        return self._fold(visited_children)

    def visit_bitxor_expr(self, node, visited_children):
        return self._fold(visited_children)

    def visit_bitand_expr(self, node, visited_children):
        return self._fold(visited_children)

    def visit_shift_expr(self, node, visited_children):
        return self._fold(visited_children)

    def visit_additive(self, node, visited_children):
        return self._fold(visited_children)

    def visit_term(self, node, visited_children):
        return self._fold(visited_children)

    def visit_bitor_tail(self, node, visited_children):
        return self._tail(node, visited_children)

    def visit_bitxor_tail(self, node, visited_children):
        return self._tail(node, visited_children)

    def visit_bitand_tail(self, node, visited_children):
        return self._tail(node, visited_children)

    def visit_shift_tail(self, node, visited_children):
        return self._tail(node, visited_children)

    def visit_add_tail(self, node, visited_children):
        return self._tail(node, visited_children)

    def visit_mul_tail(self, node, visited_children):
        return self._tail(node, visited_children)

    def visit_unary(self, node, visited_children):
        return visited_children[0]

    def visit_neg(self, node, visited_children):
        _, _, operand = visited_children
        if isinstance(operand, CConst) and not isinstance(operand.value, bool):
            return CConst(-operand.value)
        return CUnaryOp("-", as_value(operand))

    def visit_compl(self, node, visited_children):
        _, _, operand = visited_children
        return CUnaryOp("~", as_value(operand))

    # -- atoms ----------------------------------------------------------

    def visit_primary(self, node, visited_children):
        return visited_children[0]

    def visit_paren(self, node, visited_children):
        return visited_children[2]

    def visit_bool_lit(self, node, visited_children):
        return CConst(node.text == "true")

    def visit_number(self, node, visited_children):
        text = node.text
        if text[:2].lower() == "0x":
            return CConst(int(text, 16))
        return CConst(int(text, 10))

    def visit_identifier(self, node, visited_children):
        return CVar(node.text)


# ═══════════════════════════════════════════════════════════════════
#  PART 3 — PUBLIC API
# ═══════════════════════════════════════════════════════════════════

def parse_condition(text: str) -> Term:
    """Parse *text* into a condition term.

    Raises
    ------
    ConditionSyntaxError
        When the text is not a well-formed condition.
    """
    try:
        tree = CONDITION_GRAMMAR.parse(text)
        return ConditionBuilder().visit(tree)
    except ParseError as e:
        raise ConditionSyntaxError(text, f"syntax error at column {e.pos + 1}") from e
    except VisitationError as e:
        raise ConditionSyntaxError(text, str(e).splitlines()[0]) from e


def resolve_names(
    cond: Term,
    allowed: Iterable[str],
    aliases: Optional[Mapping[str, str]] = None,
) -> Term:
    """Rewrite user-facing names to predicate parameters.

    Every identifier must be in *allowed* or map to it through *aliases*;
    anything else is a :class:`QueryError`.
    """
    allowed = set(allowed)
    aliases = aliases or {}
    mapping = {}
    unknown = []
    for name in sorted(cond.free_vars()):
        if name in allowed:
            continue
        target = aliases.get(name)
        if target is not None and target in allowed:
            mapping[name] = target
        else:
            unknown.append(name)
    if unknown:
        raise QueryError(
            f"condition refers to unknown variable(s): {', '.join(unknown)}",
            known=", ".join(sorted(allowed)),
        )
    return cond.rename(mapping) if mapping else cond
