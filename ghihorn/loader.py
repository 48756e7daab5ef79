# ghihorn/loader.py
"""
loader.py — S-expression front end for programs and API libraries
==================================================================

The headless driver and the test-suite describe decompiled programs as
S-expressions, read with the ``sexpdata`` library::

    (program demo
      (global counter 0)
      (import 0x5000 malloc)
      (export main)
      (function main 0x1000 (params argc)
        (block 0x1000
          (assign x (+ argc 1))
          (call 0x1004 y helper x)
          (branch (> y 3) 0x1010 0x1020))
        (block 0x1010 (return y))
        (block 0x1020 (return 0)))
      (broken 0x3000 "unsupported instruction"))

Statements:   ``(assign V E)``, ``(havoc V)``, ``(assume C)``,
              ``(call ADDR DST CALLEE ARG...)`` (``DST`` may be ``_``)
Terminators:  ``(jump A)``, ``(branch C T F)``, ``(return [E])``.
              A block without one falls through to the next block, or
              returns when it is the last.
Expressions:  prefix forms over ``+ - * / % & | ^ << >> == != < <= > >=
              and or not ! ~ ite =>``; integers (``0x`` hex allowed),
              ``true``/``false`` and variable names.

Depends on:
    - sexpdata          (S-expression parsing)
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import sexpdata

from .errors import ProgramFormatError
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
    Statement,
    Terminator,
)
from .terms import (
    ArithOp,
    CArith,
    CConst,
    CIte,
    CImplies,
    CNot,
    CRelation,
    CUnaryOp,
    CVar,
    RelOp,
    Term,
    as_condition,
    conjunction,
    disjunction,
)

logger = logging.getLogger(__name__)

_HEX = re.compile(r"^-?0[xX][0-9a-fA-F]+$")

_ARITH_OPS = {op.value: op for op in ArithOp}
_REL_OPS = {op.value: op for op in RelOp}
_REL_OPS["="] = RelOp.EQ


# ===================================================================
#  PART 1 — S-EXPRESSION READING
# ===================================================================

def read_forms(text: str) -> List[Any]:
    """Parse every top-level S-expression in *text*.

    ``sexpdata`` reads one form at a time, so the text is wrapped in an
    outer list which is then stripped.
    """
    try:
        parsed = sexpdata.loads(f"({text}\n)", nil=None, true=None)
    except Exception as e:
        raise ProgramFormatError(f"failed to parse S-expression: {e}") from e
    return [_normalise(item) for item in parsed]


def _normalise(obj: Any) -> Any:
    """Recursively turn sexpdata output into lists, ints and strings."""
    if isinstance(obj, list):
        return [_normalise(x) for x in obj]
    if isinstance(obj, bool):
        return obj
    if isinstance(obj, int):
        return obj
    if isinstance(obj, float):
        if obj.is_integer():
            return int(obj)
        raise ProgramFormatError(f"floating-point literal {obj} is not supported")
    if isinstance(obj, sexpdata.Symbol):
        text = str(obj)
        if _HEX.match(text):
            return int(text, 16)
        return text
    if isinstance(obj, str):
        return obj
    # Quoted / Bracket wrappers
    inner = getattr(obj, "_val", None)
    if inner is not None:
        return _normalise(inner)
    return str(obj)


def _expect_list(form: Any, what: str) -> List[Any]:
    if not isinstance(form, list) or not form:
        raise ProgramFormatError(f"expected a ({what} ...) form, got {form!r}")
    return form


def parse_address(raw: Any) -> Address:
    try:
        return Address.parse(raw)
    except (TypeError, ValueError) as e:
        raise ProgramFormatError(f"not an address: {raw!r}") from e


# ===================================================================
#  PART 2 — EXPRESSIONS
# ===================================================================

def build_term(form: Any) -> Term:
    """Build a :class:`Term` from a normalised S-expression."""
    if isinstance(form, bool):
        return CConst(form)
    if isinstance(form, int):
        return CConst(form)
    if isinstance(form, str):
        if form == "true":
            return CConst(True)
        if form == "false":
            return CConst(False)
        return CVar(form)
    op, *args = _expect_list(form, "expression")
    if not isinstance(op, str):
        raise ProgramFormatError(f"operator must be a symbol: {form!r}")
    terms = [build_term(a) for a in args]

    if op in ("and", "&&"):
        return conjunction(*terms)
    if op in ("or", "||"):
        return disjunction(*terms)
    if op in ("not", "!") and len(terms) == 1:
        if terms[0].is_boolean:
            return CNot(terms[0])
        return CUnaryOp("!", terms[0])
    if op == "~" and len(terms) == 1:
        return CUnaryOp("~", terms[0])
    if op == "-" and len(terms) == 1:
        return CUnaryOp("-", terms[0])
    if op == "ite" and len(terms) == 3:
        return CIte(terms[0], terms[1], terms[2])
    if op == "=>" and len(terms) == 2:
        return CImplies(terms[0], terms[1])
    if op in _REL_OPS and len(terms) == 2:
        return CRelation(_REL_OPS[op], terms[0], terms[1])
    if op in _ARITH_OPS and len(terms) >= 2:
        result = terms[0]
        for t in terms[1:]:
            result = CArith(_ARITH_OPS[op], result, t)
        return result
    raise ProgramFormatError(f"unknown expression form {form!r}")


def build_condition(form: Any) -> Term:
    return as_condition(build_term(form))


# ===================================================================
#  PART 3 — PROGRAMS
# ===================================================================

_TERMINATORS = ("jump", "branch", "return")


def _build_statement(form: List[Any]) -> Union[Statement, Terminator]:
    tag = form[0]
    rest = form[1:]
    try:
        if tag == "assign":
            name, expr = rest
            return Assign(str(name), build_term(expr))
        if tag == "havoc":
            (name,) = rest
            return Havoc(str(name))
        if tag == "assume":
            (cond,) = rest
            return Assume(build_condition(cond))
        if tag == "call":
            addr, dst, callee, *args = rest
            target = None if dst in ("_", "nil") else str(dst)
            kwargs: Dict[str, Any] = {}
            if isinstance(callee, int):
                kwargs["callee"] = Address(callee)
            else:
                kwargs["name"] = str(callee)
            return Call(parse_address(addr), args=tuple(build_term(a) for a in args),
                        target=target, **kwargs)
        if tag == "jump":
            (dest,) = rest
            return Jump(parse_address(dest))
        if tag == "branch":
            cond, t, f = rest
            return Branch(build_condition(cond), parse_address(t), parse_address(f))
        if tag == "return":
            if not rest:
                return Return()
            (value,) = rest
            return Return(build_term(value))
    except ValueError as e:
        raise ProgramFormatError(f"malformed {tag} form {form!r}") from e
    raise ProgramFormatError(f"unknown statement {tag!r}")


def _build_function(form: List[Any]) -> FunctionSummary:
    if len(form) < 3:
        raise ProgramFormatError(f"function needs a name and an address: {form!r}")
    name = str(form[1])
    address = parse_address(form[2])
    params: Tuple[str, ...] = ()
    raw_blocks: List[Tuple[Address, List[Any]]] = []
    for item in form[3:]:
        item = _expect_list(item, "params|block")
        if item[0] == "params":
            params = tuple(str(p) for p in item[1:])
        elif item[0] == "block":
            if len(item) < 2:
                raise ProgramFormatError(f"block without address in {name}")
            raw_blocks.append((parse_address(item[1]), item[2:]))
        else:
            raise ProgramFormatError(f"unexpected {item[0]!r} in function {name}")
    if not raw_blocks:
        raise ProgramFormatError(f"function {name} has no blocks")

    raw_blocks.sort(key=lambda b: b[0])
    blocks: List[BasicBlock] = []
    for idx, (baddr, body) in enumerate(raw_blocks):
        statements: List[Statement] = []
        terminator: Optional[Terminator] = None
        for stmt_form in body:
            stmt = _build_statement(_expect_list(stmt_form, "statement"))
            if terminator is not None:
                raise ProgramFormatError(
                    f"statement after terminator in block {baddr} of {name}")
            if isinstance(stmt, Terminator):
                terminator = stmt
            else:
                statements.append(stmt)
        if terminator is None:
            if idx + 1 < len(raw_blocks):
                terminator = Jump(raw_blocks[idx + 1][0])
            else:
                terminator = Return()
        blocks.append(BasicBlock(baddr, tuple(statements), terminator))
    return FunctionSummary(address, name, params, tuple(blocks))


def _link_calls(image: ProgramImage) -> None:
    """Give named calls to local functions their callee address."""
    by_name = {fn.name: fn.address for fn in image.functions.values()}
    for addr, fn in list(image.functions.items()):
        changed = False
        new_blocks = []
        for blk in fn.blocks:
            stmts = []
            for stmt in blk.statements:
                if isinstance(stmt, Call) and stmt.callee is None and stmt.name in by_name:
                    stmt = Call(stmt.address, callee=by_name[stmt.name], name=stmt.name,
                                args=stmt.args, target=stmt.target)
                    changed = True
                elif isinstance(stmt, Call) and stmt.callee is not None and stmt.name is None:
                    label = image.imports.get(stmt.callee)
                    if label is None and stmt.callee in image.functions:
                        label = image.functions[stmt.callee].name
                    if label is not None:
                        stmt = Call(stmt.address, callee=stmt.callee, name=label,
                                    args=stmt.args, target=stmt.target)
                        changed = True
                stmts.append(stmt)
            new_blocks.append(BasicBlock(blk.address, tuple(stmts), blk.terminator))
        if changed:
            image.functions[addr] = FunctionSummary(fn.address, fn.name, fn.params,
                                                    tuple(new_blocks))


def build_program(form: Any) -> ProgramImage:
    form = _expect_list(form, "program")
    if form[0] != "program":
        raise ProgramFormatError(f"expected (program ...), got ({form[0]} ...)")
    name = str(form[1]) if len(form) > 1 and isinstance(form[1], str) else "program"
    image = ProgramImage(name)
    exports: List[Any] = []
    for item in form[2:]:
        item = _expect_list(item, "declaration")
        tag = item[0]
        if tag == "function":
            fn = _build_function(item)
            if fn.address in image.functions:
                raise ProgramFormatError(f"duplicate function address {fn.address}")
            image.functions[fn.address] = fn
        elif tag == "global":
            if len(item) not in (2, 3):
                raise ProgramFormatError(f"malformed global {item!r}")
            init = item[2] if len(item) == 3 else None
            if init is not None and not isinstance(init, int):
                raise ProgramFormatError(f"global initialiser must be an integer: {item!r}")
            image.globals[str(item[1])] = init
        elif tag == "import":
            if len(item) != 3:
                raise ProgramFormatError(f"malformed import {item!r}")
            image.imports[parse_address(item[1])] = str(item[2])
        elif tag == "export":
            exports.extend(item[1:])
        elif tag == "broken":
            if len(item) < 2:
                raise ProgramFormatError(f"malformed broken entry {item!r}")
            reason = str(item[-1]) if len(item) > 2 else "decompilation failed"
            addr = parse_address(item[1])
            image.failures[addr] = reason
        else:
            raise ProgramFormatError(f"unknown declaration {tag!r}")
    _link_calls(image)
    for ref in exports:
        try:
            image.exports.append(image.resolve(ref))
        except ValueError as e:
            raise ProgramFormatError(f"unknown export {ref!r}") from e
    logger.debug("loaded program %s: %d functions, %d imports, %d globals",
                 image.name, len(image.functions), len(image.imports), len(image.globals))
    return image


def load_program(text: str) -> ProgramImage:
    """Parse program text holding exactly one ``(program ...)`` form."""
    forms = read_forms(text)
    if len(forms) != 1:
        raise ProgramFormatError(f"expected one (program ...) form, found {len(forms)}")
    return build_program(forms[0])


def load_program_file(path: Union[str, Path]) -> ProgramImage:
    p = Path(path).expanduser()
    try:
        text = p.read_text(encoding="utf-8")
    except OSError as e:
        raise ProgramFormatError(f"cannot read program file {p}: {e}") from e
    return load_program(text)

