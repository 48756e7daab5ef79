# ghihorn/program.py
"""
ghihorn.program
===============

The decompiled-program model the analysis consumes.

The host disassembler/decompiler is an external collaborator; whatever it
is, it must hand GhiHorn one :class:`FunctionSummary` per function:
an entry address, the basic blocks of the control-flow graph, and the
typed intermediate statements of every block.

Public API
----------
    Address          - totally-ordered location in the target binary
    Assign, Havoc, Assume, Call          - straight-line statements
    Jump, Branch, Return                 - block terminators
    BasicBlock       - statements plus one terminator
    FunctionSummary  - a decompiled function
    ProgramImage     - functions, globals, imports and exported entry points

Statements carry :mod:`ghihorn.terms` expressions over the function's
integer variables.  Anything the decompiler cannot express (memory loads,
floating point, unsupported instructions) should be emitted as
:class:`Havoc`, which the Hornifier translates to an unconstrained value.
"""

from __future__ import annotations

import functools
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

from .terms import Term


@functools.total_ordering
@dataclass(frozen=True)
class Address:
    """An opaque, totally-ordered program location."""

    offset: int

    @classmethod
    def parse(cls, raw: Union["Address", int, str]) -> "Address":
        if isinstance(raw, Address):
            return raw
        if isinstance(raw, bool):
            raise ValueError(f"not an address: {raw!r}")
        if isinstance(raw, int):
            return cls(raw)
        text = str(raw).strip().lower()
        if text.startswith("0x"):
            return cls(int(text, 16))
        return cls(int(text, 10))

    def __lt__(self, other: "Address") -> bool:
        if not isinstance(other, Address):
            return NotImplemented
        return self.offset < other.offset

    def __str__(self) -> str:
        return f"{self.offset:#x}"

    def __repr__(self) -> str:
        return f"Address({self.offset:#x})"


# ---------------------------------------------------------------------------
# Statements
# ---------------------------------------------------------------------------


class Statement:
    """Base class of straight-line statements."""

    address: Optional[Address]

    def used_vars(self) -> frozenset:
        return frozenset()

    def defined_vars(self) -> frozenset:
        return frozenset()


@dataclass(frozen=True)
class Assign(Statement):
    """``target = value``"""

    target: str
    value: Term
    address: Optional[Address] = None

    def used_vars(self):
        return self.value.free_vars()

    def defined_vars(self):
        return frozenset({self.target})

    def __str__(self) -> str:
        return f"{self.target} = {self.value.pretty()}"


@dataclass(frozen=True)
class Havoc(Statement):
    """``target`` receives a value the decompiler cannot describe."""

    target: str
    address: Optional[Address] = None

    def defined_vars(self):
        return frozenset({self.target})

    def __str__(self) -> str:
        return f"{self.target} = *"


@dataclass(frozen=True)
class Assume(Statement):
    """Execution continues only when ``cond`` holds."""

    cond: Term
    address: Optional[Address] = None

    def used_vars(self):
        return self.cond.free_vars()

    def __str__(self) -> str:
        return f"assume {self.cond.pretty()}"


@dataclass(frozen=True)
class Call(Statement):
    """A call site.

    ``callee`` is the target address when the decompiler resolved one;
    ``name`` is the symbol (import or function name) when known.  The
    result, if used, is stored in ``target``.
    """

    address: Address
    callee: Optional[Address] = None
    name: Optional[str] = None
    args: Tuple[Term, ...] = ()
    target: Optional[str] = None

    def used_vars(self):
        out: frozenset = frozenset()
        for a in self.args:
            out = out | a.free_vars()
        return out

    def defined_vars(self):
        return frozenset({self.target}) if self.target else frozenset()

    @property
    def label(self) -> str:
        if self.name:
            return self.name
        if self.callee is not None:
            return f"fun_{self.callee.offset:x}"
        return "indirect"

    def __str__(self) -> str:
        args = ", ".join(a.pretty() for a in self.args)
        lhs = f"{self.target} = " if self.target else ""
        return f"{lhs}{self.label}({args})"


# ---------------------------------------------------------------------------
# Terminators
# ---------------------------------------------------------------------------


class Terminator:
    """Base class of block terminators."""

    address: Optional[Address]

    def successors(self) -> Tuple[Address, ...]:
        return ()

    def used_vars(self) -> frozenset:
        return frozenset()


@dataclass(frozen=True)
class Jump(Terminator):
    dest: Address
    address: Optional[Address] = None

    def successors(self):
        return (self.dest,)

    def __str__(self) -> str:
        return f"goto {self.dest}"


@dataclass(frozen=True)
class Branch(Terminator):
    cond: Term
    on_true: Address
    on_false: Address
    address: Optional[Address] = None

    def successors(self):
        return (self.on_true, self.on_false)

    def used_vars(self):
        return self.cond.free_vars()

    def __str__(self) -> str:
        return f"if {self.cond.pretty()} goto {self.on_true} else {self.on_false}"


@dataclass(frozen=True)
class Return(Terminator):
    value: Optional[Term] = None
    address: Optional[Address] = None

    def used_vars(self):
        return self.value.free_vars() if self.value is not None else frozenset()

    def __str__(self) -> str:
        return "return" if self.value is None else f"return {self.value.pretty()}"


# ---------------------------------------------------------------------------
# Blocks and functions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BasicBlock:
    """A straight-line statement sequence ending in one terminator."""

    address: Address
    statements: Tuple[Statement, ...]
    terminator: Terminator

    @property
    def successors(self) -> Tuple[Address, ...]:
        return self.terminator.successors()

    def calls(self) -> List[Call]:
        return [s for s in self.statements if isinstance(s, Call)]

    def label(self) -> str:
        return f"bb_{self.address.offset:x}"


@dataclass(frozen=True)
class FunctionSummary:
    """A decompiled function: entry address, CFG and IR.

    ``blocks`` is kept sorted by address so every traversal over it is
    deterministic.
    """

    address: Address
    name: str
    params: Tuple[str, ...]
    blocks: Tuple[BasicBlock, ...]
    _index: Dict[Address, BasicBlock] = field(
        default_factory=dict, init=False, repr=False, compare=False, hash=False)

    def __post_init__(self) -> None:
        ordered = tuple(sorted(self.blocks, key=lambda b: b.address))
        object.__setattr__(self, "blocks", ordered)
        object.__setattr__(self, "_index", {b.address: b for b in ordered})

    @property
    def entry_block(self) -> BasicBlock:
        blk = self._index.get(self.address)
        return blk if blk is not None else self.blocks[0]

    def block(self, address: Address) -> Optional[BasicBlock]:
        return self._index.get(address)

    def block_containing(self, address: Address) -> Optional[BasicBlock]:
        """Block that starts at, or contains a statement at, *address*."""
        if address in self._index:
            return self._index[address]
        for blk in self.blocks:
            for stmt in blk.statements:
                if stmt.address == address:
                    return blk
            if blk.terminator.address == address:
                return blk
        return None

    def call_sites(self) -> Iterator[Tuple[BasicBlock, Call]]:
        for blk in self.blocks:
            for call in blk.calls():
                yield blk, call

    def variables(self, exclude: Sequence[str] = ()) -> Tuple[str, ...]:
        """Parameters in declaration order, then every other variable sorted."""
        seen = set(self.params)
        others = set()
        for blk in self.blocks:
            for stmt in blk.statements:
                others |= stmt.used_vars() | stmt.defined_vars()
            others |= blk.terminator.used_vars()
        extra = sorted(v for v in others - seen if v not in exclude)
        return tuple(p for p in self.params if p not in exclude) + tuple(extra)

    def validate(self) -> List[str]:
        """Return a list of structural problems (empty when well-formed)."""
        problems: List[str] = []
        if not self.blocks:
            return [f"{self.name} has no basic blocks"]
        for blk in self.blocks:
            for succ in blk.successors:
                if succ not in self._index:
                    problems.append(
                        f"block {blk.address} jumps to unknown block {succ}")
        seen_calls = set()
        for _, call in self.call_sites():
            if call.address in seen_calls:
                problems.append(f"duplicate call site address {call.address}")
            seen_calls.add(call.address)
        return problems

    def __str__(self) -> str:
        lines = [f"function {self.name}@{self.address}({', '.join(self.params)})"]
        for blk in self.blocks:
            lines.append(f"  {blk.label()}:")
            lines.extend(f"    {s}" for s in blk.statements)
            lines.append(f"    {blk.terminator}")
        return "\n".join(lines)


@dataclass
class ProgramImage:
    """What the host knows about the target binary.

    ``functions`` maps entry addresses to decompiled bodies; ``failures``
    maps addresses the decompiler chokes on to the reason it gives.
    """

    name: str
    functions: Dict[Address, FunctionSummary] = field(default_factory=dict)
    globals: Dict[str, Optional[int]] = field(default_factory=dict)
    imports: Dict[Address, str] = field(default_factory=dict)
    exports: List[Address] = field(default_factory=list)
    failures: Dict[Address, str] = field(default_factory=dict)

    def function_named(self, name: str) -> Optional[FunctionSummary]:
        for fn in self.functions.values():
            if fn.name == name:
                return fn
        return None

    def resolve(self, ref: Union[Address, int, str]) -> Address:
        """Turn a function name or address literal into an ``Address``."""
        if isinstance(ref, str):
            fn = self.function_named(ref)
            if fn is not None:
                return fn.address
        return Address.parse(ref)

    def name_of(self, address: Address) -> str:
        fn = self.functions.get(address)
        if fn is not None:
            return fn.name
        if address in self.imports:
            return self.imports[address]
        return f"fun_{address.offset:x}"

    def entry_points(self) -> List[Address]:
        """Exported entry points; a function named ``entry`` always comes first."""
        entries: List[Address] = []
        for addr in self.exports:
            fn = self.functions.get(addr)
            if fn is None:
                continue
            if fn.name == "entry":
                entries.insert(0, addr)
            else:
                entries.append(addr)
        if not entries:
            for name in ("entry", "main"):
                fn = self.function_named(name)
                if fn is not None:
                    entries.append(fn.address)
                    break
        return entries

    def global_names(self) -> Tuple[str, ...]:
        return tuple(self.globals)

    def initial_values(self) -> Mapping[str, Optional[int]]:
        return dict(self.globals)
