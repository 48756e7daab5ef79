# ghihorn/apidb.py
"""
apidb.py — API Semantics Database
=================================

Maps the identity of an imported or library function to a logical
summary of its effect, used by the Hornifier at call sites that have no
decompiled body in the working set.

Two backing strategies share the :class:`ApiDatabase` interface:

``BuiltinApiDatabase``
    hand-authored closed-form summaries (``ghihorn/data/apis.sexp``),
    a precondition over the parameters and a postcondition over the
    parameters and ``ret``.
``SynthesizedApiDatabase``
    summaries derived by hornifying the callee's own body, taken from a
    library image through a Decompilation Coordinator.  Entries are
    memoized per identity; concurrent requests for one identity publish
    exactly one entry.

:class:`GhiHornApiDatabase` composes the two.

Summary file format::

    (api malloc (params size) (post (>= ret 0)))
    (api ExitProcess (convention stdcall) (params code) (post false))
"""

from __future__ import annotations

import logging
import re
import threading
from abc import ABC, abstractmethod
from concurrent.futures import Future
from dataclasses import dataclass, field
from importlib import resources
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .clauses import HornClause, Predicate
from .decompiler import CancellationToken, DecompilationCoordinator, ImageDecompiler, SimpleDecompiler
from .errors import DecompileError, ProgramFormatError
from .loader import build_condition, read_forms
from .program import FunctionSummary, ProgramImage
from .terms import CTrue, Term

logger = logging.getLogger(__name__)

_STDCALL = re.compile(r"^(?P<name>.+)@(?P<bytes>\d+)$")

CONVENTIONS = ("cdecl", "stdcall", "fastcall", "thiscall", "unknown")


@dataclass(frozen=True)
class ApiIdentity:
    """Demangled name plus calling convention."""

    name: str
    convention: str = "cdecl"

    @classmethod
    def from_symbol(cls, symbol: str) -> "ApiIdentity":
        """Normalise an import symbol.

        ``__imp_`` thunk prefixes and one leading underscore are dropped;
        an ``@N`` suffix marks a stdcall symbol.
        """
        name = symbol.strip()
        if name.startswith("__imp_"):
            name = name[len("__imp_"):]
        convention = "cdecl"
        m = _STDCALL.match(name)
        if m:
            name = m.group("name")
            convention = "stdcall"
        if name.startswith("_") and not name.startswith("__"):
            name = name[1:]
        return cls(name, convention)

    def __str__(self) -> str:
        if self.convention == "cdecl":
            return self.name
        return f"{self.name}/{self.convention}"


@dataclass(frozen=True)
class ApiEntry:
    """Immutable logical summary of one API.

    Closed-form entries carry ``pre`` and ``post``; ``post`` may mention
    the parameters and ``ret``.  Synthesized entries instead carry the
    Horn clauses of the callee body and its ``entry``/``exit`` predicates,
    which the Hornifier threads through like an internal call.  An
    ``unconstrained`` entry stands for "any effect".
    """

    identity: ApiIdentity
    params: Tuple[str, ...] = ()
    pre: Term = field(default_factory=CTrue)
    post: Term = field(default_factory=CTrue)
    clauses: Tuple[HornClause, ...] = ()
    entry: Optional[Predicate] = None
    exit: Optional[Predicate] = None
    origin: str = "builtin"

    @property
    def closed_form(self) -> bool:
        return self.entry is None and not self.unconstrained

    @property
    def unconstrained(self) -> bool:
        return self.origin == "unconstrained"

    @classmethod
    def havoc(cls, identity: ApiIdentity) -> "ApiEntry":
        return cls(identity, origin="unconstrained")


class ApiResolver(ABC):
    """Read side used by the Hornifier."""

    @abstractmethod
    def lookup(self, identity: ApiIdentity) -> Optional[ApiEntry]:
        """Return the cached entry for *identity*; never decompiles."""


class ApiDatabase(ApiResolver):
    """``lookup`` / ``synthesize`` / ``release``."""

    def can_synthesize(self, identity: ApiIdentity) -> bool:
        return False

    def synthesize(self, identity: ApiIdentity, body: Optional[FunctionSummary] = None,
                   token: Optional[CancellationToken] = None) -> ApiEntry:
        entry = self.lookup(identity)
        return entry if entry is not None else ApiEntry.havoc(identity)

    def release(self) -> None:
        """Drop held resources.  Idempotent."""


# ═══════════════════════════════════════════════════════════════════
#  PART 1 — BUILTIN SUMMARIES
# ═══════════════════════════════════════════════════════════════════

def parse_api_entries(text: str) -> List[ApiEntry]:
    """Parse ``(api ...)`` forms."""
    entries: List[ApiEntry] = []
    for form in read_forms(text):
        if not isinstance(form, list) or len(form) < 2 or form[0] != "api":
            raise ProgramFormatError(f"expected (api NAME ...), got {form!r}")
        name = str(form[1])
        convention = "cdecl"
        params: Tuple[str, ...] = ()
        pre: Term = CTrue()
        post: Term = CTrue()
        for item in form[2:]:
            if not isinstance(item, list) or not item:
                raise ProgramFormatError(f"malformed clause in api {name}: {item!r}")
            tag = item[0]
            if tag == "params":
                params = tuple(str(p) for p in item[1:])
            elif tag == "convention" and len(item) == 2:
                convention = str(item[1])
                if convention not in CONVENTIONS:
                    raise ProgramFormatError(f"unknown convention {convention!r} for {name}")
            elif tag == "pre" and len(item) == 2:
                pre = build_condition(item[1])
            elif tag == "post" and len(item) == 2:
                post = build_condition(item[1])
            else:
                raise ProgramFormatError(f"unexpected ({tag} ...) in api {name}")
        allowed = set(params) | {"ret"}
        stray = (post.free_vars() | pre.free_vars()) - allowed
        if stray:
            raise ProgramFormatError(
                f"api {name} summary mentions unknown names: {', '.join(sorted(stray))}")
        if "ret" in pre.free_vars():
            raise ProgramFormatError(f"api {name} precondition may not mention ret")
        entries.append(ApiEntry(ApiIdentity(name, convention), params, pre, post))
    return entries


class BuiltinApiDatabase(ApiDatabase):
    """Closed-form summaries keyed by identity (falling back to name)."""

    def __init__(self, entries: Iterable[ApiEntry] = ()):
        self._by_identity: Dict[ApiIdentity, ApiEntry] = {}
        self._by_name: Dict[str, ApiEntry] = {}
        for e in entries:
            self._by_identity[e.identity] = e
            self._by_name.setdefault(e.identity.name, e)

    @classmethod
    def from_text(cls, text: str) -> "BuiltinApiDatabase":
        return cls(parse_api_entries(text))

    @classmethod
    def load_default(cls) -> "BuiltinApiDatabase":
        text = resources.files("ghihorn").joinpath("data/apis.sexp").read_text(encoding="utf-8")
        db = cls.from_text(text)
        logger.debug("loaded %d builtin API summaries", len(db))
        return db

    def lookup(self, identity: ApiIdentity) -> Optional[ApiEntry]:
        hit = self._by_identity.get(identity)
        if hit is None:
            hit = self._by_name.get(identity.name)
        return hit

    def names(self) -> List[str]:
        return sorted(self._by_name)

    def __len__(self) -> int:
        return len(self._by_identity)


# ═══════════════════════════════════════════════════════════════════
#  PART 2 — SYNTHESIZED SUMMARIES
# ═══════════════════════════════════════════════════════════════════

@dataclass
class ApiLibrary:
    """A library image whose bodies can be hornified into summaries."""

    image: ProgramImage
    coordinator: DecompilationCoordinator

    @classmethod
    def from_image(cls, image: ProgramImage) -> "ApiLibrary":
        return cls(image, SimpleDecompiler(ImageDecompiler(image)))

    def find(self, identity: ApiIdentity) -> Optional[FunctionSummary]:
        return self.image.function_named(identity.name)

    def has(self, identity: ApiIdentity) -> bool:
        return self.image.function_named(identity.name) is not None


class _SynthesisResolver(ApiResolver):
    """Lookup used while hornifying a library body.

    Library-internal callees are synthesized on demand (this is the
    recursive path a cycle can re-enter).
    """

    def __init__(self, db: "SynthesizedApiDatabase", fallback: Optional[ApiResolver],
                 token: Optional[CancellationToken]):
        self.db = db
        self.fallback = fallback
        self.token = token

    def lookup(self, identity: ApiIdentity) -> Optional[ApiEntry]:
        if self.fallback is not None:
            hit = self.fallback.lookup(identity)
            if hit is not None:
                return hit
        if self.db.can_synthesize(identity):
            return self.db.synthesize(identity, token=self.token)
        return None


class SynthesizedApiDatabase(ApiDatabase):
    """Summaries derived from library bodies, memoized per identity.

    Publication is atomic per identity: the first caller owns a
    ``Future`` and builds the entry, everyone else waits on it.  A
    request made from inside a synthesis that would have to wait (the
    same identity re-entered, or another thread's pending identity)
    resolves to the unconstrained entry, which is not cached.  In the
    second case the result depends on thread timing, so every synthesis
    on the requesting thread's stack is returned but not cached either.
    """

    def __init__(self, libraries: Sequence[ApiLibrary] = (),
                 fallback: Optional[ApiResolver] = None):
        self.libraries = list(libraries)
        self.fallback = fallback
        self._lock = threading.Lock()
        self._entries: Dict[ApiIdentity, ApiEntry] = {}
        self._pending: Dict[ApiIdentity, Tuple[Future, int]] = {}
        self._local = threading.local()
        self._released = False
        self.synthesis_count = 0

    def _stack(self) -> List[ApiIdentity]:
        if not hasattr(self._local, "stack"):
            self._local.stack = []
            self._local.degraded = set()
        return self._local.stack

    def lookup(self, identity: ApiIdentity) -> Optional[ApiEntry]:
        with self._lock:
            return self._entries.get(identity)

    def _library_for(self, identity: ApiIdentity) -> Optional[ApiLibrary]:
        for lib in self.libraries:
            if lib.has(identity):
                return lib
        return None

    def can_synthesize(self, identity: ApiIdentity) -> bool:
        return self._library_for(identity) is not None

    def synthesize(self, identity: ApiIdentity, body: Optional[FunctionSummary] = None,
                   token: Optional[CancellationToken] = None) -> ApiEntry:
        with self._lock:
            hit = self._entries.get(identity)
            if hit is not None:
                return hit
            stack = self._stack()
            pending = self._pending.get(identity)
            owner = pending is None
            if owner:
                fut: Future = Future()
                self._pending[identity] = (fut, threading.get_ident())
            else:
                fut, thread = pending
                if stack:
                    if thread != threading.get_ident():
                        logger.debug("%s is being synthesized by another thread; "
                                     "not caching %s", identity, ", ".join(map(str, stack)))
                        self._local.degraded.update(stack)
                    else:
                        logger.debug("synthesis of %s re-entered; using unconstrained effect",
                                     identity)
                    return ApiEntry.havoc(identity)
        if not owner:
            return fut.result()

        stack.append(identity)
        self._released = False
        try:
            entry = self._build(identity, body, token or CancellationToken())
        except BaseException as e:
            with self._lock:
                self._pending.pop(identity, None)
            fut.set_exception(e)
            raise
        finally:
            stack.pop()
            degraded = identity in self._local.degraded
            self._local.degraded.discard(identity)

        with self._lock:
            if not entry.unconstrained and not degraded:
                self._entries[identity] = entry
            self._pending.pop(identity, None)
        fut.set_result(entry)
        return entry

    def _build(self, identity: ApiIdentity, body: Optional[FunctionSummary],
               token: CancellationToken) -> ApiEntry:
        from .hornifier import Hornifier

        lib = self._library_for(identity)
        scope = lib.image.name if lib is not None else "synth"
        if body is None:
            if lib is None:
                logger.debug("no body available for %s", identity)
                return ApiEntry.havoc(identity)
            target = lib.find(identity)
            if target is None:
                return ApiEntry.havoc(identity)
            try:
                body = lib.coordinator.get_summary(target.address, token)
            except DecompileError as e:
                logger.warning("cannot synthesize %s: %s", identity, e)
                return ApiEntry.havoc(identity)

        resolver = _SynthesisResolver(self, self.fallback, token)
        hz = Hornifier({body.address: body}, apis=resolver, global_names=(), scope=scope)
        clauses = hz.hornify_function(body)
        extra = hz.dependency_clauses()
        with self._lock:
            self.synthesis_count += 1
        logger.debug("synthesized %s from %s (%d clauses)", identity, scope,
                     len(clauses) + len(extra))
        return ApiEntry(
            identity,
            params=body.params,
            clauses=tuple(extra) + tuple(clauses),
            entry=hz.entry_predicate(body),
            exit=hz.exit_predicate(body),
            origin="synthesized",
        )

    def entries(self) -> Dict[ApiIdentity, ApiEntry]:
        with self._lock:
            return dict(self._entries)

    def release(self) -> None:
        """Close library decompiler sessions.  Published entries survive."""
        if self._released:
            return
        self._released = True
        for lib in self.libraries:
            lib.coordinator.close()
        logger.debug("released %d API libraries", len(self.libraries))


# ═══════════════════════════════════════════════════════════════════
#  PART 3 — COMPOSITE
# ═══════════════════════════════════════════════════════════════════

class GhiHornApiDatabase(ApiDatabase):
    """Builtin summaries first, then synthesized ones."""

    def __init__(self, builtin: Optional[BuiltinApiDatabase] = None,
                 libraries: Sequence[ApiLibrary] = ()):
        self.builtin = builtin or BuiltinApiDatabase()
        self.synthesized = SynthesizedApiDatabase(libraries, fallback=self.builtin)

    def lookup(self, identity: ApiIdentity) -> Optional[ApiEntry]:
        hit = self.builtin.lookup(identity)
        if hit is not None:
            return hit
        return self.synthesized.lookup(identity)

    def can_synthesize(self, identity: ApiIdentity) -> bool:
        return self.builtin.lookup(identity) is None and self.synthesized.can_synthesize(identity)

    def synthesize(self, identity, body=None, token=None):
        hit = self.builtin.lookup(identity)
        if hit is not None:
            return hit
        return self.synthesized.synthesize(identity, body, token)

    def release(self) -> None:
        self.builtin.release()
        self.synthesized.release()
