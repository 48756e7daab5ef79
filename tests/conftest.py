# tests/conftest.py
"""
Shared fixtures and builders for the GhiHorn test-suite.

Program texts are small hand-written decompilations; providers wrap
:class:`ImageDecompiler` to observe or slow down decompilation.
"""

from __future__ import annotations

import threading
import time
from typing import Dict, List, Optional

import pytest

from ghihorn.apidb import ApiLibrary, BuiltinApiDatabase, GhiHornApiDatabase
from ghihorn.config import GhiHornConfig
from ghihorn.decompiler import DecompilerProvider, ImageDecompiler
from ghihorn.loader import load_program
from ghihorn.program import Address, FunctionSummary, ProgramImage


# ---------------------------------------------------------------------------
# Program texts
# ---------------------------------------------------------------------------

# f calls g; g returns an arbitrary non-negative value.
TWO_FUNCTIONS = """
(program two
  (export f)
  (function f 0x1000 (params)
    (block 0x1000
      (call 0x1004 t g)
      (branch (< t 0) 0x1010 0x1020))
    (block 0x1010 (return 1))
    (block 0x1020 (return t)))
  (function g 0x2000 (params)
    (block 0x2000
      (havoc v)
      (assume (>= v 0))
      (return v))))
"""

# add_one(x) = x + 1, with a counter global.
ARITH = """
(program arith
  (global counter 0)
  (export main)
  (function main 0x1000 (params n)
    (block 0x1000
      (assign counter (+ counter 1))
      (call 0x1004 r add_one n)
      (branch (> r 10) 0x1010 0x1020))
    (block 0x1010 (return r))
    (block 0x1020 (return 0)))
  (function add_one 0x2000 (params x)
    (block 0x2000 (return (+ x 1)))))
"""

# malloc, then free on both paths; free twice when n > 0.
DOUBLE_FREE = """
(program heap
  (import 0x5000 malloc)
  (import 0x5008 free)
  (export main)
  (function main 0x1000 (params n)
    (block 0x1000
      (call 0x1004 p 0x5000 16)
      (branch (> n 0) 0x1010 0x1020))
    (block 0x1010
      (call 0x1014 _ 0x5008 p)
      (jump 0x1020))
    (block 0x1020
      (call 0x1024 _ 0x5008 p)
      (return 0))))
"""

# malloc, then exactly one free on every path.
SINGLE_FREE = """
(program heap1
  (import 0x5000 malloc)
  (import 0x5008 free)
  (export main)
  (function main 0x1000 (params n)
    (block 0x1000
      (call 0x1004 p 0x5000 16)
      (branch (> n 0) 0x1010 0x1020))
    (block 0x1010
      (call 0x1014 _ 0x5008 p)
      (return 0))
    (block 0x1020
      (call 0x1024 _ 0x5008 p)
      (return 1))))
"""

# free(q) releases some other object before free(p) releases the tracked one.
FREE_OTHER_FIRST = """
(program heap2
  (import 0x5000 malloc)
  (import 0x5008 free)
  (export main)
  (function main 0x1000 (params q)
    (block 0x1000
      (call 0x1004 p 0x5000 16)
      (assume (!= q p))
      (call 0x100c _ 0x5008 q)
      (call 0x1010 _ 0x5008 p)
      (return 0))))
"""

# main calls a function the decompiler cannot handle.
WITH_GAP = """
(program gap
  (export main)
  (function main 0x1000 (params)
    (block 0x1000
      (call 0x1004 r 0x3000)
      (branch (== r 42) 0x1010 0x1020))
    (block 0x1010 (return 1))
    (block 0x1020 (return 0)))
  (broken 0x3000 "unsupported instruction"))
"""

# main calls a library routine that has a body in LIBRARY.
USES_LIBRARY = """
(program client
  (import 0x5000 clamp)
  (export main)
  (function main 0x1000 (params n)
    (block 0x1000
      (call 0x1004 r 0x5000 n)
      (branch (> r 100) 0x1010 0x1020))
    (block 0x1010 (return 1))
    (block 0x1020 (return 0))))
"""

LIBRARY = """
(program libclamp
  (function clamp 0x9000 (params x)
    (block 0x9000 (branch (> x 100) 0x9010 0x9020))
    (block 0x9010 (return 100))
    (block 0x9020 (return x)))
  (function ping 0x9100 (params n)
    (block 0x9100 (call 0x9104 r pong n) (return r)))
  (function pong 0x9200 (params n)
    (block 0x9200 (call 0x9204 r ping n) (return r))))
"""


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------

class RecordingProvider(DecompilerProvider):
    """ImageDecompiler that records every request and can be slowed down.

    When ``gate`` is given, each decompilation waits for it before
    returning (and signals ``started`` when it begins).
    """

    def __init__(self, image: ProgramImage, delay: float = 0.0,
                 gate: Optional[threading.Event] = None):
        self.inner = ImageDecompiler(image)
        self.delay = delay
        self.gate = gate
        self.started = threading.Event()
        self.calls: List[Address] = []
        self._lock = threading.Lock()

    def decompile(self, address: Address) -> FunctionSummary:
        with self._lock:
            self.calls.append(address)
        self.started.set()
        if self.gate is not None:
            self.gate.wait(5.0)
        if self.delay:
            time.sleep(self.delay)
        return self.inner.decompile(address)

    def count(self, address: Address) -> int:
        with self._lock:
            return self.calls.count(address)


class ExplodingProvider(DecompilerProvider):
    """Raises a non-DecompileError exception for one address."""

    def __init__(self, image: ProgramImage, bad: Address):
        self.inner = ImageDecompiler(image)
        self.bad = bad

    def decompile(self, address: Address) -> FunctionSummary:
        if address == self.bad:
            raise RuntimeError("decompiler crashed")
        return self.inner.decompile(address)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def two_functions() -> ProgramImage:
    return load_program(TWO_FUNCTIONS)


@pytest.fixture
def arith() -> ProgramImage:
    return load_program(ARITH)


@pytest.fixture
def double_free() -> ProgramImage:
    return load_program(DOUBLE_FREE)


@pytest.fixture
def builtin_apis() -> BuiltinApiDatabase:
    return BuiltinApiDatabase.load_default()


@pytest.fixture
def library_apis(builtin_apis) -> GhiHornApiDatabase:
    return GhiHornApiDatabase(builtin_apis, [ApiLibrary.from_image(load_program(LIBRARY))])


@pytest.fixture
def config() -> GhiHornConfig:
    return GhiHornConfig(solver_timeout=30.0, workers=2)


def by_name(image: ProgramImage) -> Dict[str, Address]:
    return {fn.name: addr for addr, fn in image.functions.items()}
