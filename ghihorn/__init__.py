"""
ghihorn — Horn-clause reachability for decompiled programs
==========================================================

Turns the control and data flow of decompiled functions into Constrained
Horn Clauses, discharges them with z3's Spacer engine and maps the answer
back onto the program: a witness path when a target is reachable, the
separating invariants when it is not.

Core modules
------------
clauses
    Predicates, Horn clauses and the de-duplicated clause set.
apidb
    Builtin and synthesized API summaries.
decompiler
    Cancellable, cached, simple or pooled decompilation.
hornifier
    Function bodies → Horn clauses; path and API-order queries.
solver
    z3 ``Fixedpoint`` adapter with witness and invariant extraction.
interpreter
    Verdicts and their rendering.
controllers
    The run state machine and the ``AnalysisService`` request surface.

Quick start
-----------
>>> from ghihorn import AnalysisService, PathQuery, load_program_file
>>> image = load_program_file("prog.sexp")
>>> with AnalysisService(image) as svc:
...     handle = svc.start_run("path", [], PathQuery(image.resolve("f")), background=False)
...     print(svc.get_verdict(handle).status)
VerdictStatus.SAT
"""

from __future__ import annotations

import importlib
import logging
import sys
from typing import List

# ---------------------------------------------------------------------------
# Package metadata
# ---------------------------------------------------------------------------

__version__ = "0.2.0"
__author__ = "GhiHorn contributors"
__all__: List[str] = []

_log = logging.getLogger(__name__)

_CORE_MODULES = {
    "errors": [
        "ErrorCode",
        "GhiHornError",
        "DecompileError",
        "CancelledError",
        "GenerationFault",
        "SolverFault",
        "QueryError",
        "ConditionSyntaxError",
        "ProgramFormatError",
        "ConfigError",
        "AnalysisBusyError",
    ],
    "config": ["GhiHornConfig"],
    "program": ["Address", "FunctionSummary", "ProgramImage"],
    "loader": ["load_program", "load_program_file"],
    "clauses": ["Predicate", "HornClause", "ClauseSet", "PredicateKind", "ClauseKind"],
    "apidb": [
        "ApiIdentity",
        "ApiEntry",
        "BuiltinApiDatabase",
        "SynthesizedApiDatabase",
        "GhiHornApiDatabase",
        "ApiLibrary",
    ],
    "decompiler": [
        "CancellationToken",
        "ImageDecompiler",
        "SimpleDecompiler",
        "ParallelDecompiler",
        "make_coordinator",
    ],
    "hornifier": ["Hornifier", "PathQuery", "ApiOrderQuery", "ApiStep"],
    "solver": ["HornSolver"],
    "interpreter": ["Verdict", "VerdictStatus", "WitnessStep", "PENDING"],
    "controllers": [
        "RunState",
        "RunHandle",
        "PathAnalyzerController",
        "ApiAnalyzerController",
        "AnalysisService",
    ],
}


def _import_names(module_rel_name: str, names: List[str]) -> None:
    """Import *names* from a submodule and bind them in the package namespace."""
    fq_name = f"{__name__}.{module_rel_name}"
    try:
        mod = importlib.import_module(fq_name)
    except ImportError as exc:
        raise ImportError(
            f"ghihorn: required submodule '{module_rel_name}' failed to import: {exc}"
        ) from exc

    current_module = sys.modules[__name__]
    for name in names:
        if not hasattr(mod, name):
            raise AttributeError(f"ghihorn.{module_rel_name} does not export '{name}'")
        setattr(current_module, name, getattr(mod, name))
        __all__.append(name)


for _mod_name, _names in _CORE_MODULES.items():
    _import_names(_mod_name, _names)

_log.debug("ghihorn %s loaded (%d public names)", __version__, len(__all__))
