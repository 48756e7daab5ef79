# ghihorn/controllers.py
"""
controllers.py — Analysis Controllers and the request surface
=============================================================

A controller owns one end-to-end run at a time::

    IDLE → PREPARING → GENERATING → SOLVING → REPORTING → COMPLETED
                 \\           \\          \\          \\
                  └───────────┴──────────┴──────────┴──→ CANCELLED | FAILED

``PREPARING``
    decompile the working set (every function reachable from the entry
    points through internal calls) and synthesize API entries for library
    callees;
``GENERATING``
    hornify the working set for the run's query;
``SOLVING``
    discharge the clause set;
``REPORTING``
    interpret the verdict.

The cancellation token is checked on entry to every state and is wired
into the decompiler (queued work fails fast) and the solver (the engine
is interrupted).  Whatever terminal state a run reaches, its listener is
called exactly once, and the API database is released.

:class:`AnalysisService` is the surface callers use:
``start_run(kind, entry_points, query, timeout)``, ``cancel(handle)``,
``get_verdict(handle)`` and ``document_changed()``.
"""

from __future__ import annotations

import enum
import itertools
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

from .apidb import (
    ApiDatabase,
    ApiIdentity,
    ApiLibrary,
    BuiltinApiDatabase,
    GhiHornApiDatabase,
)
from .clauses import ClauseSet
from .config import GhiHornConfig
from .decompiler import (
    CancellationToken,
    DecompilationCoordinator,
    DecompilerProvider,
    ImageDecompiler,
    make_coordinator,
)
from .errors import AnalysisBusyError, CancelledError, GhiHornError, QueryError
from .hornifier import ApiOrderQuery, Hornifier, PathQuery, Query
from .interpreter import (
    PENDING,
    ApiInterpreter,
    PathInterpreter,
    ResultInterpreter,
    Verdict,
)
from .loader import load_program_file
from .program import Address, FunctionSummary, ProgramImage
from .solver import HornSolver

logger = logging.getLogger(__name__)

_run_ids = itertools.count(1)

DRAIN_TIMEOUT = 30.0


class RunState(enum.Enum):
    IDLE = "idle"
    PREPARING = "preparing"
    GENERATING = "generating"
    SOLVING = "solving"
    REPORTING = "reporting"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (RunState.COMPLETED, RunState.CANCELLED, RunState.FAILED)


ACTIVE_STATES = (RunState.PREPARING, RunState.GENERATING, RunState.SOLVING, RunState.REPORTING)


@dataclass(frozen=True)
class RunRequest:
    entry_points: Tuple[Address, ...]
    query: Query
    timeout: float


class RunHandle:
    """Caller's view of one run."""

    def __init__(self, controller: "AnalysisController", request: RunRequest):
        self.run_id = next(_run_ids)
        self.controller = controller
        self.request = request
        self.token = CancellationToken()
        self.history: List[RunState] = [RunState.IDLE]
        self.error: Optional[BaseException] = None
        self.clauses: Optional[ClauseSet] = None
        self._verdict: Optional[Verdict] = None
        self._done = threading.Event()
        self._lock = threading.Lock()

    @property
    def state(self) -> RunState:
        with self._lock:
            return self.history[-1]

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def cancel(self) -> bool:
        """Request cancellation; False when the run already finished."""
        if self.done:
            return False
        logger.info("%s run %d: cancellation requested", self.controller.kind, self.run_id)
        self.token.cancel()
        return True

    def verdict(self) -> Union[Verdict, object]:
        """The verdict once the run is terminal, else ``PENDING``."""
        if not self.done:
            return PENDING
        return self._verdict

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._done.wait(timeout)

    def _advance(self, state: RunState) -> None:
        with self._lock:
            self.history.append(state)

    def _finish(self, state: RunState, verdict: Verdict, error: Optional[BaseException]) -> None:
        with self._lock:
            self.history.append(state)
            self._verdict = verdict
            self.error = error
        self._done.set()

    def __repr__(self) -> str:
        return f"<RunHandle {self.controller.kind}#{self.run_id} {self.state.value}>"


Listener = Callable[[RunHandle], None]
StateHook = Callable[[RunHandle, RunState], None]


# ═══════════════════════════════════════════════════════════════════
#  PART 1 — CONTROLLERS
# ═══════════════════════════════════════════════════════════════════

class AnalysisController(ABC):
    """One query shape over the shared Hornifier / solver pipeline.

    Parameters
    ----------
    image : ProgramImage
        Globals, imports and entry points of the program under analysis.
    coordinator : DecompilationCoordinator
        Source of function bodies; shared with other controllers.
    apidb : ApiDatabase
        Summaries for callees without a body.
    config : GhiHornConfig, optional
    listener : callable, optional
        Called once with the handle when a run reaches a terminal state.
    on_state : callable, optional
        Called synchronously, in the run's thread, on every state entry.
    """

    kind = "abstract"
    query_type: type = Query

    def __init__(
        self,
        image: ProgramImage,
        coordinator: DecompilationCoordinator,
        apidb: Optional[ApiDatabase] = None,
        config: Optional[GhiHornConfig] = None,
        listener: Optional[Listener] = None,
        on_state: Optional[StateHook] = None,
    ):
        self.image = image
        self.coordinator = coordinator
        self.apidb = apidb if apidb is not None else BuiltinApiDatabase()
        self.config = config or GhiHornConfig()
        self.listener = listener
        self.on_state = on_state
        self.solver = HornSolver(smt_output_dir=self.config.smt_output_dir)
        self.last_request: Optional[RunRequest] = None
        self._active: Optional[RunHandle] = None
        self._lock = threading.Lock()

    @abstractmethod
    def make_interpreter(self, query: Query) -> ResultInterpreter:
        ...

    def check_query(self, query: Query) -> None:
        if not isinstance(query, self.query_type):
            raise QueryError(f"{self.kind} analysis cannot answer a {type(query).__name__}")

    @property
    def state(self) -> RunState:
        with self._lock:
            active = self._active
        if active is None or active.done:
            return RunState.IDLE
        return active.state

    @property
    def active(self) -> Optional[RunHandle]:
        with self._lock:
            if self._active is not None and not self._active.done:
                return self._active
        return None

    # -- run management -----------------------------------------------

    def start(
        self,
        entry_points: Sequence[Union[Address, int, str]],
        query: Query,
        timeout: Optional[float] = None,
        background: bool = True,
    ) -> RunHandle:
        """Start a run; raises ``AnalysisBusyError`` if one is active."""
        self.check_query(query)
        entries = tuple(self.image.resolve(e) for e in entry_points) or tuple(self.image.entry_points())
        if not entries:
            raise QueryError("no entry points given and the program exports none")
        budget = self.config.solver_timeout if timeout is None else float(timeout)
        request = RunRequest(entries, query, budget)

        with self._lock:
            if self._active is not None and not self._active.done:
                raise AnalysisBusyError(
                    f"{self.kind} analysis already has an active run",
                    run=self._active.run_id,
                )
            handle = RunHandle(self, request)
            self._active = handle
            self.last_request = request

        logger.info("%s run %d: %s from %s", self.kind, handle.run_id, query.describe(),
                    ", ".join(str(e) for e in entries))
        if background:
            t = threading.Thread(target=self._execute, args=(handle,),
                                 name=f"ghihorn-{self.kind}-{handle.run_id}", daemon=True)
            t.start()
        else:
            self._execute(handle)
        return handle

    def run(self, entry_points, query: Query, timeout: Optional[float] = None) -> RunHandle:
        """Run to completion in the calling thread."""
        return self.start(entry_points, query, timeout, background=False)

    def restart(self, background: bool = True) -> Optional[RunHandle]:
        """Cancel the active run, if any, and repeat the last request."""
        active = self.active
        if active is not None:
            active.cancel()
            active.wait()
        request = self.last_request
        if request is None:
            return None
        return self.start(request.entry_points, request.query, request.timeout, background)

    # -- pipeline -----------------------------------------------------

    def _enter(self, handle: RunHandle, state: RunState) -> None:
        handle.token.raise_if_cancelled(state.value)
        handle._advance(state)
        logger.info("%s run %d: %s", self.kind, handle.run_id, state.value)
        if self.on_state is not None:
            self.on_state(handle, state)
        handle.token.raise_if_cancelled(state.value)

    def _execute(self, handle: RunHandle) -> None:
        request = handle.request
        description = request.query.describe()
        error: Optional[BaseException] = None
        try:
            verdict = self._pipeline(handle)
            final = RunState.COMPLETED
        except CancelledError:
            final = RunState.CANCELLED
            verdict = Verdict.unknown("cancelled", query=description)
        except GhiHornError as e:
            final, error = RunState.FAILED, e
            verdict = Verdict.unknown(str(e), query=description)
            logger.error("%s run %d failed: %s", self.kind, handle.run_id, e)
        except Exception as e:
            final, error = RunState.FAILED, e
            verdict = Verdict.unknown(f"{type(e).__name__}: {e}", query=description)
            logger.exception("%s run %d crashed", self.kind, handle.run_id)
        finally:
            self.apidb.release()

        if final is RunState.CANCELLED:
            if not self.coordinator.drain(DRAIN_TIMEOUT):
                logger.warning("%s run %d: decompilation still in flight after %.0fs",
                               self.kind, handle.run_id, DRAIN_TIMEOUT)
        handle._finish(final, verdict, error)
        logger.info("%s run %d: %s (%s)", self.kind, handle.run_id, final.value,
                    verdict.status.value)
        self._report(handle)

    def _report(self, handle: RunHandle) -> None:
        if self.listener is None:
            return
        try:
            self.listener(handle)
        except Exception:
            logger.exception("listener of %s run %d raised", self.kind, handle.run_id)

    def _pipeline(self, handle: RunHandle) -> Verdict:
        request = handle.request
        token = handle.token

        self._enter(handle, RunState.PREPARING)
        functions, gaps = self.collect_working_set(request, token)
        self.synthesize_apis(functions, token)

        self._enter(handle, RunState.GENERATING)
        hz = Hornifier(functions, self.image, self.apidb, monitor=request.query.monitor())
        handle.clauses = hz.generate(request.entry_points, request.query)

        self._enter(handle, RunState.SOLVING)
        verdict = self.solver.solve(handle.clauses, hz.goal_predicate(), request.timeout, token,
                                    query=request.query.describe())

        self._enter(handle, RunState.REPORTING)
        verdict = verdict.with_(coverage_gaps=tuple(sorted(gaps.items())))
        verdict = self.make_interpreter(request.query).interpret(verdict)
        token.raise_if_cancelled("reporting")
        return verdict

    # -- preparing ----------------------------------------------------

    def _roots(self, request: RunRequest) -> List[Address]:
        roots = list(request.entry_points)
        start = request.query.start
        if start is not None:
            for fn in self.image.functions.values():
                if fn.block_containing(start) is not None and fn.address not in roots:
                    roots.append(fn.address)
        return roots

    def collect_working_set(
        self, request: RunRequest, token: CancellationToken
    ) -> Tuple[Dict[Address, FunctionSummary], Dict[Address, str]]:
        """Decompile everything reachable from the roots through internal calls.

        Returns the summaries and the coverage gaps (address → reason).
        """
        functions: Dict[Address, FunctionSummary] = {}
        gaps: Dict[Address, str] = {}
        frontier = sorted(set(self._roots(request)))
        seen = set(frontier)
        while frontier:
            summaries, failures = self.coordinator.get_summaries(frontier, token)
            for addr, err in failures.items():
                logger.warning("coverage gap at %s: %s", addr, err.reason)
                gaps[addr] = err.reason
            functions.update(summaries)
            following = set()
            for fn in summaries.values():
                for _blk, call in fn.call_sites():
                    callee = call.callee
                    if callee is None or callee in seen or callee in self.image.imports:
                        continue
                    seen.add(callee)
                    following.add(callee)
            frontier = sorted(following)
        logger.debug("working set: %d function(s), %d gap(s)", len(functions), len(gaps))
        return functions, gaps

    def synthesize_apis(self, functions: Dict[Address, FunctionSummary],
                        token: CancellationToken) -> int:
        """Synthesize entries for library callees outside the working set."""
        count = 0
        done = set()
        for addr in sorted(functions):
            for _blk, call in functions[addr].call_sites():
                if call.callee is not None and call.callee in functions:
                    continue
                if call.callee is not None and call.callee in self.image.imports:
                    label = self.image.imports[call.callee]
                else:
                    label = call.label
                identity = ApiIdentity.from_symbol(label)
                if identity in done:
                    continue
                done.add(identity)
                if self.apidb.lookup(identity) is None and self.apidb.can_synthesize(identity):
                    token.raise_if_cancelled("API synthesis")
                    self.apidb.synthesize(identity, token=token)
                    count += 1
        return count


class PathAnalyzerController(AnalysisController):
    """Is a target reachable with a path condition holding there?"""

    kind = "path"
    query_type = PathQuery

    def make_interpreter(self, query: Query) -> ResultInterpreter:
        return PathInterpreter()


class ApiAnalyzerController(AnalysisController):
    """Can a sequence of API calls happen in order on one path?"""

    kind = "api"
    query_type = ApiOrderQuery

    def check_query(self, query: Query) -> None:
        super().check_query(query)
        if not query.steps:
            raise QueryError("an API-order query needs at least one step")

    def make_interpreter(self, query: Query) -> ResultInterpreter:
        return ApiInterpreter(query.steps)


CONTROLLERS = {
    PathAnalyzerController.kind: PathAnalyzerController,
    ApiAnalyzerController.kind: ApiAnalyzerController,
}


# ═══════════════════════════════════════════════════════════════════
#  PART 2 — REQUEST SURFACE
# ═══════════════════════════════════════════════════════════════════

def load_api_database(config: GhiHornConfig) -> GhiHornApiDatabase:
    """Builtin summaries plus the configured synthesis libraries."""
    builtin = BuiltinApiDatabase.load_default() if config.builtin_apis else BuiltinApiDatabase()
    libraries = [ApiLibrary.from_image(load_program_file(p)) for p in config.api_libraries]
    return GhiHornApiDatabase(builtin, libraries)


class AnalysisService:
    """One controller per analysis kind over a shared decompiler and API database.

    Interactive use decompiles in the run's thread; headless use (or
    ``decompiler="parallel"``) fans out over a worker pool.
    """

    def __init__(
        self,
        image: ProgramImage,
        config: Optional[GhiHornConfig] = None,
        provider: Optional[DecompilerProvider] = None,
        apidb: Optional[ApiDatabase] = None,
        listener: Optional[Listener] = None,
        on_state: Optional[StateHook] = None,
    ):
        self.image = image
        self.config = config or GhiHornConfig()
        self.coordinator = make_coordinator(
            provider or ImageDecompiler(image), self.config.effective_decompiler, self.config.workers)
        self.apidb = apidb if apidb is not None else load_api_database(self.config)
        self.controllers: Dict[str, AnalysisController] = {
            kind: cls(image, self.coordinator, self.apidb, self.config, listener, on_state)
            for kind, cls in CONTROLLERS.items()
        }
        logger.debug("analysis service for %s (%s decompiler, %d workers)", image.name,
                     self.coordinator.strategy, self.config.workers)

    def controller(self, kind: str) -> AnalysisController:
        try:
            return self.controllers[kind]
        except KeyError:
            raise QueryError(f"unknown analysis kind {kind!r}; expected one of "
                             f"{', '.join(sorted(self.controllers))}") from None

    def start_run(
        self,
        kind: str,
        entry_points: Sequence[Union[Address, int, str]],
        query: Query,
        timeout: Optional[float] = None,
        background: bool = True,
    ) -> RunHandle:
        return self.controller(kind).start(entry_points, query, timeout, background)

    def cancel(self, handle: RunHandle) -> bool:
        return handle.cancel()

    def get_verdict(self, handle: RunHandle) -> Union[Verdict, object]:
        return handle.verdict()

    def document_changed(self, addresses: Optional[Sequence[Address]] = None,
                         background: bool = True) -> List[RunHandle]:
        """The program changed: drop cached bodies and rerun each controller's last query."""
        logger.info("program changed; invalidating %s",
                    "all summaries" if addresses is None else f"{len(addresses)} summaries")
        self.coordinator.invalidate(addresses)
        restarted = []
        for ctl in self.controllers.values():
            handle = ctl.restart(background)
            if handle is not None:
                restarted.append(handle)
        return restarted

    def close(self) -> None:
        for ctl in self.controllers.values():
            active = ctl.active
            if active is not None:
                active.cancel()
                active.wait()
        self.coordinator.close()
        self.apidb.release()

    def __enter__(self) -> "AnalysisService":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
