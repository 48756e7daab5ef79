# ghihorn/decompiler.py
"""
decompiler.py — Decompilation Coordinator
=========================================

Obtains :class:`~ghihorn.program.FunctionSummary` objects for the working
set of an analysis run from a :class:`DecompilerProvider` (the host's
decompiler), caching them across runs.

Two interchangeable strategies:

``SimpleDecompiler``
    decompiles one function at a time in the caller's thread.
``ParallelDecompiler``
    dispatches requests to a fixed-size ``ThreadPoolExecutor`` and returns
    results as they complete.

Both honour a :class:`CancellationToken`.  Once it fires, queued requests
fail fast with :class:`~ghihorn.errors.CancelledError` and never reach the
provider; a decompilation already running is allowed to finish, but its
result is discarded and never cached.

Cache population is atomic per address: a summary is published only
after it is complete and validated.  Failures are never cached.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from concurrent.futures import CancelledError as FutureCancelledError
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import contextmanager
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Tuple

from .errors import CancelledError, DecompileError
from .program import Address, FunctionSummary, ProgramImage

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════
#  PART 1 — CANCELLATION
# ═══════════════════════════════════════════════════════════════════

class CancellationToken:
    """Cooperative cancellation signal shared by every stage of a run.

    Callbacks registered with :meth:`register` run once, in the thread
    that calls :meth:`cancel`; the solver uses one to interrupt z3.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
        for cb in callbacks:
            try:
                cb()
            except Exception:
                logger.exception("cancellation callback %r failed", cb)

    def register(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Run *callback* on cancellation; returns a function that unregisters it."""
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)

                def unregister() -> None:
                    with self._lock:
                        if callback in self._callbacks:
                            self._callbacks.remove(callback)

                return unregister
        callback()
        return lambda: None

    def raise_if_cancelled(self, what: str = "operation") -> None:
        if self._event.is_set():
            raise CancelledError(f"{what} cancelled")

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)


# ═══════════════════════════════════════════════════════════════════
#  PART 2 — PROVIDERS
# ═══════════════════════════════════════════════════════════════════

class DecompilerProvider(ABC):
    """The host decompiler.

    ``decompile`` is synchronous per call and must be safe to invoke from
    several worker threads at once.
    """

    @abstractmethod
    def decompile(self, address: Address) -> FunctionSummary:
        """Return the summary of the function at *address* or raise DecompileError."""


class ImageDecompiler(DecompilerProvider):
    """Serves summaries out of a loaded :class:`ProgramImage`."""

    def __init__(self, image: ProgramImage):
        self.image = image

    def decompile(self, address: Address) -> FunctionSummary:
        reason = self.image.failures.get(address)
        if reason is not None:
            raise DecompileError(address, reason)
        fn = self.image.functions.get(address)
        if fn is None:
            raise DecompileError(address, "no function at this address")
        problems = fn.validate()
        if problems:
            raise DecompileError(address, "; ".join(problems))
        return fn


# ═══════════════════════════════════════════════════════════════════
#  PART 3 — COORDINATORS
# ═══════════════════════════════════════════════════════════════════

class DecompilationCoordinator(ABC):
    """Caching front end over a :class:`DecompilerProvider`."""

    strategy = "abstract"

    def __init__(self, provider: DecompilerProvider):
        self.provider = provider
        self._cache: Dict[Address, FunctionSummary] = {}
        self._lock = threading.Lock()
        self._sessions = 0
        self._session_cv = threading.Condition(self._lock)
        self.decompile_count = 0

    # -- cache --------------------------------------------------------

    def cached(self, address: Address) -> Optional[FunctionSummary]:
        with self._lock:
            return self._cache.get(address)

    def _publish(self, address: Address, summary: FunctionSummary) -> FunctionSummary:
        with self._lock:
            existing = self._cache.get(address)
            if existing is not None:
                return existing
            self._cache[address] = summary
            return summary

    def invalidate(self, addresses: Optional[Iterable[Address]] = None) -> None:
        """Drop cached summaries (all of them when *addresses* is None)."""
        with self._lock:
            if addresses is None:
                self._cache.clear()
            else:
                for a in addresses:
                    self._cache.pop(a, None)
        logger.debug("%s decompiler cache invalidated", self.strategy)

    # -- sessions -----------------------------------------------------

    @property
    def active_sessions(self) -> int:
        with self._lock:
            return self._sessions

    @contextmanager
    def _session(self) -> Iterator[None]:
        with self._lock:
            self._sessions += 1
            self.decompile_count += 1
        try:
            yield
        finally:
            with self._lock:
                self._sessions -= 1
                self._session_cv.notify_all()

    def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait until no decompilation is in flight."""
        with self._session_cv:
            return self._session_cv.wait_for(lambda: self._sessions == 0, timeout)

    def _decompile(self, address: Address, token: CancellationToken) -> FunctionSummary:
        """One provider call; the result is cached unless the run was cancelled."""
        token.raise_if_cancelled(f"decompilation of {address}")
        with self._session():
            try:
                summary = self.provider.decompile(address)
            except DecompileError:
                raise
            except Exception as e:
                raise DecompileError(address, f"{type(e).__name__}: {e}") from e
        if token.cancelled:
            logger.debug("discarding decompilation of %s after cancellation", address)
            raise CancelledError(f"decompilation of {address} cancelled")
        return self._publish(address, summary)

    # -- contract -----------------------------------------------------

    @abstractmethod
    def get_summary(self, address: Address, token: CancellationToken) -> FunctionSummary:
        """Summary of the function at *address*.

        Raises
        ------
        DecompileError
            The provider could not decompile the function.
        CancelledError
            *token* fired before a result was available.
        """

    def get_summaries(
        self, addresses: Iterable[Address], token: CancellationToken
    ) -> Tuple[Dict[Address, FunctionSummary], Dict[Address, DecompileError]]:
        """Resolve several addresses; failures are returned, not raised."""
        summaries: Dict[Address, FunctionSummary] = {}
        failures: Dict[Address, DecompileError] = {}
        for addr in sorted(set(addresses)):
            try:
                summaries[addr] = self.get_summary(addr, token)
            except DecompileError as e:
                failures[addr] = e
        return summaries, failures

    def close(self) -> None:
        """Release worker resources.  Safe to call more than once."""


class SimpleDecompiler(DecompilationCoordinator):
    """Decompiles in the calling thread, one function at a time."""

    strategy = "simple"

    def get_summary(self, address: Address, token: CancellationToken) -> FunctionSummary:
        hit = self.cached(address)
        if hit is not None:
            return hit
        return self._decompile(address, token)


class ParallelDecompiler(DecompilationCoordinator):
    """Decompiles on a fixed-size worker pool.

    Concurrent requests for the same address share one in-flight future.
    """

    strategy = "parallel"

    def __init__(self, provider: DecompilerProvider, workers: int = 4):
        super().__init__(provider)
        self.workers = max(1, workers)
        self._pool: Optional[ThreadPoolExecutor] = None
        self._inflight: Dict[Address, Future] = {}

    def _executor(self) -> ThreadPoolExecutor:
        with self._lock:
            if self._pool is None:
                self._pool = ThreadPoolExecutor(
                    max_workers=self.workers, thread_name_prefix="ghihorn-decompile")
            return self._pool

    def _submit(self, address: Address, token: CancellationToken) -> Future:
        pool = self._executor()
        with self._lock:
            fut = self._inflight.get(address)
            if fut is not None and not fut.done():
                return fut
            fut = pool.submit(self._decompile, address, token)
            self._inflight[address] = fut
        fut.add_done_callback(lambda f, a=address: self._retire(a, f))
        return fut

    def _retire(self, address: Address, fut: Future) -> None:
        with self._lock:
            if self._inflight.get(address) is fut:
                del self._inflight[address]

    def _await(self, futures: List[Future], token: CancellationToken) -> None:
        """Block until every future is done or *token* fires."""
        wake = threading.Event()
        remaining = [len(futures)]
        counter_lock = threading.Lock()

        def one_done(_f: Future) -> None:
            with counter_lock:
                remaining[0] -= 1
                if remaining[0] <= 0:
                    wake.set()

        for f in futures:
            f.add_done_callback(one_done)
        if not futures:
            wake.set()
        unregister = token.register(wake.set)
        try:
            wake.wait()
        finally:
            unregister()
        if token.cancelled:
            for f in futures:
                f.cancel()
            raise CancelledError("decompilation cancelled")

    def get_summary(self, address: Address, token: CancellationToken) -> FunctionSummary:
        summaries, failures = self.get_summaries([address], token)
        if address in failures:
            raise failures[address]
        return summaries[address]

    def get_summaries(self, addresses, token):
        token.raise_if_cancelled("decompilation")
        summaries: Dict[Address, FunctionSummary] = {}
        failures: Dict[Address, DecompileError] = {}
        pending: Dict[Address, Future] = {}
        for addr in sorted(set(addresses)):
            hit = self.cached(addr)
            if hit is not None:
                summaries[addr] = hit
            else:
                pending[addr] = self._submit(addr, token)

        while pending:
            self._await(list(pending.values()), token)
            retry: Dict[Address, Future] = {}
            for addr, fut in pending.items():
                try:
                    summaries[addr] = fut.result()
                except DecompileError as e:
                    failures[addr] = e
                except (CancelledError, FutureCancelledError):
                    # shared future belonged to a run that was cancelled
                    token.raise_if_cancelled("decompilation")
                    retry[addr] = self._submit(addr, token)
            pending = retry
        return summaries, failures

    def close(self) -> None:
        with self._lock:
            pool, self._pool = self._pool, None
        if pool is not None:
            pool.shutdown(wait=True)


def make_coordinator(
    provider: DecompilerProvider, strategy: str, workers: int = 4
) -> DecompilationCoordinator:
    """Build the coordinator named by a configuration strategy."""
    if strategy == "parallel":
        return ParallelDecompiler(provider, workers)
    if strategy == "simple":
        return SimpleDecompiler(provider)
    raise ValueError(f"unknown decompiler strategy {strategy!r}")
