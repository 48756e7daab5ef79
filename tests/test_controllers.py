# tests/test_controllers.py
"""
Tests for the analysis controllers and the AnalysisService surface.
"""

import importlib.util
import logging
import threading
from unittest import mock

import pytest

from ghihorn.apidb import ApiLibrary, BuiltinApiDatabase, GhiHornApiDatabase
from ghihorn.controllers import (
    ACTIVE_STATES,
    AnalysisService,
    ApiAnalyzerController,
    PathAnalyzerController,
    RunState,
)
from ghihorn.decompiler import SimpleDecompiler
from ghihorn.errors import AnalysisBusyError, QueryError
from ghihorn.hornifier import ApiOrderQuery, ApiStep, PathQuery
from ghihorn.interpreter import PENDING, ApiInterpreter, VerdictStatus
from ghihorn.loader import load_program
from ghihorn.program import Address
from tests.conftest import (
    DOUBLE_FREE,
    FREE_OTHER_FIRST,
    LIBRARY,
    SINGLE_FREE,
    USES_LIBRARY,
    WITH_GAP,
    RecordingProvider,
)

needs_z3 = pytest.mark.skipif(importlib.util.find_spec("z3") is None,
                              reason="z3-solver is not installed")

MAIN = Address(0x1000)


def _api_query(*steps):
    return ApiOrderQuery(tuple(ApiStep.parse(s) for s in steps))


DOUBLE_FREE_QUERY = ("malloc:capture", "free:arg0", "free:arg0")


class _Listener:

    def __init__(self):
        self.calls = []
        self.called = threading.Event()

    def __call__(self, handle):
        self.calls.append(handle)
        self.called.set()


@pytest.fixture
def service_for(config, builtin_apis):
    services = []

    def build(image, provider=None, apidb=None, **kwargs):
        svc = AnalysisService(image, config, provider=provider,
                              apidb=apidb if apidb is not None else GhiHornApiDatabase(builtin_apis),
                              **kwargs)
        services.append(svc)
        return svc

    yield build
    for svc in services:
        svc.close()


class TestRunStates:

    @pytest.mark.parametrize("state", ACTIVE_STATES)
    def test_cancel_on_entry_to_each_state(self, two_functions, service_for, state):
        provider = RecordingProvider(two_functions)

        def on_state(handle, entered):
            if entered is state:
                handle.cancel()

        listener = _Listener()
        svc = service_for(two_functions, provider, listener=listener, on_state=on_state)
        handle = svc.start_run("path", [MAIN], PathQuery(Address(0x1020)), timeout=0,
                               background=False)

        assert handle.state is RunState.CANCELLED
        assert handle.history[-2] is state
        assert handle.history[0] is RunState.IDLE
        verdict = svc.get_verdict(handle)
        assert verdict.status is VerdictStatus.UNKNOWN
        assert verdict.reason == "cancelled"
        assert svc.coordinator.active_sessions == 0
        assert listener.calls == [handle]

    @needs_z3
    def test_full_run_visits_every_state(self, two_functions, service_for):
        seen = []
        svc = service_for(two_functions, on_state=lambda h, s: seen.append(s))
        handle = svc.start_run("path", [MAIN], PathQuery(Address(0x1020)), background=False)
        assert seen == list(ACTIVE_STATES)
        assert handle.history == [RunState.IDLE] + list(ACTIVE_STATES) + [RunState.COMPLETED]
        assert handle.clauses is not None

    def test_zero_budget_completes_unknown(self, two_functions, service_for):
        svc = service_for(two_functions)
        handle = svc.start_run("path", [MAIN], PathQuery(Address(0x1020)), timeout=0,
                               background=False)
        assert handle.state is RunState.COMPLETED
        verdict = handle.verdict()
        assert verdict.status is VerdictStatus.UNKNOWN
        assert verdict.reason == "timeout"
        assert verdict.report[0].startswith("unknown")

    def test_query_failure_is_reported_not_raised(self, two_functions, service_for):
        listener = _Listener()
        svc = service_for(two_functions, listener=listener)
        handle = svc.start_run("path", [MAIN], PathQuery(Address(0x8000)), background=False)
        assert handle.state is RunState.FAILED
        assert isinstance(handle.error, QueryError)
        assert handle.verdict().status is VerdictStatus.UNKNOWN
        assert len(listener.calls) == 1

    @pytest.mark.parametrize("target,cancel", [(0x8000, False), (0x1020, True)])
    def test_api_database_released_after_every_run(self, two_functions, service_for,
                                                     target, cancel):
        on_state = (lambda h, s: h.cancel()) if cancel else None
        svc = service_for(two_functions, on_state=on_state)
        with mock.patch.object(svc.apidb, "release", wraps=svc.apidb.release) as release:
            handle = svc.start_run("path", [MAIN], PathQuery(Address(target)), timeout=0,
                                   background=False)
        assert handle.state is (RunState.CANCELLED if cancel else RunState.FAILED)
        release.assert_called()

    def test_listener_exception_is_contained(self, two_functions, service_for, caplog):
        def listener(handle):
            raise RuntimeError("listener bug")

        svc = service_for(two_functions, listener=listener)
        with caplog.at_level(logging.ERROR, logger="ghihorn"):
            handle = svc.start_run("path", [MAIN], PathQuery(Address(0x1020)), timeout=0,
                                   background=False)
        assert handle.state is RunState.COMPLETED
        assert "listener" in caplog.text

    def test_wrong_query_type(self, two_functions, service_for):
        svc = service_for(two_functions)
        with pytest.raises(QueryError):
            svc.start_run("path", [MAIN], _api_query("free"))
        with pytest.raises(QueryError):
            svc.start_run("api", [MAIN], PathQuery(MAIN))

    def test_unknown_kind(self, two_functions, service_for):
        with pytest.raises(QueryError):
            service_for(two_functions).controller("taint")

    def test_empty_api_query(self, two_functions, service_for):
        with pytest.raises(QueryError):
            service_for(two_functions).start_run("api", [MAIN], ApiOrderQuery(()))

    def test_default_entry_points(self, two_functions, service_for):
        svc = service_for(two_functions)
        handle = svc.start_run("path", [], PathQuery(Address(0x1020)), timeout=0,
                               background=False)
        assert handle.request.entry_points == (MAIN,)

    def test_entry_points_by_name(self, two_functions, service_for):
        svc = service_for(two_functions)
        handle = svc.start_run("path", ["f"], PathQuery(Address(0x1020)), timeout=0,
                               background=False)
        assert handle.request.entry_points == (MAIN,)


class TestBackgroundRuns:

    def _gated(self, two_functions, service_for, **kwargs):
        gate = threading.Event()
        provider = RecordingProvider(two_functions, gate=gate)
        svc = service_for(two_functions, provider, **kwargs)
        return svc, provider, gate

    def test_busy_controller_rejects_second_run(self, two_functions, service_for):
        svc, provider, gate = self._gated(two_functions, service_for)
        handle = svc.start_run("path", [MAIN], PathQuery(Address(0x1020)), timeout=0)
        assert provider.started.wait(5.0)
        assert svc.controller("path").state is RunState.PREPARING
        assert svc.get_verdict(handle) is PENDING

        with pytest.raises(AnalysisBusyError):
            svc.start_run("path", [MAIN], PathQuery(Address(0x1010)))

        gate.set()
        assert handle.wait(10.0)
        assert handle.state is RunState.COMPLETED
        assert svc.controller("path").state is RunState.IDLE

    def test_controllers_are_independent(self, two_functions, service_for):
        svc, provider, gate = self._gated(two_functions, service_for)
        path = svc.start_run("path", [MAIN], PathQuery(Address(0x1020)), timeout=0)
        assert provider.started.wait(5.0)
        api = svc.start_run("api", [MAIN], _api_query("g"), timeout=0)
        gate.set()
        assert path.wait(10.0) and api.wait(10.0)

    def test_cancel_while_decompiling(self, two_functions, config, builtin_apis):
        gate = threading.Event()
        provider = RecordingProvider(two_functions, gate=gate)
        listener = _Listener()
        svc = AnalysisService(two_functions, config.merged({"decompiler": "parallel"}),
                              provider=provider, apidb=GhiHornApiDatabase(builtin_apis),
                              listener=listener)
        try:
            handle = svc.start_run("path", [MAIN], PathQuery(Address(0x1020)))
            assert provider.started.wait(5.0)
            assert svc.cancel(handle)
            gate.set()
            assert handle.wait(10.0)
            assert listener.called.wait(5.0)

            assert handle.state is RunState.CANCELLED
            assert svc.coordinator.active_sessions == 0
            assert svc.coordinator.cached(MAIN) is None
            assert len(listener.calls) == 1
            assert not handle.cancel()
        finally:
            svc.close()

    def test_cancel_finished_run(self, two_functions, service_for):
        svc = service_for(two_functions)
        handle = svc.start_run("path", [MAIN], PathQuery(Address(0x1020)), timeout=0,
                               background=False)
        assert not svc.cancel(handle)
        assert handle.state is RunState.COMPLETED


class TestWorkingSet:

    def test_callees_are_collected(self, two_functions, service_for):
        svc = service_for(two_functions)
        ctl = svc.controller("path")
        handle = ctl.start([MAIN], PathQuery(Address(0x1020)), timeout=0, background=False)
        functions, gaps = ctl.collect_working_set(handle.request, handle.token)
        assert sorted(functions) == [Address(0x1000), Address(0x2000)]
        assert gaps == {}

    def test_coverage_gap(self, service_for, caplog):
        image = load_program(WITH_GAP)
        svc = service_for(image)
        with caplog.at_level(logging.WARNING, logger="ghihorn"):
            handle = svc.start_run("path", [MAIN], PathQuery(Address(0x1010)), timeout=0,
                                   background=False)
        verdict = handle.verdict()
        assert verdict.coverage_gaps == ((Address(0x3000), "unsupported instruction"),)
        assert any("not decompiled" in line for line in verdict.report)
        assert "coverage gap at 0x3000" in caplog.text

    @needs_z3
    def test_gap_is_sound(self, service_for):
        image = load_program(WITH_GAP)
        verdict = service_for(image).start_run(
            "path", [MAIN], PathQuery(Address(0x1010)), background=False).verdict()
        assert verdict.status is VerdictStatus.SAT

    def test_start_block_adds_its_function(self, two_functions, service_for):
        svc = service_for(two_functions)
        ctl = svc.controller("path")
        query = PathQuery(Address(0x2000), start=Address(0x2000))
        handle = ctl.start([MAIN], query, timeout=0, background=False)
        assert Address(0x2000) in ctl._roots(handle.request)


@needs_z3
class TestApiOrder:

    def test_double_free_found(self, service_for):
        svc = service_for(load_program(DOUBLE_FREE))
        handle = svc.start_run("api", [MAIN], _api_query(*DOUBLE_FREE_QUERY), background=False)
        verdict = handle.verdict()
        assert verdict.status is VerdictStatus.SAT
        assert verdict.report[0] == "API sequence reachable:"
        sites = ApiInterpreter(handle.request.query.steps).matches(verdict)
        assert [s.callee for s in sites] == ["malloc", "free", "free"]
        assert [s.address for s in sites][1:] == [Address(0x1014), Address(0x1024)]

    def test_single_free_is_safe(self, service_for):
        svc = service_for(load_program(SINGLE_FREE))
        verdict = svc.start_run("api", [MAIN], _api_query(*DOUBLE_FREE_QUERY),
                                background=False).verdict()
        assert verdict.status is VerdictStatus.UNSAT

    def test_order_matters(self, service_for):
        svc = service_for(load_program(DOUBLE_FREE))
        verdict = svc.start_run("api", [MAIN], _api_query("free", "malloc"),
                                background=False).verdict()
        assert verdict.status is VerdictStatus.UNSAT

    def test_other_object_does_not_advance(self, service_for):
        svc = service_for(load_program(FREE_OTHER_FIRST))
        handle = svc.start_run("api", [MAIN], _api_query("malloc:capture", "free:arg0"),
                               background=False)
        verdict = handle.verdict()
        assert verdict.status is VerdictStatus.SAT
        sites = ApiInterpreter(handle.request.query.steps).matches(verdict)
        assert [s.address for s in sites] == [Address(0x1004), Address(0x1010)]
        assert verdict.report[2] == "  free:arg0: free called from main at 0x1010"

    def test_other_object_cannot_complete_a_double_free(self, service_for):
        svc = service_for(load_program(FREE_OTHER_FIRST))
        verdict = svc.start_run("api", [MAIN], _api_query(*DOUBLE_FREE_QUERY),
                                background=False).verdict()
        assert verdict.status is VerdictStatus.UNSAT


@needs_z3
class TestLibrarySummaries:

    def test_synthesized_summary_is_precise(self, service_for, builtin_apis):
        apidb = GhiHornApiDatabase(builtin_apis, [ApiLibrary.from_image(load_program(LIBRARY))])
        svc = service_for(load_program(USES_LIBRARY), apidb=apidb)
        verdict = svc.start_run("path", [MAIN], PathQuery(Address(0x1010)),
                                background=False).verdict()
        assert verdict.status is VerdictStatus.UNSAT
        assert apidb.synthesized.synthesis_count == 1

    def test_without_library_the_call_is_havoc(self, service_for):
        svc = service_for(load_program(USES_LIBRARY), apidb=GhiHornApiDatabase(BuiltinApiDatabase()))
        verdict = svc.start_run("path", [MAIN], PathQuery(Address(0x1010)),
                                background=False).verdict()
        assert verdict.status is VerdictStatus.SAT


class TestDocumentChanged:

    def test_reruns_last_queries(self, two_functions, service_for):
        provider = RecordingProvider(two_functions)
        svc = service_for(two_functions, provider)
        svc.start_run("path", [MAIN], PathQuery(Address(0x1020)), timeout=0, background=False)
        svc.start_run("api", [MAIN], _api_query("g"), timeout=0, background=False)
        assert provider.count(MAIN) == 1

        handles = svc.document_changed(background=False)
        assert len(handles) == 2
        assert all(h.state is RunState.COMPLETED for h in handles)
        assert provider.count(MAIN) == 2

    def test_partial_invalidation(self, two_functions, service_for):
        provider = RecordingProvider(two_functions)
        svc = service_for(two_functions, provider)
        svc.start_run("path", [MAIN], PathQuery(Address(0x1020)), timeout=0, background=False)
        svc.document_changed([Address(0x2000)], background=False)
        assert provider.count(MAIN) == 1
        assert provider.count(Address(0x2000)) == 2

    def test_nothing_to_rerun(self, two_functions, service_for):
        assert service_for(two_functions).document_changed() == []


class TestControllerConstruction:

    def test_standalone_controller(self, two_functions):
        from ghihorn.decompiler import ImageDecompiler
        ctl = PathAnalyzerController(two_functions, SimpleDecompiler(ImageDecompiler(two_functions)))
        assert ctl.state is RunState.IDLE
        assert ctl.active is None
        assert ctl.restart() is None
        handle = ctl.run([MAIN], PathQuery(Address(0x1020)), timeout=0)
        assert handle.state is RunState.COMPLETED

    def test_kinds(self):
        assert PathAnalyzerController.kind == "path"
        assert ApiAnalyzerController.kind == "api"
