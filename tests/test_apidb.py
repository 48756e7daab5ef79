# tests/test_apidb.py
"""
Tests for the API semantics database.
"""

import threading
from unittest import mock

import pytest

from ghihorn.apidb import (
    ApiEntry,
    ApiIdentity,
    ApiLibrary,
    BuiltinApiDatabase,
    GhiHornApiDatabase,
    SynthesizedApiDatabase,
    parse_api_entries,
)
from ghihorn.errors import ProgramFormatError
from ghihorn.loader import load_program
from ghihorn.terms import CConst, CTrue
from tests.conftest import LIBRARY


@pytest.fixture
def library():
    return ApiLibrary.from_image(load_program(LIBRARY))


class TestIdentity:

    @pytest.mark.parametrize("symbol,expected", [
        ("malloc", ApiIdentity("malloc")),
        ("_malloc", ApiIdentity("malloc")),
        ("__imp_free", ApiIdentity("free")),
        ("_Sleep@4", ApiIdentity("Sleep", "stdcall")),
        ("__imp__ExitProcess@4", ApiIdentity("ExitProcess", "stdcall")),
        ("__chkstk", ApiIdentity("__chkstk")),
    ])
    def test_from_symbol(self, symbol, expected):
        assert ApiIdentity.from_symbol(symbol) == expected

    def test_str(self):
        assert str(ApiIdentity("free")) == "free"
        assert str(ApiIdentity("Sleep", "stdcall")) == "Sleep/stdcall"


class TestBuiltin:

    def test_default_summaries_load(self, builtin_apis):
        assert len(builtin_apis) > 10
        malloc = builtin_apis.lookup(ApiIdentity("malloc"))
        assert malloc.params == ("size",)
        assert malloc.closed_form
        assert not isinstance(malloc.post, CTrue)

    def test_noreturn_post(self, builtin_apis):
        assert builtin_apis.lookup(ApiIdentity("exit")).post == CConst(False)

    def test_lookup_falls_back_to_name(self, builtin_apis):
        entry = builtin_apis.lookup(ApiIdentity("HeapAlloc"))
        assert entry.identity.convention == "stdcall"

    def test_unknown_api(self, builtin_apis):
        assert builtin_apis.lookup(ApiIdentity("frobnicate")) is None
        assert builtin_apis.synthesize(ApiIdentity("frobnicate")).unconstrained

    @pytest.mark.parametrize("text", [
        "(api f (params x) (post (> y 0)))",
        "(api f (params x) (pre (> ret 0)))",
        "(api f (convention pascal) (params x))",
        "(api f (params x) (colour red))",
        "(notapi f)",
    ])
    def test_malformed_entries(self, text):
        with pytest.raises(ProgramFormatError):
            parse_api_entries(text)


class TestSynthesized:

    def test_synthesize_from_library_body(self, library):
        db = SynthesizedApiDatabase([library])
        identity = ApiIdentity("clamp")
        assert db.can_synthesize(identity)
        assert db.lookup(identity) is None

        entry = db.synthesize(identity)
        assert entry.origin == "synthesized"
        assert entry.params == ("x",)
        assert entry.entry is not None and entry.exit is not None
        assert entry.entry.scope == "libclamp"
        assert entry.clauses
        assert db.lookup(identity) is entry

    def test_memoized(self, library):
        db = SynthesizedApiDatabase([library])
        first = db.synthesize(ApiIdentity("clamp"))
        second = db.synthesize(ApiIdentity("clamp"))
        assert first is second
        assert db.synthesis_count == 1

    def test_concurrent_requests_publish_one_entry(self, library):
        db = SynthesizedApiDatabase([library])
        identity = ApiIdentity("clamp")
        barrier = threading.Barrier(6)
        results = []

        def worker():
            barrier.wait()
            results.append(db.synthesize(identity))

        threads = [threading.Thread(target=worker) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(10.0)
        assert len(results) == 6
        assert all(r is results[0] for r in results)
        assert db.synthesis_count == 1
        assert len(db.entries()) == 1

    def test_recursive_cycle_terminates(self, library):
        db = SynthesizedApiDatabase([library])
        ping = db.synthesize(ApiIdentity("ping"))
        assert ping.origin == "synthesized"
        assert db.lookup(ApiIdentity("pong")) is not None
        assert db.synthesis_count == 2

    def test_entry_built_against_another_threads_pending_is_not_cached(self, library):
        db = SynthesizedApiDatabase([library])
        ping, pong = ApiIdentity("ping"), ApiIdentity("pong")
        started, gate = threading.Event(), threading.Event()
        build = db._build

        def hold_pong(identity, body, token):
            if identity == pong and not gate.is_set():
                started.set()
                gate.wait(10.0)
            return build(identity, body, token)

        with mock.patch.object(db, "_build", side_effect=hold_pong):
            holder = threading.Thread(target=db.synthesize, args=(pong,))
            holder.start()
            assert started.wait(10.0)
            first = db.synthesize(ping)
            assert first.origin == "synthesized"
            assert db.lookup(ping) is None
            gate.set()
            holder.join(10.0)

        assert db.lookup(pong) is not None
        assert db.synthesize(ping) is db.lookup(ping)

    def test_no_library_gives_unconstrained(self):
        db = SynthesizedApiDatabase([])
        entry = db.synthesize(ApiIdentity("clamp"))
        assert entry.unconstrained
        assert db.lookup(ApiIdentity("clamp")) is None

    def test_release_is_idempotent(self, library):
        db = SynthesizedApiDatabase([library])
        entry = db.synthesize(ApiIdentity("clamp"))
        db.release()
        db.release()
        assert db.lookup(ApiIdentity("clamp")) is entry


class TestComposite:

    def test_builtin_wins(self, library_apis):
        entry = library_apis.synthesize(ApiIdentity("malloc"))
        assert entry.origin == "builtin"
        assert not library_apis.can_synthesize(ApiIdentity("malloc"))

    def test_library_body_when_no_builtin(self, library_apis):
        assert library_apis.can_synthesize(ApiIdentity("clamp"))
        entry = library_apis.synthesize(ApiIdentity("clamp"))
        assert library_apis.lookup(ApiIdentity("clamp")) is entry

    def test_default_construction(self):
        db = GhiHornApiDatabase()
        assert db.lookup(ApiIdentity("malloc")) is None
        assert isinstance(db.synthesize(ApiIdentity("malloc")), ApiEntry)
        db.release()

    def test_builtin_from_text(self):
        db = BuiltinApiDatabase.from_text("(api twice (params x) (post (== ret (* 2 x))))")
        assert db.names() == ["twice"]
