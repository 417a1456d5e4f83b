# tests/test_patterns.py
"""
Tests for the lock / API pattern table and its S-expression loader.
"""

import pytest

from conftest import DEREF, DROP, MAP_ERR, MEM_DROP, PL_LOCK, PL_READ, STD_LOCK, STD_READ, UNWRAP
from irlock.errors import PatternConfigError
from irlock.patterns import (
    ApiKind,
    MatchKind,
    NameMatcher,
    ShareMode,
    default_patterns,
    load_patterns,
    load_patterns_file,
)


class TestNameMatcher:

    @pytest.mark.parametrize("kind,text,name,expected", [
        (MatchKind.PREFIX, "a::b", "a::b::c", True),
        (MatchKind.PREFIX, "a::b", "x::a::b", False),
        (MatchKind.CONTAINS, "Spin", "x::Spinlock::lock", True),
        (MatchKind.EXACT, "f", "f", True),
        (MatchKind.EXACT, "f", "fg", False),
        (MatchKind.GLOB, "*Guard<*>::deref", "MutexGuard<T>::deref", True),
    ])
    def test_match_kinds(self, kind, text, name, expected):
        assert NameMatcher(kind, text).matches(name) is expected


class TestDefaultTable:
    """The built-in std / parking_lot table."""

    def setup_method(self):
        self.table = default_patterns()

    def test_std_mutex_lock(self):
        pat = self.table.match_lock(STD_LOCK + "::h1234")
        assert pat.name == "std-mutex-lock"
        assert pat.resource_arg == 1
        assert pat.guard_arg == 0
        assert pat.wrapped
        assert pat.share_mode is ShareMode.EXCLUSIVE

    def test_std_rwlock_read_is_shared(self):
        pat = self.table.match_lock(STD_READ)
        assert pat.share_mode is ShareMode.SHARED
        assert pat.guard_is_result
        assert pat.wrapped

    def test_parking_lot_read_is_exclusive(self):
        pat = self.table.match_lock(PL_READ)
        assert pat.share_mode is ShareMode.EXCLUSIVE
        assert not pat.wrapped

    def test_parking_lot_lock(self):
        pat = self.table.match_lock(PL_LOCK)
        assert pat.name == "lock-api-mutex-lock"
        assert pat.guard_is_result

    def test_mangled_name(self):
        pat = self.table.match_lock("_ZN3std4sync5mutex14Mutex$LT$T$GT$4lock17h0123abcdE")
        assert pat is not None and pat.name == "std-mutex-lock"

    def test_raw_mutex_excluded(self):
        assert self.table.match_lock("lock_api::mutex::Mutex<R,T>::lock::RawMutex") is None

    def test_unrelated_call(self):
        assert self.table.match_lock("app::do_work") is None
        assert self.table.api_kind("app::do_work") is None

    @pytest.mark.parametrize("name,kind", [
        (UNWRAP, ApiKind.UNWRAP),
        (MAP_ERR, ApiKind.PASSTHROUGH),
        (DROP, ApiKind.AUTO_DROP),
        (MEM_DROP, ApiKind.MANUAL_DROP),
        (DEREF, ApiKind.DEREF),
    ])
    def test_api_kinds(self, name, kind):
        assert self.table.api_kind(name) is kind

    def test_is_library(self):
        assert self.table.is_library(PL_LOCK)
        assert self.table.is_library(DROP)
        assert not self.table.is_library("app::helper")


class TestLoadPatterns:
    """User tables, standalone and extending the defaults."""

    SPIN = """
        (patterns
          (lock spin-lock
            (match prefix "mycrate::SpinLock<T>::lock")
            (resource 1) (guard arg 0) (mode shared) (wrapped t))
          (api manual-drop (match exact "mycrate::SpinGuard::release")))
    """

    def test_standalone_replaces_defaults(self):
        table = load_patterns(self.SPIN)
        assert table.match_lock(PL_LOCK) is None
        pat = table.match_lock("mycrate::SpinLock<T>::lock")
        assert pat.name == "spin-lock"
        assert pat.resource_arg == 1
        assert pat.guard_arg == 0
        assert pat.share_mode is ShareMode.SHARED
        assert pat.wrapped
        assert table.api_kind("mycrate::SpinGuard::release") is ApiKind.MANUAL_DROP

    def test_min_args_covers_indices(self):
        pat = load_patterns(self.SPIN).locks[0]
        assert pat.min_args == 2

    def test_extends_default(self):
        table = load_patterns("""
            (patterns
              (extends default)
              (exclude "Fake")
              (lock mine (match contains "Locker::grab") (guard result)))
        """)
        assert table.match_lock("x::Locker::grab").name == "mine"
        assert table.match_lock(PL_LOCK) is not None
        assert table.match_lock("x::FakeLocker::grab") is None

    def test_user_entries_take_precedence(self):
        table = load_patterns("""
            (patterns
              (extends default)
              (lock override (match exact "lock_api::mutex::Mutex<R,T>::lock")
                (mode shared)))
        """)
        assert table.match_lock(PL_LOCK).name == "override"

    def test_load_file(self, tmp_path):
        path = tmp_path / "locks.sexp"
        path.write_text(self.SPIN, encoding="utf-8")
        assert len(load_patterns_file(path).locks) == 1

    @pytest.mark.parametrize("text", [
        "(locks)",
        "(patterns (lock nomatch (resource 0)))",
        "(patterns (lock bad (match regex \"x\")))",
        "(patterns (lock bad (match prefix \"x\") (mode sometimes)))",
        "(patterns (lock bad (match prefix \"x\") (resource -1)))",
        "(patterns (api teleport (match prefix \"x\")))",
        "(patterns (extends other))",
        "(patterns (lock",
    ])
    def test_malformed(self, text):
        with pytest.raises(PatternConfigError):
            load_patterns(text)

    def test_missing_file(self, tmp_path):
        with pytest.raises(PatternConfigError, match="cannot read"):
            load_patterns_file(tmp_path / "absent.sexp")

    def test_non_utf8_file(self, tmp_path):
        path = tmp_path / "latin1.sexp"
        path.write_bytes(b'(patterns (lock x (match exact "caf\xe9")))')
        with pytest.raises(PatternConfigError, match="cannot read"):
            load_patterns_file(path)
