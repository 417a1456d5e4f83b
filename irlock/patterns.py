"""
irlock/patterns.py
══════════════════

Declarative name tables that tell the engine which calls acquire locks
and which calls are lock-related library APIs (unwrap, drop, deref, ...).

Nothing in the analysis core compares callee names directly; every
question goes through a :class:`PatternTable`, which can be the built-in
:func:`default_patterns` table or one loaded from an S-expression file::

    (patterns
      (extends default)
      (exclude "RawSpin")
      (lock spin-lock
        (match prefix "mycrate::SpinLock<T>::lock")
        (resource 0) (guard result) (mode exclusive) (wrapped nil))
      (api manual-drop (match exact "mycrate::SpinGuard::release")))

``(guard result)`` makes the call result the guard; ``(guard arg N)``
names an out-parameter instead.  ``(wrapped t)`` marks patterns whose
guard comes back inside a ``Result`` that has to be unwrapped first.

Public API
──────────
    ShareMode, MatchKind, ApiKind
    NameMatcher, LockPattern, ApiPattern, PatternTable
    default_patterns()
    load_patterns(text, source=...)      -> PatternTable
    load_patterns_file(path)             -> PatternTable
"""

from __future__ import annotations

import enum
import fnmatch
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

import sexpdata
from sexpdata import Symbol

from .errors import PatternConfigError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class ShareMode(enum.Enum):
    EXCLUSIVE = "exclusive"
    SHARED    = "shared"


class MatchKind(enum.Enum):
    PREFIX   = "prefix"
    CONTAINS = "contains"
    EXACT    = "exact"
    GLOB     = "glob"


class ApiKind(enum.Enum):
    """Lock-related library calls the lifetime automaton recognises."""

    UNWRAP      = "unwrap"
    PASSTHROUGH = "result-passthrough"
    AUTO_DROP   = "auto-drop"
    MANUAL_DROP = "manual-drop"
    DEREF       = "deref"


# ---------------------------------------------------------------------------
# Patterns
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class NameMatcher:
    kind: MatchKind
    text: str

    def matches(self, name: str) -> bool:
        if self.kind is MatchKind.PREFIX:
            return name.startswith(self.text)
        if self.kind is MatchKind.CONTAINS:
            return self.text in name
        if self.kind is MatchKind.EXACT:
            return name == self.text
        return fnmatch.fnmatchcase(name, self.text)


def _any_match(matchers: Iterable[NameMatcher], name: str) -> bool:
    return any(m.matches(name) for m in matchers)


@dataclass(frozen=True)
class LockPattern:
    """One lock-acquisition API.

    Attributes
    ----------
    name : str
        Identifier used in logs and in ``irlock locks`` output.
    matchers : tuple[NameMatcher, ...]
        The pattern applies when any matcher accepts the callee name.
    resource_arg : int
        Index of the argument holding the lock object.
    guard_arg : int or None
        Index of the out-parameter receiving the guard, or ``None`` when
        the call result is the guard.
    share_mode : ShareMode
    wrapped : bool
        Guard is delivered inside a ``Result`` that must be unwrapped.
    min_args : int
        Smallest argument count a well-formed call has.
    exclude : tuple[str, ...]
        Substrings that veto a match.
    """

    name: str
    matchers: Tuple[NameMatcher, ...]
    resource_arg: int = 0
    guard_arg: Optional[int] = None
    share_mode: ShareMode = ShareMode.EXCLUSIVE
    wrapped: bool = False
    min_args: int = 1
    exclude: Tuple[str, ...] = ()

    @property
    def guard_is_result(self) -> bool:
        return self.guard_arg is None

    def matches(self, callee_name: str) -> bool:
        if any(s in callee_name for s in self.exclude):
            return False
        return _any_match(self.matchers, callee_name)


@dataclass(frozen=True)
class ApiPattern:
    kind: ApiKind
    matchers: Tuple[NameMatcher, ...]

    def matches(self, callee_name: str) -> bool:
        return _any_match(self.matchers, callee_name)


class PatternTable:
    """Ordered lock and API patterns with per-name lookup caches.

    Lock patterns are tried in order and the first match wins, so more
    specific entries belong earlier in the table.
    """

    def __init__(
        self,
        locks: Iterable[LockPattern] = (),
        apis: Iterable[ApiPattern] = (),
        exclude: Iterable[str] = (),
    ) -> None:
        self.locks: Tuple[LockPattern, ...] = tuple(locks)
        self.apis: Tuple[ApiPattern, ...] = tuple(apis)
        self.exclude: Tuple[str, ...] = tuple(exclude)
        self._lock_cache: Dict[str, Optional[LockPattern]] = {}
        self._api_cache: Dict[str, Optional[ApiKind]] = {}

    def match_lock(self, callee_name: str) -> Optional[LockPattern]:
        if callee_name in self._lock_cache:
            return self._lock_cache[callee_name]
        hit: Optional[LockPattern] = None
        if not any(s in callee_name for s in self.exclude):
            for pat in self.locks:
                if pat.matches(callee_name):
                    hit = pat
                    break
        self._lock_cache[callee_name] = hit
        return hit

    def api_kind(self, callee_name: str) -> Optional[ApiKind]:
        if callee_name in self._api_cache:
            return self._api_cache[callee_name]
        hit: Optional[ApiKind] = None
        for pat in self.apis:
            if pat.matches(callee_name):
                hit = pat.kind
                break
        self._api_cache[callee_name] = hit
        return hit

    def is_library(self, callee_name: str) -> bool:
        """Whether *callee_name* is a lock or lock-related API."""
        return self.match_lock(callee_name) is not None or \
            self.api_kind(callee_name) is not None

    def extended(self, other: "PatternTable") -> "PatternTable":
        """New table: *other*'s entries first, then this table's."""
        return PatternTable(
            locks=other.locks + self.locks,
            apis=other.apis + self.apis,
            exclude=self.exclude + other.exclude,
        )

    def __len__(self) -> int:
        return len(self.locks) + len(self.apis)

    def __repr__(self) -> str:
        return f"PatternTable(locks={len(self.locks)}, apis={len(self.apis)})"


# ---------------------------------------------------------------------------
# Built-in table
# ---------------------------------------------------------------------------

def _prefixes(*texts: str) -> Tuple[NameMatcher, ...]:
    return tuple(NameMatcher(MatchKind.PREFIX, t) for t in texts)


def _contains(*texts: str) -> Tuple[NameMatcher, ...]:
    return tuple(NameMatcher(MatchKind.CONTAINS, t) for t in texts)


_RESULT = "_ZN4core6result19Result$LT$T$C$E$GT$"

_DEFAULT_EXCLUDE = ("raw_mutex", "RawMutex", "raw_rwlock", "RawRwLock")

_DEFAULT_LOCKS = (
    # std::sync: Mutex::lock and RwLock::write return LockResult through an
    # sret slot (arg 0); RwLock::read returns it directly.
    LockPattern(
        "std-mutex-lock",
        _prefixes("std::sync::mutex::Mutex<T>::lock",
                  "_ZN3std4sync5mutex14Mutex$LT$T$GT$4lock17h"),
        resource_arg=1, guard_arg=0, wrapped=True, min_args=2,
    ),
    LockPattern(
        "std-rwlock-read",
        _prefixes("std::sync::rwlock::RwLock<T>::read",
                  "_ZN3std4sync6rwlock15RwLock$LT$T$GT$4read17h"),
        resource_arg=0, share_mode=ShareMode.SHARED, wrapped=True,
    ),
    LockPattern(
        "std-rwlock-write",
        _prefixes("std::sync::rwlock::RwLock<T>::write",
                  "_ZN3std4sync6rwlock15RwLock$LT$T$GT$5write17h"),
        resource_arg=1, guard_arg=0, wrapped=True, min_args=2,
    ),
    # lock_api backs parking_lot.  Recursive read() on one thread may
    # deadlock there, so reads are exclusive for detection purposes.
    LockPattern(
        "lock-api-mutex-lock",
        _prefixes("lock_api::mutex::Mutex<R,T>::lock",
                  "_ZN8lock_api5mutex18Mutex$LT$R$C$T$GT$4lock17h"),
    ),
    LockPattern(
        "lock-api-rwlock-read",
        _prefixes("lock_api::rwlock::RwLock<R,T>::read",
                  "_ZN8lock_api6rwlock19RwLock$LT$R$C$T$GT$4read17h"),
    ),
    LockPattern(
        "lock-api-rwlock-write",
        _prefixes("lock_api::rwlock::RwLock<R,T>::write",
                  "_ZN8lock_api6rwlock19RwLock$LT$R$C$T$GT$5write17h"),
    ),
    LockPattern(
        "handy-rwlock-wl",
        _contains("HandyRwLock<T>>::wl", "HandyRwLock$LT$T$GT$$GT$2wl"),
    ),
    LockPattern(
        "handy-rwlock-rl",
        _contains("HandyRwLock<T>>::rl", "HandyRwLock$LT$T$GT$$GT$2rl"),
        share_mode=ShareMode.SHARED,
    ),
    LockPattern(
        "tokio-sharded-rwlock-read",
        _contains("tokio_net::driver::sharded_rwlock::RwLock<T>::read",
                  "_ZN9tokio_net6driver14sharded_rwlock15RwLock$LT$T$GT$4read"),
        share_mode=ShareMode.SHARED,
    ),
    LockPattern(
        "tokio-sharded-rwlock-write",
        _contains("tokio_net::driver::sharded_rwlock::RwLock<T>::write",
                  "_ZN9tokio_net6driver14sharded_rwlock15RwLock$LT$T$GT$5write"),
    ),
    LockPattern(
        "crossbeam-spinlock-lock",
        _contains("crossbeam_channel::utils::Spinlock<T>::lock",
                  "_ZN17crossbeam_channel5utils17Spinlock$LT$T$GT$4lock"),
    ),
    LockPattern(
        "len-caching-mutex-lock",
        _contains("len_caching_lock::mutex::LenCachingMutex<T>::lock",
                  "_ZN16len_caching_lock5mutex24LenCachingMutex$LT$T$GT$4lock"),
    ),
)

_DEFAULT_APIS = (
    ApiPattern(ApiKind.UNWRAP, _prefixes(
        "core::result::Result<T,E>::unwrap",
        "core::result::Result<T,E>::expect",
        _RESULT + "6unwrap17h",
        _RESULT + "9unwrap_or17h",
        _RESULT + "14unwrap_or_else17h",
        _RESULT + "17unwrap_or_default17h",
        _RESULT + "6expect17h",
    )),
    ApiPattern(ApiKind.PASSTHROUGH, _prefixes(
        "core::result::Result<T,E>::map_err",
        "<core::result::Result<T,E> as core::ops::try::Try>::into_result",
        _RESULT + "7map_err17h",
        "_ZN73_$LT$core..result..Result$LT$T$C$E$GT$$u20$as$u20$"
        "core..ops..try..Try$GT$11into_result",
    )),
    ApiPattern(ApiKind.AUTO_DROP, _prefixes(
        "core::ptr::real_drop_in_place",
        "core::ptr::drop_in_place",
        "_ZN4core3ptr18real_drop_in_place",
        "_ZN4core3ptr13drop_in_place",
    )),
    ApiPattern(ApiKind.MANUAL_DROP, _prefixes(
        "core::mem::drop",
        "_ZN4core3mem4drop17h",
    )),
    ApiPattern(ApiKind.DEREF, (
        NameMatcher(MatchKind.GLOB, "<*Guard<*> as core::ops::deref::Deref*>::deref*"),
        NameMatcher(MatchKind.GLOB, "_ZN*Guard$LT$*$u20$as$u20$core..ops..deref..Deref*"),
    )),
)


def default_patterns() -> PatternTable:
    """The built-in std / parking_lot / tokio / crossbeam table."""
    return PatternTable(_DEFAULT_LOCKS, _DEFAULT_APIS, _DEFAULT_EXCLUDE)


# ---------------------------------------------------------------------------
# S-expression loader
# ---------------------------------------------------------------------------

_TRUE = ("t", "true", "yes")
_FALSE = ("nil", "false", "no")


class _TableReader:

    def __init__(self, source: str) -> None:
        self.source = source

    def fail(self, message: str) -> PatternConfigError:
        return PatternConfigError(message, self.source)

    def sym(self, s: Any) -> str:
        if isinstance(s, Symbol):
            return s.value()
        raise self.fail(f"expected symbol, got {s!r}")

    def text(self, s: Any) -> str:
        if isinstance(s, Symbol):
            return s.value()
        if isinstance(s, str):
            return str(s)
        raise self.fail(f"expected string, got {s!r}")

    def int_(self, s: Any) -> int:
        if isinstance(s, bool) or not isinstance(s, int):
            raise self.fail(f"expected integer, got {s!r}")
        if s < 0:
            raise self.fail(f"argument index must be non-negative, got {s}")
        return s

    def head(self, s: Any) -> str:
        if not isinstance(s, list) or not s:
            raise self.fail(f"expected (tag ...) form, got {s!r}")
        return self.sym(s[0])

    def matcher(self, clause: list) -> NameMatcher:
        if len(clause) != 3:
            raise self.fail(f"(match KIND \"text\") expected, got {clause!r}")
        try:
            kind = MatchKind(self.sym(clause[1]))
        except ValueError:
            raise self.fail(f"unknown match kind {clause[1]!r}") from None
        return NameMatcher(kind, self.text(clause[2]))

    def read(self, raw: Any) -> Tuple[PatternTable, bool]:
        if self.head(raw) != "patterns":
            raise self.fail("top-level form must be (patterns ...)")
        extends = False
        locks: List[LockPattern] = []
        apis: List[ApiPattern] = []
        exclude: List[str] = []
        for item in raw[1:]:
            tag = self.head(item)
            if tag == "extends":
                if len(item) != 2 or self.sym(item[1]) != "default":
                    raise self.fail("only (extends default) is supported")
                extends = True
            elif tag == "exclude":
                exclude.extend(self.text(s) for s in item[1:])
            elif tag == "lock":
                locks.append(self.lock(item))
            elif tag == "api":
                apis.append(self.api(item))
            else:
                raise self.fail(f"unknown form ({tag} ...)")
        return PatternTable(locks, apis, exclude), extends

    def lock(self, form: list) -> LockPattern:
        if len(form) < 2:
            raise self.fail("(lock NAME ...) needs a name")
        name = self.text(form[1])
        fields: Dict[str, Any] = {}
        matchers: List[NameMatcher] = []
        excl: List[str] = []
        for clause in form[2:]:
            tag = self.head(clause)
            if tag == "match":
                matchers.append(self.matcher(clause))
            elif tag == "resource" and len(clause) == 2:
                fields["resource_arg"] = self.int_(clause[1])
            elif tag == "guard" and len(clause) == 2 and self.sym(clause[1]) == "result":
                fields["guard_arg"] = None
            elif tag == "guard" and len(clause) == 3 and self.sym(clause[1]) == "arg":
                fields["guard_arg"] = self.int_(clause[2])
            elif tag == "mode" and len(clause) == 2:
                try:
                    fields["share_mode"] = ShareMode(self.sym(clause[1]))
                except ValueError:
                    raise self.fail(f"lock {name}: unknown mode {clause[1]!r}") from None
            elif tag == "wrapped" and len(clause) == 2:
                fields["wrapped"] = self.flag(clause[1])
            elif tag == "min-args" and len(clause) == 2:
                fields["min_args"] = self.int_(clause[1])
            elif tag == "exclude":
                excl.extend(self.text(s) for s in clause[1:])
            else:
                raise self.fail(f"lock {name}: malformed clause {clause!r}")
        if not matchers:
            raise self.fail(f"lock {name}: at least one (match ...) is required")
        pat = LockPattern(name, tuple(matchers), exclude=tuple(excl), **fields)
        needed = max(pat.resource_arg, pat.guard_arg if pat.guard_arg is not None else -1) + 1
        if pat.min_args < needed:
            pat = LockPattern(pat.name, pat.matchers, pat.resource_arg, pat.guard_arg,
                              pat.share_mode, pat.wrapped, needed, pat.exclude)
        return pat

    def api(self, form: list) -> ApiPattern:
        if len(form) < 3:
            raise self.fail("(api KIND (match ...) ...) expected")
        try:
            kind = ApiKind(self.sym(form[1]))
        except ValueError:
            raise self.fail(f"unknown api kind {form[1]!r}") from None
        matchers = []
        for clause in form[2:]:
            if self.head(clause) != "match":
                raise self.fail(f"api {kind.value}: malformed clause {clause!r}")
            matchers.append(self.matcher(clause))
        return ApiPattern(kind, tuple(matchers))

    def flag(self, s: Any) -> bool:
        name = self.sym(s)
        if name in _TRUE:
            return True
        if name in _FALSE:
            return False
        raise self.fail(f"expected t or nil, got {name}")


def load_patterns(text: str, source: str = "<string>") -> PatternTable:
    """Parse a pattern table.  ``(extends default)`` prepends it to the
    built-in table, otherwise it replaces it."""
    try:
        raw = sexpdata.loads(text, nil=None, true=None, false=None)
    except Exception as exc:
        raise PatternConfigError(f"S-expression syntax error: {exc}", source) from exc
    table, extends = _TableReader(source).read(raw)
    if extends:
        table = default_patterns().extended(table)
    logger.info("loaded %d lock and %d api pattern(s) from %s",
                len(table.locks), len(table.apis), source)
    return table


def load_patterns_file(path: Union[str, Path]) -> PatternTable:
    p = Path(path)
    try:
        text = p.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise PatternConfigError(f"cannot read pattern file: {exc}", str(p)) from exc
    return load_patterns(text, source=str(p))
