# tests/conftest.py
"""
Shared IR snippets and helpers.

Programs are written in the textual IR and loaded with
:func:`irlock.loader.load_module`, so every test exercises the same
graph the CLI would build.  Callee spellings match the built-in pattern
table.
"""

import textwrap

import pytest

from irlock.config import AnalysisConfig
from irlock.detector import analyze_module
from irlock.loader import load_module

PL_LOCK = "lock_api::mutex::Mutex<R,T>::lock"
PL_READ = "lock_api::rwlock::RwLock<R,T>::read"
STD_LOCK = "std::sync::mutex::Mutex<T>::lock"
STD_READ = "std::sync::rwlock::RwLock<T>::read"
STD_WRITE = "std::sync::rwlock::RwLock<T>::write"
UNWRAP = "core::result::Result<T,E>::unwrap"
MAP_ERR = "core::result::Result<T,E>::map_err"
DROP = "core::ptr::drop_in_place"
MEM_DROP = "core::mem::drop"
DEREF = "<std::sync::mutex::MutexGuard<T> as core::ops::deref::Deref>::deref"

_NAMES = {
    "PL_LOCK": PL_LOCK,
    "PL_READ": PL_READ,
    "STD_LOCK": STD_LOCK,
    "STD_READ": STD_READ,
    "STD_WRITE": STD_WRITE,
    "UNWRAP": UNWRAP,
    "MAP_ERR": MAP_ERR,
    "DROP": DROP,
    "MEM_DROP": MEM_DROP,
    "DEREF": DEREF,
}

PRELUDE = """\
  (struct Mutex i64)
  (struct State Mutex Mutex)
  (struct Other Mutex Mutex)
"""


def ir(body: str, name: str = "test") -> str:
    """Wrap *body* in a module with the common struct prelude.

    ``{PL_LOCK}``-style placeholders are replaced by quoted callee names.
    """
    text = textwrap.dedent(body)
    for key, val in _NAMES.items():
        text = text.replace("{" + key + "}", f'"{val}"')
    return f"(module {name}\n{PRELUDE}{text})\n"


def load(body: str, name: str = "test"):
    return load_module(ir(body, name), filename=f"{name}.ir")


def scan(body: str, config: AnalysisConfig = None, **kwargs):
    """Load *body* and run the detector over it."""
    return analyze_module(load(body), config, **kwargs)


def chains(result):
    return [r.chain_names for r in result.reports]


# ---------------------------------------------------------------------------
# Programs
# ---------------------------------------------------------------------------

SAME_BLOCK_DOUBLE = """
(function "app::double" (params (s (ptr State)))
  (block entry
    (gep m (ptr Mutex) s 0 0 (at "src/lib.rs" 10 "/work"))
    (call g1 (ptr i8) {PL_LOCK} m (at "src/lib.rs" 11 "/work"))
    (call g2 (ptr i8) {PL_LOCK} m (at "src/lib.rs" 12 "/work"))
    (call _ void {DROP} g2)
    (call _ void {DROP} g1)
    (ret)))
"""

NESTED_DROP = """
(function "app::nested" (params (s (ptr State)))
  (block entry
    (gep m (ptr Mutex) s 0 0)
    (call g1 (ptr i8) {PL_LOCK} m)
    (call _ void {DROP} g1)
    (call g2 (ptr i8) {PL_LOCK} m)
    (call _ void {MEM_DROP} g2)
    (ret)))
"""

INTERPROCEDURAL = """
(function "app::outer" (params (s (ptr State)))
  (block entry
    (gep m (ptr Mutex) s 0 0 (at "src/outer.rs" 5 "/work"))
    (call g (ptr i8) {PL_LOCK} m (at "src/outer.rs" 6 "/work"))
    (call _ void "app::inner" s (at "src/outer.rs" 7 "/work"))
    (call _ void {DROP} g)
    (ret)))
(function "app::inner" (params (s (ptr State)))
  (block entry
    (gep m (ptr Mutex) s 0 0)
    (call g (ptr i8) {PL_LOCK} m (at "src/inner.rs" 20 "/work"))
    (call _ void {DROP} g)
    (ret)))
"""

SHARED_READS = """
(function "app::reads" (params (l (ptr Mutex)))
  (block entry
    (call r1 (ptr i8) {STD_READ} l)
    (call g1 (ptr i8) {UNWRAP} r1)
    (call r2 (ptr i8) {STD_READ} l)
    (call g2 (ptr i8) {UNWRAP} r2)
    (call _ void {DROP} g2)
    (call _ void {DROP} g1)
    (ret)))
"""

STD_MUTEX_DOUBLE = """
(function "app::std_double" (params (m (ptr Mutex)))
  (block entry
    (alloca r1 i8)
    (call _ void {STD_LOCK} r1 m)
    (alloca g1 i8)
    (call _ void {UNWRAP} g1 r1)
    (alloca r2 i8)
    (call _ void {STD_LOCK} r2 m)
    (alloca g2 i8)
    (call _ void {UNWRAP} g2 r2)
    (call _ void {DROP} g2)
    (call _ void {DROP} g1)
    (ret)))
"""

WRAPPER = """
(function "app::get" (params (s (ptr State))) (returns (ptr i8))
  (block entry
    (gep m (ptr Mutex) s 0 0)
    (call g (ptr i8) {PL_LOCK} m (at "src/get.rs" 3 "/work"))
    (ret g)))
(function "app::caller" (params (s (ptr State)))
  (block entry
    (call g1 (ptr i8) "app::get" s (at "src/caller.rs" 8 "/work"))
    (gep m (ptr Mutex) s 0 0)
    (call g2 (ptr i8) {PL_LOCK} m (at "src/caller.rs" 9 "/work"))
    (call _ void {DROP} g2)
    (call _ void {DROP} g1)
    (ret)))
"""


@pytest.fixture
def default_config():
    return AnalysisConfig()
