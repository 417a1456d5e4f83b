"""
irlock/alias.py
═══════════════

Intra-function must-alias oracle and pointer-provenance helpers.

The detector treats alias analysis as a black box behind
:class:`AliasOracle`.  :class:`BasicAliasOracle` is the default: it only
answers "yes" when two values provably denote the same storage through
casts, constant-index field accesses and loads from an unmodified slot.
Anything else is "no", which keeps intra-function grouping conservative.

Public API
──────────
    AliasOracle        - protocol: must_alias(a, b) -> bool
    BasicAliasOracle   - structural must-alias
    strip_casts        - follow cast chains back to their source
    underlying_object  - follow cast / gep / load chains to the base pointer
"""

from __future__ import annotations

import logging
from typing import Dict, Optional, Protocol, Set, Tuple

from .ir import OpKind, Value, ValueKind

logger = logging.getLogger(__name__)

_MAX_CHAIN = 64


class AliasOracle(Protocol):
    def must_alias(self, a: Value, b: Value) -> bool:
        ...


def strip_casts(value: Value) -> Value:
    """Return the first non-cast value on *value*'s definition chain."""
    cur = value
    for _ in range(_MAX_CHAIN):
        op = cur.defining_op
        if op is None or op.kind is not OpKind.CAST or not op.operands:
            return cur
        cur = op.operands[0]
    return cur


def underlying_object(value: Value) -> Value:
    """Walk back through casts, geps and loads to the base object."""
    cur = value
    for _ in range(_MAX_CHAIN):
        op = cur.defining_op
        if op is None or not op.operands:
            return cur
        if op.kind in (OpKind.CAST, OpKind.GEP, OpKind.LOAD):
            cur = op.operands[0]
            continue
        return cur
    return cur


class BasicAliasOracle:
    """Structural must-alias answers, cached per value pair."""

    def __init__(self) -> None:
        self._cache: Dict[Tuple[int, int], bool] = {}
        self._stored: Dict[int, bool] = {}

    def must_alias(self, a: Value, b: Value) -> bool:
        key = (a.id, b.id) if a.id <= b.id else (b.id, a.id)
        hit = self._cache.get(key)
        if hit is None:
            hit = self._must_alias(a, b, set())
            self._cache[key] = hit
        return hit

    def _must_alias(self, a: Value, b: Value, seen: Set[Tuple[int, int]]) -> bool:
        a, b = strip_casts(a), strip_casts(b)
        if a is b:
            return True
        if a.kind is ValueKind.CONSTANT or b.kind is ValueKind.CONSTANT:
            return False
        pair = (a.id, b.id)
        if pair in seen:
            return False
        seen.add(pair)

        da, db = a.defining_op, b.defining_op
        if da is None or db is None or da.kind is not db.kind:
            return False
        if da.kind is OpKind.GEP:
            if None in da.indices or da.indices != db.indices:
                return False
            return self._must_alias(da.operands[0], db.operands[0], seen)
        if da.kind is OpKind.LOAD:
            ptr_a, ptr_b = da.operands[0], db.operands[0]
            if not self._must_alias(ptr_a, ptr_b, seen):
                return False
            return not self._is_rewritten(strip_casts(ptr_a))
        return False

    def _is_rewritten(self, ptr: Value) -> bool:
        """True if *ptr* (or a cast of it) is written more than once."""
        hit = self._stored.get(ptr.id)
        if hit is not None:
            return hit
        writes = 0
        work = [ptr]
        seen: Set[int] = set()
        while work and writes < 2:
            cur = work.pop()
            if cur.id in seen:
                continue
            seen.add(cur.id)
            for use in cur.uses:
                kind = use.op.kind
                if kind in (OpKind.STORE, OpKind.MEMCPY, OpKind.MEMSET) and \
                        use.index == (1 if kind is OpKind.STORE else 0):
                    writes += 1
                elif kind is OpKind.CAST and use.op.result is not None:
                    work.append(use.op.result)
        result = writes > 1
        self._stored[ptr.id] = result
        if result:
            logger.debug("slot %r is rewritten; loads from it are not must-alias", ptr)
        return result


def same_owner(a: Value, b: Value) -> Optional[bool]:
    """Whether *a* and *b* live in the same function (None if unknowable)."""
    if a.function is None or b.function is None:
        return None
    return a.function is b.function
