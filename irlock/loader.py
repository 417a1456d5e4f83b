"""irlock/loader.py – S-expression IR text → :mod:`irlock.ir` program graph.

The textual form is a single ``(module ...)`` S-expression read with
``sexpdata.loads``.  Forms are dispatched on their head symbol, the same
way for top-level items and for operations.

Surface syntax
--------------
::

    (module NAME
      (struct Foo T ...)                       ;; nominal struct type
      (global G T)
      (declare "callee" (params T ...) (returns T))
      (function "f" (params (self (ptr Foo)) ...) (returns T)
        (block entry
          (gep m (ptr Mutex) self 0 1)
          (call g void "std::sync::mutex::Mutex<T>::lock" out m
                (at "src/lib.rs" 12 "/work/crate"))
          (br exit))
        (block exit (ret))))

Types are ``void``, integer names (``i1`` .. ``i128``, ``usize``, ...),
declared struct names, ``(ptr T)``, ``(array N T)``, or ``?`` / ``_`` for
"unknown".  In operand position an integer is a constant, a symbol names
a local value (or a global), and a string names a function.  A callee
written as a symbol is an indirect (unresolved) call through that value.
Forward references to values and blocks are allowed.

Public API
----------
``load_module(text, filename="<string>") -> Module``
``load_module_file(path) -> Module``
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import sexpdata
from sexpdata import Symbol

from .errors import IRParseError, UnknownValueError
from .ir import (
    VOID,
    BasicBlock,
    DebugLocation,
    Function,
    IRType,
    Module,
    OpKind,
    Operation,
    TypeKind,
    Value,
)

logger = logging.getLogger(__name__)

Sexp = Any  # Union[list, Symbol, str, int, float]

_STRING_TYPES: Tuple[type, ...] = tuple(
    t for t in (getattr(sexpdata, "String", None), str) if isinstance(t, type)
)
_INT_TYPE_RE = re.compile(r"^(?:[iu](?:1|8|16|32|64|128)|[iu]size|bool|char)$")
_NO_NAME = "_"
_UNKNOWN_TYPE = ("?", "_")


# ═══════════════════════════════════════════════════════════════════════
#  Helpers
# ═══════════════════════════════════════════════════════════════════════

def _is_symbol(s: Sexp) -> bool:
    return isinstance(s, Symbol)


def _is_string(s: Sexp) -> bool:
    return not isinstance(s, Symbol) and isinstance(s, _STRING_TYPES)


def _sym_name(s: Sexp, ctx: str = "") -> str:
    if isinstance(s, Symbol):
        return s.value()
    raise IRParseError(f"expected symbol, got {s!r}", ctx or None)


def _text(s: Sexp, ctx: str = "") -> str:
    """Name given either as a symbol or a string."""
    if isinstance(s, Symbol):
        return s.value()
    if _is_string(s):
        return str(s)
    raise IRParseError(f"expected name, got {s!r}", ctx or None)


def _head(s: Sexp) -> Optional[str]:
    if isinstance(s, list) and s and isinstance(s[0], Symbol):
        return s[0].value()
    return None


def _expect_list(s: Sexp, tag: str, min_len: int, ctx: str) -> list:
    if _head(s) != tag:
        raise IRParseError(f"expected ({tag} ...), got {s!r}", ctx)
    if len(s) < min_len:
        raise IRParseError(f"({tag} ...) needs at least {min_len - 1} argument(s)", ctx)
    return s


def _expect_int(s: Sexp, ctx: str) -> int:
    if isinstance(s, bool) or not isinstance(s, int):
        raise IRParseError(f"expected integer, got {s!r}", ctx)
    return s


# ═══════════════════════════════════════════════════════════════════════
#  Loader
# ═══════════════════════════════════════════════════════════════════════

class _FunctionScope:
    """Name → Value bindings while one function body is being built."""

    def __init__(self, fn: Function) -> None:
        self.fn = fn
        self.values: Dict[str, Value] = {p.name: p for p in fn.params}

    def bind(self, name: str, val: Value, ctx: str) -> None:
        if name in self.values:
            raise IRParseError(f"value %{name} defined twice", ctx)
        self.values[name] = val


class _ModuleLoader:

    def __init__(self, filename: str) -> None:
        self.filename = filename
        self.module: Module = Module()
        self._bodies: List[Tuple[Function, list]] = []

    # ----- entry -------------------------------------------------------------

    def load(self, raw: Sexp) -> Module:
        form = _expect_list(raw, "module", 1, self.filename)
        items = form[1:]
        if items and not isinstance(items[0], list):
            self.module.name = _text(items[0], self.filename)
            items = items[1:]

        # Struct names first so field and signature types can refer to them
        # in any order.
        for item in items:
            if _head(item) == "struct":
                name = _text(_expect_list(item, "struct", 2, self.filename)[1])
                self.module.structs[name] = ()
        for item in items:
            tag = _head(item)
            if tag is None:
                raise IRParseError(f"unexpected top-level item {item!r}", self.filename)
            handler = getattr(self, f"_load_{tag}", None)
            if handler is None:
                raise IRParseError(f"unknown top-level form '{tag}'", self.filename)
            handler(item)
        for fn, blocks in self._bodies:
            self._load_body(fn, blocks)
        logger.debug(
            "loaded module %s: %d functions (%d defined)",
            self.module.name, len(self.module.functions),
            len(self.module.defined_functions()),
        )
        return self.module

    # ----- top-level forms ---------------------------------------------------

    def _load_struct(self, form: list) -> None:
        name = _text(form[1])
        ctx = f"struct {name}"
        self.module.structs[name] = tuple(
            self._type(t, ctx) or IRType(TypeKind.INT, "?") for t in form[2:]
        )

    def _load_global(self, form: list) -> None:
        _expect_list(form, "global", 2, self.filename)
        name = _text(form[1])
        type_ = self._type(form[2], f"global {name}") if len(form) > 2 else None
        self.module.add_global(name, type_)

    def _load_declare(self, form: list) -> None:
        _expect_list(form, "declare", 2, self.filename)
        name = _text(form[1])
        ctx = f"declare {name}"
        fn = self._fresh_function(name, ctx)
        for clause in form[2:]:
            tag = _head(clause)
            if tag == "params":
                for idx, t in enumerate(clause[1:]):
                    self.module.add_param(fn, f"arg{idx}", self._type(t, ctx))
            elif tag == "returns":
                fn.return_type = self._return_type(clause, ctx)
            else:
                raise IRParseError(f"unexpected clause {clause!r}", ctx)

    def _load_function(self, form: list) -> None:
        _expect_list(form, "function", 2, self.filename)
        name = _text(form[1])
        ctx = f"function {name}"
        fn = self._fresh_function(name, ctx)
        blocks: List[list] = []
        for clause in form[2:]:
            tag = _head(clause)
            if tag == "params":
                for p in clause[1:]:
                    if not isinstance(p, list) or len(p) != 2:
                        raise IRParseError(f"parameter must be (name type), got {p!r}", ctx)
                    self.module.add_param(fn, _sym_name(p[0], ctx), self._type(p[1], ctx))
            elif tag == "returns":
                fn.return_type = self._return_type(clause, ctx)
            elif tag == "block":
                blocks.append(_expect_list(clause, "block", 2, ctx))
            else:
                raise IRParseError(f"unexpected clause {clause!r}", ctx)
        if not blocks:
            raise IRParseError("function has no blocks (use declare)", ctx)
        self._bodies.append((fn, blocks))

    def _return_type(self, clause: list, ctx: str) -> IRType:
        if len(clause) != 2:
            raise IRParseError(f"(returns T) takes exactly one type, got {clause!r}", ctx)
        return self._type(clause[1], ctx) or VOID

    def _fresh_function(self, name: str, ctx: str) -> Function:
        if name in self.module.functions:
            raise IRParseError("function defined twice", ctx)
        return self.module.add_function(name)

    # ----- types -------------------------------------------------------------

    def _type(self, s: Sexp, ctx: str) -> Optional[IRType]:
        if isinstance(s, Symbol):
            name = s.value()
            if name in _UNKNOWN_TYPE:
                return None
            if name == "void":
                return VOID
            if name in self.module.structs:
                return IRType.struct(name)
            if _INT_TYPE_RE.match(name):
                return IRType(TypeKind.INT, name)
            raise UnknownValueError(f"unknown type '{name}'", ctx)
        tag = _head(s)
        if tag == "ptr" and len(s) == 2:
            inner = self._type(s[1], ctx)
            return IRType.ptr(inner if inner is not None else IRType(TypeKind.INT, "i8"))
        if tag == "array" and len(s) == 3:
            inner = self._type(s[2], ctx)
            return IRType(TypeKind.ARRAY, pointee=inner, length=_expect_int(s[1], ctx))
        raise IRParseError(f"malformed type {s!r}", ctx)

    # ----- bodies ------------------------------------------------------------

    def _load_body(self, fn: Function, blocks: List[list]) -> None:
        scope = _FunctionScope(fn)
        pending: List[Tuple[Operation, list, str]] = []

        # Pass 1: blocks, operations and result values.
        for bform in blocks:
            label = _sym_name(bform[1], f"function {fn.name}")
            if fn.block(label) is not None:
                raise IRParseError(f"block '{label}' defined twice", f"function {fn.name}")
            bb = self.module.add_block(fn, label)
            for oform in bform[2:]:
                ctx = f"{fn.name}:{label}"
                op = self._create_op(bb, oform, scope, ctx)
                pending.append((op, oform, ctx))

        # Pass 2: operands and control-flow edges.
        for op, oform, ctx in pending:
            self._wire_op(op, oform, scope, ctx)
        for bb in fn.blocks:
            term = bb.terminator
            if term is None:
                raise IRParseError("block does not end in a terminator", f"{fn.name}:{bb.name}")
            for label in term.targets:
                dst = fn.block(label)
                if dst is None:
                    raise UnknownValueError(f"unknown block '{label}'", f"{fn.name}:{bb.name}")
                self.module.link(bb, dst)

    def _split_location(self, oform: list, ctx: str) -> Tuple[list, Optional[DebugLocation]]:
        if len(oform) > 1 and _head(oform[-1]) == "at":
            at = oform[-1]
            if len(at) < 3:
                raise IRParseError("(at FILE LINE [DIR]) expected", ctx)
            directory = _text(at[3], ctx) if len(at) > 3 else ""
            loc = DebugLocation(_text(at[1], ctx), _expect_int(at[2], ctx), directory)
            return oform[:-1], loc
        return oform, None

    def _create_op(self, bb: BasicBlock, oform: Sexp, scope: _FunctionScope,
                   ctx: str) -> Operation:
        tag = _head(oform)
        if tag is None:
            raise IRParseError(f"expected operation, got {oform!r}", ctx)
        try:
            kind = OpKind(tag)
        except ValueError:
            raise IRParseError(f"unknown operation '{tag}'", ctx) from None
        body, loc = self._split_location(oform, ctx)

        result_name: Optional[str] = None
        result_type: Optional[IRType] = None
        if kind in _RESULT_OPS:
            if len(body) < 3:
                raise IRParseError(f"({tag} RESULT TYPE ...) expected", ctx)
            name = _sym_name(body[1], ctx)
            result_type = self._type(body[2], ctx)
            if kind is OpKind.ALLOCA and result_type is not None:
                result_type = IRType.ptr(result_type)
            if name != _NO_NAME:
                result_name = name
        op = self.module.add_op(bb, kind, result_name=result_name, result_type=result_type)
        op.location = loc
        if op.result is not None:
            scope.bind(op.result.name, op.result, ctx)
        return op

    def _wire_op(self, op: Operation, oform: list, scope: _FunctionScope, ctx: str) -> None:
        body, _ = self._split_location(oform, ctx)
        kind = op.kind
        args = body[3:] if kind in _RESULT_OPS else body[1:]

        def values(items: list) -> List[Value]:
            return [self._operand(i, scope, ctx) for i in items]

        def need(n: int) -> None:
            if len(args) < n:
                raise IRParseError(f"({kind.value} ...) needs {n} operand(s)", ctx)

        if kind is OpKind.ALLOCA:
            return
        if kind in (OpKind.LOAD, OpKind.CAST):
            need(1)
            self.module.attach_operands(op, values(args[:1]))
        elif kind in (OpKind.STORE, OpKind.MEMCPY, OpKind.MEMSET,
                      OpKind.CMP, OpKind.BINOP):
            need(2)
            self.module.attach_operands(op, values(args))
        elif kind is OpKind.GEP:
            need(1)
            operands = [self._operand(args[0], scope, ctx)]
            indices: List[Optional[int]] = []
            for item in args[1:]:
                if isinstance(item, int) and not isinstance(item, bool):
                    indices.append(item)
                else:
                    indices.append(None)
                    operands.append(self._operand(item, scope, ctx))
            op.indices = tuple(indices)
            self.module.attach_operands(op, operands)
        elif kind is OpKind.EXTRACT:
            need(1)
            op.indices = tuple(_expect_int(i, ctx) for i in args[1:])
            self.module.attach_operands(op, values(args[:1]))
        elif kind is OpKind.INSERT:
            need(2)
            op.indices = tuple(_expect_int(i, ctx) for i in args[2:])
            self.module.attach_operands(op, values(args[:2]))
        elif kind is OpKind.PHI:
            need(1)
            self.module.attach_operands(op, values(args))
        elif kind is OpKind.CALL:
            need(1)
            self._wire_callee(op, args[0], scope, ctx)
            self.module.attach_operands(op, values(args[1:]))
        elif kind is OpKind.INVOKE:
            if len(args) != 4 or not isinstance(args[1], list):
                raise IRParseError("(invoke R T CALLEE (ARGS...) NORMAL UNWIND) expected", ctx)
            self._wire_callee(op, args[0], scope, ctx)
            self.module.attach_operands(op, values(args[1]))
            op.targets = [_sym_name(args[2], ctx), _sym_name(args[3], ctx)]
        elif kind is OpKind.BR:
            need(1)
            op.targets = [_sym_name(args[0], ctx)]
        elif kind is OpKind.CONDBR:
            need(3)
            self.module.attach_operands(op, values(args[:1]))
            op.targets = [_sym_name(args[1], ctx), _sym_name(args[2], ctx)]
        elif kind is OpKind.SWITCH:
            need(2)
            self.module.attach_operands(op, values(args[:1]))
            op.targets = [_sym_name(a, ctx) for a in args[1:]]
        elif kind in (OpKind.RET, OpKind.RESUME):
            self.module.attach_operands(op, values(args[:1]))
        elif kind is OpKind.UNREACHABLE:
            return

    def _wire_callee(self, op: Operation, s: Sexp, scope: _FunctionScope, ctx: str) -> None:
        if _is_string(s):
            name = str(s)
            fn = self.module.function(name)
            if fn is None:
                logger.debug("%s: implicit declaration of %s", ctx, name)
                fn = self.module.add_function(name)
            op.callee = fn
            op.callee_name = name
        elif isinstance(s, Symbol):
            val = self._operand(s, scope, ctx)
            op.callee_value = val
            op.callee_name = f"%{val.name}"
        else:
            raise IRParseError(f"bad callee {s!r}", ctx)

    def _operand(self, s: Sexp, scope: _FunctionScope, ctx: str) -> Value:
        if isinstance(s, bool):
            raise IRParseError(f"unexpected operand {s!r}", ctx)
        if isinstance(s, int):
            return self.module.constant(s)
        if isinstance(s, Symbol):
            name = s.value()
            if name in scope.values:
                return scope.values[name]
            if name in self.module.globals:
                return self.module.globals[name]
            raise UnknownValueError(f"unknown value %{name}", ctx)
        if _is_string(s):
            fn = self.module.function(str(s))
            if fn is None:
                fn = self.module.add_function(str(s))
            return self.module.function_ref(fn)
        raise IRParseError(f"unexpected operand {s!r}", ctx)


_RESULT_OPS = frozenset({
    OpKind.ALLOCA, OpKind.LOAD, OpKind.GEP, OpKind.CAST, OpKind.EXTRACT,
    OpKind.INSERT, OpKind.PHI, OpKind.CMP, OpKind.BINOP, OpKind.CALL,
    OpKind.INVOKE,
})


# ═══════════════════════════════════════════════════════════════════════
#  Public API
# ═══════════════════════════════════════════════════════════════════════

def load_module(text: str, filename: str = "<string>") -> Module:
    """Parse IR *text* into a :class:`Module`.

    Raises :class:`IRParseError` on malformed input.
    """
    try:
        raw = sexpdata.loads(text, nil=None, true=None, false=None)
    except Exception as exc:
        raise IRParseError(f"S-expression syntax error: {exc}", filename) from exc
    return _ModuleLoader(filename).load(raw)


def load_module_file(path: Union[str, Path]) -> Module:
    """Read and parse an IR file."""
    p = Path(path)
    try:
        text = p.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise IRParseError(f"cannot read IR file: {exc}", str(p)) from exc
    return load_module(text, filename=str(p))
