"""
irlock/ir.py
════════════

In-memory program graph consumed by the double-lock engine.

The graph is an arena of nodes addressed by stable integer ids handed out
by the owning :class:`Module`.  Use/def edges are plain adjacency lists on
each :class:`Value`; nothing holds a back-pointer that has to be kept in
sync by hand except ``Use`` entries, which the builder methods maintain.

Public API
──────────
    OpKind, TypeKind, ValueKind   - enums
    IRType                        - frozen static type
    DebugLocation                 - frozen file/line/directory triple
    Use                           - (operation, operand index) edge
    Value, Operation, BasicBlock  - graph nodes
    Function, Module              - owners

Every node is immutable once :func:`irlock.loader.load_module` (or a test
using the builder methods directly) has finished wiring it up.
"""

from __future__ import annotations

import enum
import itertools
from collections import OrderedDict
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Tuple


# ---------------------------------------------------------------------------
# Kinds
# ---------------------------------------------------------------------------

class OpKind(enum.Enum):
    """Opcode class of an :class:`Operation`."""

    ALLOCA      = "alloca"
    LOAD        = "load"
    STORE       = "store"
    GEP         = "gep"
    CAST        = "cast"
    EXTRACT     = "extract"
    INSERT      = "insert"
    PHI         = "phi"
    CMP         = "cmp"
    BINOP       = "binop"
    CALL        = "call"
    INVOKE      = "invoke"
    MEMCPY      = "memcpy"
    MEMSET      = "memset"
    BR          = "br"
    CONDBR      = "condbr"
    SWITCH      = "switch"
    RET         = "ret"
    RESUME      = "resume"
    UNREACHABLE = "unreachable"

    @property
    def is_call(self) -> bool:
        return self in (OpKind.CALL, OpKind.INVOKE)

    @property
    def is_terminator(self) -> bool:
        return self in _TERMINATORS


_TERMINATORS = frozenset({
    OpKind.BR, OpKind.CONDBR, OpKind.SWITCH, OpKind.RET,
    OpKind.RESUME, OpKind.UNREACHABLE, OpKind.INVOKE,
})


class TypeKind(enum.Enum):
    VOID   = "void"
    INT    = "int"
    PTR    = "ptr"
    STRUCT = "struct"
    ARRAY  = "array"
    FUNC   = "func"


class ValueKind(enum.Enum):
    ARGUMENT     = "argument"
    RESULT       = "result"
    CONSTANT     = "constant"
    GLOBAL       = "global"
    FUNCTION_REF = "function-ref"


# ---------------------------------------------------------------------------
# Types and locations
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class IRType:
    """A static type.

    Struct types are nominal: two struct types are equal iff their names
    are.  Field layouts live on :attr:`Module.structs`.
    """

    kind: TypeKind
    name: str = ""
    pointee: Optional["IRType"] = None
    length: int = 0

    @classmethod
    def ptr(cls, pointee: "IRType") -> "IRType":
        return cls(TypeKind.PTR, pointee=pointee)

    @classmethod
    def struct(cls, name: str) -> "IRType":
        return cls(TypeKind.STRUCT, name=name)

    @property
    def is_pointer(self) -> bool:
        return self.kind is TypeKind.PTR

    @property
    def is_struct(self) -> bool:
        return self.kind is TypeKind.STRUCT

    @property
    def is_void(self) -> bool:
        return self.kind is TypeKind.VOID

    def __str__(self) -> str:
        if self.kind is TypeKind.PTR:
            return f"{self.pointee}*"
        if self.kind is TypeKind.ARRAY:
            return f"[{self.length} x {self.pointee}]"
        if self.kind is TypeKind.STRUCT:
            return f"%{self.name}"
        return self.name or self.kind.value


VOID = IRType(TypeKind.VOID, "void")


@dataclass(frozen=True)
class DebugLocation:
    """Source position attached to an operation."""

    file: str
    line: int
    directory: str = ""

    @property
    def is_local(self) -> bool:
        """True for code of the crate being analysed (non-empty directory)."""
        return bool(self.directory)

    def __str__(self) -> str:
        return f"{self.file}:{self.line}"


@dataclass(frozen=True)
class Use:
    op: "Operation"
    index: int


# ---------------------------------------------------------------------------
# Nodes
# ---------------------------------------------------------------------------

class Value:
    """Anything that can appear as an operand.

    Attributes
    ----------
    id : int
        Module-unique id; defines iteration order everywhere.
    name : str
        Textual name (``%x`` without the sigil, or the function name for
        function references).
    type : IRType or None
        ``None`` when the static type is unknown.
    kind : ValueKind
    uses : list[Use]
        Consumers in insertion order.
    defining_op : Operation or None
        Set for ``ValueKind.RESULT``.
    function : Function or None
        Owning function for arguments and results.
    constant : int or None
        Integer payload for ``ValueKind.CONSTANT``.
    """

    __slots__ = ("id", "name", "type", "kind", "uses", "defining_op",
                 "function", "constant")

    def __init__(
        self,
        value_id: int,
        name: str,
        type_: Optional[IRType],
        kind: ValueKind,
        function: Optional["Function"] = None,
        constant: Optional[int] = None,
    ) -> None:
        self.id = value_id
        self.name = name
        self.type = type_
        self.kind = kind
        self.uses: List[Use] = []
        self.defining_op: Optional[Operation] = None
        self.function = function
        self.constant = constant

    @property
    def users(self) -> List["Operation"]:
        return [u.op for u in self.uses]

    def __repr__(self) -> str:
        if self.kind is ValueKind.CONSTANT:
            return f"Value({self.constant})"
        return f"Value(%{self.name}#{self.id})"


class Operation:
    """One instruction.

    ``operands`` never includes the callee of a call; the statically
    resolved target (if any) is :attr:`callee` and its spelling is
    :attr:`callee_name`.  ``targets`` holds successor block labels for
    terminators.  ``indices`` holds immediate indices of gep / extract /
    insert, with ``None`` standing for a dynamic gep index.
    """

    __slots__ = ("id", "kind", "operands", "result", "block", "callee",
                 "callee_name", "callee_value", "targets", "indices",
                 "location")

    def __init__(self, op_id: int, kind: OpKind) -> None:
        self.id = op_id
        self.kind = kind
        self.operands: List[Value] = []
        self.result: Optional[Value] = None
        self.block: Optional[BasicBlock] = None
        self.callee: Optional[Function] = None
        self.callee_name: str = ""
        self.callee_value: Optional[Value] = None
        self.targets: List[str] = []
        self.indices: Tuple[Optional[int], ...] = ()
        self.location: Optional[DebugLocation] = None

    @property
    def function(self) -> Optional["Function"]:
        return self.block.function if self.block is not None else None

    @property
    def is_call(self) -> bool:
        return self.kind.is_call

    @property
    def is_resolved_call(self) -> bool:
        return self.kind.is_call and self.callee is not None

    @property
    def args(self) -> List[Value]:
        return self.operands if self.kind.is_call else []

    def __repr__(self) -> str:
        head = f"%{self.result.name} = " if self.result is not None else ""
        if self.kind.is_call:
            return f"Operation#{self.id}({head}{self.kind.value} {self.callee_name or '?'})"
        return f"Operation#{self.id}({head}{self.kind.value})"


class BasicBlock:
    __slots__ = ("id", "name", "function", "ops", "successors", "predecessors")

    def __init__(self, block_id: int, name: str, function: "Function") -> None:
        self.id = block_id
        self.name = name
        self.function = function
        self.ops: List[Operation] = []
        self.successors: List[BasicBlock] = []
        self.predecessors: List[BasicBlock] = []

    @property
    def terminator(self) -> Optional[Operation]:
        if self.ops and self.ops[-1].kind.is_terminator:
            return self.ops[-1]
        return None

    def index_of(self, op: Operation) -> int:
        return self.ops.index(op)

    def __repr__(self) -> str:
        return f"BasicBlock({self.function.name}:{self.name})"


class Function:
    """A function definition or (when it has no blocks) a declaration."""

    __slots__ = ("id", "name", "params", "blocks", "return_type", "module",
                 "_block_index")

    def __init__(self, func_id: int, name: str, module: "Module") -> None:
        self.id = func_id
        self.name = name
        self.module = module
        self.params: List[Value] = []
        self.blocks: List[BasicBlock] = []
        self.return_type: IRType = VOID
        self._block_index: Dict[str, BasicBlock] = {}

    @property
    def is_declaration(self) -> bool:
        return not self.blocks

    @property
    def entry(self) -> Optional[BasicBlock]:
        return self.blocks[0] if self.blocks else None

    def block(self, name: str) -> Optional[BasicBlock]:
        return self._block_index.get(name)

    def iter_ops(self) -> Iterator[Operation]:
        for bb in self.blocks:
            yield from bb.ops

    def call_ops(self) -> List[Operation]:
        return [op for op in self.iter_ops() if op.is_call]

    def __repr__(self) -> str:
        suffix = " (decl)" if self.is_declaration else ""
        return f"Function({self.name!r}{suffix})"


class Module:
    """Owner of every node; hands out ids in creation order."""

    def __init__(self, name: str = "module") -> None:
        self.name = name
        self.functions: "OrderedDict[str, Function]" = OrderedDict()
        self.globals: "OrderedDict[str, Value]" = OrderedDict()
        self.structs: "OrderedDict[str, Tuple[IRType, ...]]" = OrderedDict()
        self._ids = itertools.count(1)

    # ----- builder -----------------------------------------------------------

    def next_id(self) -> int:
        return next(self._ids)

    def add_function(self, name: str) -> Function:
        if name in self.functions:
            return self.functions[name]
        fn = Function(self.next_id(), name, self)
        self.functions[name] = fn
        return fn

    def add_global(self, name: str, type_: Optional[IRType]) -> Value:
        val = Value(self.next_id(), name, type_, ValueKind.GLOBAL)
        self.globals[name] = val
        return val

    def add_param(self, fn: Function, name: str, type_: Optional[IRType]) -> Value:
        val = Value(self.next_id(), name, type_, ValueKind.ARGUMENT, function=fn)
        fn.params.append(val)
        return val

    def add_block(self, fn: Function, name: str) -> BasicBlock:
        bb = BasicBlock(self.next_id(), name, fn)
        fn.blocks.append(bb)
        fn._block_index[name] = bb
        return bb

    def constant(self, payload: int, type_: Optional[IRType] = None) -> Value:
        """Fresh constant value.  Constants are never shared between uses."""
        return Value(self.next_id(), str(payload), type_, ValueKind.CONSTANT,
                     constant=payload)

    def function_ref(self, fn: Function) -> Value:
        return Value(self.next_id(), fn.name, IRType(TypeKind.FUNC, fn.name),
                     ValueKind.FUNCTION_REF)

    def add_op(
        self,
        block: BasicBlock,
        kind: OpKind,
        operands: Optional[List[Value]] = None,
        result_name: Optional[str] = None,
        result_type: Optional[IRType] = None,
    ) -> Operation:
        op = Operation(self.next_id(), kind)
        op.block = block
        self.attach_operands(op, operands or [])
        if result_name is not None:
            res = Value(self.next_id(), result_name, result_type,
                        ValueKind.RESULT, function=block.function)
            res.defining_op = op
            op.result = res
        block.ops.append(op)
        return op

    def attach_operands(self, op: Operation, operands: List[Value]) -> None:
        """Append *operands* to *op*, recording a use for each."""
        base = len(op.operands)
        for idx, val in enumerate(operands, start=base):
            op.operands.append(val)
            val.uses.append(Use(op, idx))

    def link(self, src: BasicBlock, dst: BasicBlock) -> None:
        if dst not in src.successors:
            src.successors.append(dst)
            dst.predecessors.append(src)

    # ----- queries -----------------------------------------------------------

    def function(self, name: str) -> Optional[Function]:
        return self.functions.get(name)

    def defined_functions(self) -> List[Function]:
        return [f for f in self.functions.values() if not f.is_declaration]

    def struct_fields(self, name: str) -> Tuple[IRType, ...]:
        return self.structs.get(name, ())

    def __repr__(self) -> str:
        return f"Module({self.name!r}, functions={len(self.functions)})"
