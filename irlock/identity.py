"""irlock/identity.py – canonical "which lock is this" keys.

A lock object reached as ``&self.inner.lock`` in one function and as
``&other.inner.lock`` in another is a different *value* each time, but the
same field of the same struct type.  :func:`resolve_identity` captures
that as ``FIELD(struct type, index path)``; everything else is
``DIRECT(value)``.

Identity is a matching key only.  Field identities deliberately ignore
the base object, so the same field of two unrelated instances compares
equal.  Target programs normally keep one lock per type-level field,
which makes this a useful over-approximation, and it is kept as is.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Hashable, Optional, Tuple

from .alias import strip_casts
from .ir import IRType, OpKind, Value


class IdentityKind(enum.Enum):
    DIRECT = "direct"
    FIELD  = "field"


@dataclass(frozen=True, eq=False)
class ResourceIdentity:
    kind: IdentityKind
    value: Value
    struct_type: Optional[IRType] = None
    indices: Tuple[Optional[int], ...] = ()

    @property
    def base(self) -> Value:
        """For FIELD: the object the field was reached from."""
        return self.value

    def key(self) -> Hashable:
        if self.kind is IdentityKind.FIELD:
            return ("field", self.struct_type, self.indices)
        return ("direct", self.value.id)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, ResourceIdentity):
            return self.key() == other.key()
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self.key())

    def __str__(self) -> str:
        if self.kind is IdentityKind.FIELD:
            path = ".".join("*" if i is None else str(i) for i in self.indices)
            return f"field {self.struct_type}{'.' + path if path else ''}"
        return f"direct %{self.value.name}"


def _struct_pointee(ptr: Value) -> Optional[IRType]:
    t = strip_casts(ptr).type
    if t is not None and t.is_pointer and t.pointee is not None and t.pointee.is_struct:
        return t.pointee
    return None


def resolve_identity(resource: Value) -> ResourceIdentity:
    """Identity of the lock object *resource*."""
    op = resource.defining_op
    if op is not None and op.operands:
        if op.kind is OpKind.GEP:
            base = op.operands[0]
            struct_type = _struct_pointee(base)
            if struct_type is not None:
                return ResourceIdentity(IdentityKind.FIELD, strip_casts(base),
                                        struct_type, op.indices)
        elif op.kind is OpKind.CAST:
            base = op.operands[0]
            struct_type = _struct_pointee(base)
            if struct_type is not None:
                return ResourceIdentity(IdentityKind.FIELD, strip_casts(base),
                                        struct_type, ())
    return ResourceIdentity(IdentityKind.DIRECT, resource)
