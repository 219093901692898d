# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Typed request/response messages with automatic Arrow serialization.

Service contracts exchange frozen dataclasses that subclass
:class:`TypedMessage`.  The Arrow schema is derived from the field
annotations, and a message travels on the wire as a single-row
``RecordBatch`` (Arrow IPC).  The same resolved field table drives the
human-readable text codec in :mod:`apictl.textformat`.

Every field must have a default: an absent field always means "default
value", so an empty request decodes to a default-valued message.

Supported field types:

- Scalars: ``str``, ``bytes``, ``int``, ``float``, ``bool``
- ``Enum`` subclasses (serialized by member name)
- Nested ``TypedMessage`` subclasses (serialized as struct)
- ``list[T]`` of any of the above (repeated fields)
- ``T | None`` (field may be absent)

Integers default to int64; use ``Annotated[int, ArrowType(pa.uint32())]``
to declare a narrower or unsigned width.  The declared width is enforced
when decoding text.

IPC debug tracing is enabled with ``APICTL_IPC_DEBUG=1``.
"""

from __future__ import annotations

import os
from dataclasses import MISSING, dataclass
from dataclasses import Field as DataclassField
from dataclasses import fields as dataclass_fields
from enum import Enum
from io import BytesIO
from types import UnionType
from typing import Annotated, Any, ClassVar, Self, Union, get_args, get_origin, get_type_hints

import pyarrow as pa
import structlog
from pyarrow import ipc

from apictl.metadata import decode_metadata

__all__ = [
    "ArrowType",
    "FieldKind",
    "MessageField",
    "TypedMessage",
]

# IPC debug logging - enable with APICTL_IPC_DEBUG=1
_IPC_DEBUG = os.environ.get("APICTL_IPC_DEBUG", "").lower() in ("1", "true", "yes")
_ipc_log: structlog.stdlib.BoundLogger | None = None


def _get_ipc_log() -> structlog.stdlib.BoundLogger:
    """Get or create the IPC debug logger, configured to write to stderr."""
    global _ipc_log
    if _ipc_log is None:
        import sys

        structlog.configure(
            processors=[
                structlog.processors.add_log_level,
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.dev.ConsoleRenderer(),
            ],
            wrapper_class=structlog.make_filtering_bound_logger(0),
            logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        )
        _ipc_log = structlog.get_logger().bind(component="ipc")
    return _ipc_log


def _schema_to_dict(schema: pa.Schema) -> dict[str, str]:
    """Convert Arrow schema to dict of {name: type} for logging."""
    return {field.name: str(field.type) for field in schema}


# =============================================================================
# Field resolution
# =============================================================================


@dataclass(frozen=True)
class ArrowType:
    """Annotation marker to specify the Arrow type of a scalar field.

    Use with Annotated to override the default inferred Arrow type::

        @dataclass(frozen=True)
        class Counters(TypedMessage):
            uptime: Annotated[int, ArrowType(pa.uint32())] = 0

    """

    arrow_type: pa.DataType


class FieldKind(Enum):
    """Value category of a message field (per element for repeated fields)."""

    STRING = "string"
    BYTES = "bytes"
    INT = "int"
    FLOAT = "float"
    BOOL = "bool"
    ENUM = "enum"
    MESSAGE = "message"


@dataclass(frozen=True)
class MessageField:
    """Resolved description of one field of a :class:`TypedMessage`.

    Attributes:
        name: Field name.
        kind: Value category of the field (of each element if repeated).
        value_type: Python type of a single value (``int``, an ``Enum``
            subclass, a ``TypedMessage`` subclass, ...).
        arrow_type: Arrow type of a single value.
        repeated: ``True`` for ``list[T]`` fields.
        optional: ``True`` for ``T | None`` fields.

    """

    name: str
    kind: FieldKind
    value_type: Any
    arrow_type: pa.DataType
    repeated: bool
    optional: bool
    _field: DataclassField[Any]

    @property
    def column_type(self) -> pa.DataType:
        """Arrow type of the whole column (a list type for repeated fields)."""
        return pa.list_(self.arrow_type) if self.repeated else self.arrow_type

    def default(self) -> Any:
        """Return a fresh default value for this field."""
        if self._field.default is not MISSING:
            return self._field.default
        return self._field.default_factory()  # type: ignore[misc]

    def is_default(self, value: Any) -> bool:
        """Whether *value* equals this field's default."""
        default = self.default()
        return bool(value == default) and type(value) is type(default)


def _is_optional_type(python_type: Any) -> tuple[Any, bool]:
    """Check if a type is Optional (X | None) and extract the inner type.

    Returns:
        Tuple of (inner_type, is_nullable). If not nullable, inner_type is
        the original type.

    """
    origin = get_origin(python_type)
    args = get_args(python_type)
    if origin is UnionType or origin is Union:
        non_none_types = [t for t in args if t is not type(None)]
        if len(non_none_types) == 1 and len(args) == 2:
            return non_none_types[0], True
    return python_type, False


def _split_annotated(python_type: Any) -> tuple[Any, pa.DataType | None]:
    """Unwrap ``Annotated[T, ...]``, returning T and any ``ArrowType`` override."""
    if get_origin(python_type) is not Annotated:
        return python_type, None
    args = get_args(python_type)
    override = next((arg.arrow_type for arg in args[1:] if isinstance(arg, ArrowType)), None)
    return args[0], override


_SCALAR_KINDS: dict[type, tuple[FieldKind, pa.DataType]] = {
    str: (FieldKind.STRING, pa.string()),
    bytes: (FieldKind.BYTES, pa.binary()),
    bool: (FieldKind.BOOL, pa.bool_()),
    int: (FieldKind.INT, pa.int64()),
    float: (FieldKind.FLOAT, pa.float64()),
}


def _classify(value_type: Any) -> tuple[FieldKind, pa.DataType, Any]:
    """Classify a single-value Python type.

    Returns:
        Tuple of (kind, default Arrow type, unwrapped Python type).

    Raises:
        TypeError: If the type is not supported in a message.

    """
    # NewType creates a callable with __supertype__
    while hasattr(value_type, "__supertype__"):
        value_type = value_type.__supertype__
    if value_type in _SCALAR_KINDS:
        kind, arrow_type = _SCALAR_KINDS[value_type]
        return kind, arrow_type, value_type
    if isinstance(value_type, type) and issubclass(value_type, Enum):
        return FieldKind.ENUM, pa.string(), value_type
    if isinstance(value_type, type) and issubclass(value_type, TypedMessage):
        return FieldKind.MESSAGE, pa.struct(list(value_type.arrow_schema())), value_type
    raise TypeError(f"Unsupported message field type: {value_type!r}")


def _check_override(kind: FieldKind, override: pa.DataType) -> None:
    """Validate that an ArrowType override is compatible with the field kind."""
    compatible = {
        FieldKind.INT: pa.types.is_integer,
        FieldKind.FLOAT: pa.types.is_floating,
        FieldKind.STRING: lambda t: pa.types.is_string(t) or pa.types.is_large_string(t),
        FieldKind.BYTES: lambda t: pa.types.is_binary(t) or pa.types.is_large_binary(t),
    }.get(kind)
    if compatible is None or not compatible(override):
        raise TypeError(f"ArrowType({override}) is not valid for a {kind.value} field")


def _resolve_field(field: DataclassField[Any], hint: Any) -> MessageField:
    """Resolve one dataclass field into a MessageField."""
    if field.default is MISSING and field.default_factory is MISSING:
        raise TypeError(f"field '{field.name}' has no default; every message field needs one")
    hint, override = _split_annotated(hint)
    inner, optional = _is_optional_type(hint)
    inner, inner_override = _split_annotated(inner)
    override = override or inner_override
    repeated = get_origin(inner) is list
    if repeated:
        args = get_args(inner)
        if not args:
            raise TypeError(f"field '{field.name}' is a bare list; declare the element type")
        value_type, elem_override = _split_annotated(args[0])
        if override is not None and pa.types.is_list(override):
            override = override.value_type
        override = elem_override or override
    else:
        value_type = inner
    kind, arrow_type, value_type = _classify(value_type)
    if override is not None:
        _check_override(kind, override)
        arrow_type = override
    return MessageField(
        name=field.name,
        kind=kind,
        value_type=value_type,
        arrow_type=arrow_type,
        repeated=repeated,
        optional=optional,
        _field=field,
    )


# =============================================================================
# TypedMessage
# =============================================================================


class TypedMessage:
    """Mixin for frozen dataclasses used as typed request/response messages.

    Subclasses are declared as ``@dataclass(frozen=True)``; the Arrow schema
    is available from :meth:`arrow_schema` and the resolved field table from
    :meth:`message_fields`.
    """

    _fields_cache: ClassVar[dict[type, tuple[MessageField, ...]]] = {}
    _schema_cache: ClassVar[dict[type, pa.Schema]] = {}

    @classmethod
    def message_fields(cls) -> tuple[MessageField, ...]:
        """Return the resolved fields of this message type, in declaration order.

        Raises:
            TypeError: If the class is not a dataclass or a field is unsupported.

        """
        cached = TypedMessage._fields_cache.get(cls)
        if cached is not None:
            return cached
        try:
            type_hints = get_type_hints(cls, include_extras=True)
        except (NameError, AttributeError) as exc:
            raise TypeError(f"Cannot resolve type hints for {cls.__name__}: {exc}") from exc
        resolved: list[MessageField] = []
        for f in dataclass_fields(cls):  # type: ignore[arg-type]
            try:
                resolved.append(_resolve_field(f, type_hints.get(f.name, f.type)))
            except TypeError as e:
                raise TypeError(f"Cannot describe {cls.__name__}.{f.name}: {e}") from e
        result = tuple(resolved)
        TypedMessage._fields_cache[cls] = result
        return result

    @classmethod
    def field_named(cls, name: str) -> MessageField | None:
        """Return the field called *name*, or ``None``."""
        return next((f for f in cls.message_fields() if f.name == name), None)

    @classmethod
    def arrow_schema(cls) -> pa.Schema:
        """Return the Arrow schema for this message type."""
        cached = TypedMessage._schema_cache.get(cls)
        if cached is None:
            cached = pa.schema(
                [pa.field(f.name, f.column_type, nullable=f.optional) for f in cls.message_fields()]
            )
            TypedMessage._schema_cache[cls] = cached
        return cached

    # --- Arrow conversion ---

    def _to_row_dict(self) -> dict[str, Any]:
        """Convert this instance to a row dict suitable for ``pa.RecordBatch.from_pylist``."""
        return {f.name: _to_arrow_value(f, getattr(self, f.name)) for f in self.message_fields()}

    @classmethod
    def _from_row_dict(cls, row: dict[str, Any]) -> Self:
        """Build an instance from a row dict produced by ``RecordBatch.to_pylist``."""
        kwargs: dict[str, Any] = {}
        for f in cls.message_fields():
            if f.name not in row:
                continue
            kwargs[f.name] = _from_arrow_value(f, row[f.name])
        return cls(**kwargs)

    def to_batch(self) -> pa.RecordBatch:
        """Serialize this instance to a single-row ``RecordBatch``.

        Messages without fields serialize to a zero-column batch.
        """
        schema = self.arrow_schema()
        if len(schema) == 0:
            return pa.RecordBatch.from_pydict({}, schema=schema)
        return pa.RecordBatch.from_pylist([self._to_row_dict()], schema=schema)

    @classmethod
    def from_batch(cls, batch: pa.RecordBatch) -> Self:
        """Deserialize an instance from a single-row ``RecordBatch``.

        Columns missing from *batch* take their default value; columns the
        message does not declare are ignored.

        Raises:
            ValueError: If the batch does not hold exactly one row.

        """
        if len(cls.arrow_schema()) == 0 and batch.num_columns == 0:
            return cls()
        if batch.num_rows != 1:
            raise ValueError(f"Expected single-row RecordBatch for {cls.__name__}, got {batch.num_rows} rows")
        return cls._from_row_dict(batch.to_pylist()[0])

    def serialize_to_bytes(self) -> bytes:
        """Serialize this instance to a complete Arrow IPC stream."""
        batch = self.to_batch()
        buffer = BytesIO()
        with ipc.new_stream(buffer, batch.schema) as writer:
            writer.write_batch(batch)
        if _IPC_DEBUG:
            _get_ipc_log().debug(
                "ipc_write",
                message_type=type(self).__name__,
                num_rows=batch.num_rows,
                schema=_schema_to_dict(batch.schema),
            )
        return buffer.getvalue()

    @classmethod
    def deserialize_from_bytes(cls, data: bytes) -> Self:
        """Deserialize an instance from an Arrow IPC stream.

        Raises:
            ValueError: If the stream holds no batch or the batch is invalid.

        """
        with ipc.open_stream(pa.BufferReader(data)) as reader:
            try:
                batch, custom_metadata = reader.read_next_batch_with_custom_metadata()
            except StopIteration:
                raise ValueError(f"No RecordBatch found in {cls.__name__} data") from None
        if _IPC_DEBUG:
            _get_ipc_log().debug(
                "ipc_read",
                message_type=cls.__name__,
                num_rows=batch.num_rows,
                schema=_schema_to_dict(batch.schema),
                metadata=decode_metadata(custom_metadata),
                nbytes=len(data),
            )
        return cls.from_batch(batch)


def _to_arrow_value(field: MessageField, value: Any) -> Any:
    """Convert a field value to its Arrow-compatible Python form."""
    if value is None:
        return None
    if field.repeated:
        return [_scalar_to_arrow(field, v) for v in value]
    return _scalar_to_arrow(field, value)


def _scalar_to_arrow(field: MessageField, value: Any) -> Any:
    if field.kind is FieldKind.MESSAGE:
        return value._to_row_dict()
    if field.kind is FieldKind.ENUM:
        return value.name
    return value


def _from_arrow_value(field: MessageField, value: Any) -> Any:
    """Convert an Arrow ``as_py`` value back to the field's Python type."""
    if value is None:
        return None if field.optional else field.default()
    if field.repeated:
        return [_scalar_from_arrow(field, v) for v in value]
    return _scalar_from_arrow(field, value)


def _scalar_from_arrow(field: MessageField, value: Any) -> Any:
    if field.kind is FieldKind.MESSAGE:
        return field.value_type._from_row_dict(value)
    if field.kind is FieldKind.ENUM:
        try:
            return field.value_type[value]
        except KeyError:
            raise ValueError(f"unknown {field.value_type.__name__} member {value!r} for field {field.name!r}") from None
    return value
