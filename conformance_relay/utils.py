"""Arrow IPC record codec for envelope dataclasses.

Every envelope that crosses the relay is a frozen dataclass serialized as
one Arrow IPC stream holding a single-row record batch.  The Arrow schema
is derived from the dataclass annotations, so a peer in any language with
an Arrow implementation can read and write the same payloads.

KEY FUNCTIONS
-------------
serialize_record_batch_bytes(batch) : Serialize a batch as an IPC stream
deserialize_record_batch(data) : Read the single batch back
peek_field(data, name) : Read one top-level column without decoding the record

KEY CLASSES
-----------
ArrowSerializableDataclass : Mixin adding ``serialize_to_bytes`` / ``deserialize_from_bytes``
ArrowType : ``Annotated`` marker overriding the inferred Arrow type
IPCError : Raised when a payload is not a usable single-row IPC stream

Type mapping::

    str -> string          bytes -> binary       int -> int64
    float -> float64       bool -> bool          Enum -> string (member name)
    list[T] -> list<T>     dataclass -> struct   X | None -> nullable X

"""

from __future__ import annotations

import os
import sys
from dataclasses import MISSING, dataclass
from dataclasses import fields as dataclass_fields
from enum import Enum
from types import UnionType
from typing import Annotated, Any, ClassVar, Self, Union, get_args, get_origin, get_type_hints

import pyarrow as pa
import structlog
from pyarrow import ipc

__all__ = [
    "ArrowSerializableDataclass",
    "ArrowType",
    "IPCError",
    "deserialize_record_batch",
    "peek_field",
    "serialize_record_batch_bytes",
]

# Codec trace logging - enable with RELAY_IPC_DEBUG=1
_IPC_DEBUG = os.environ.get("RELAY_IPC_DEBUG", "").lower() in ("1", "true", "yes")
_ipc_log: structlog.stdlib.BoundLogger | None = None


def _get_ipc_log() -> structlog.stdlib.BoundLogger:
    """Get or create the codec trace logger, writing to stderr."""
    global _ipc_log
    if _ipc_log is None:
        # stdout carries frames; trace output must never land there.
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


class IPCError(Exception):
    """A payload is not a readable single-row Arrow IPC stream."""


# =============================================================================
# Batch-level helpers
# =============================================================================


def serialize_record_batch_bytes(batch: pa.RecordBatch) -> bytes:
    """Serialize *batch* as a complete IPC stream (schema, batch, EOS marker)."""
    sink = pa.BufferOutputStream()
    with ipc.new_stream(sink, batch.schema) as writer:
        writer.write_batch(batch)
    data: bytes = sink.getvalue().to_pybytes()
    if _IPC_DEBUG:
        _get_ipc_log().debug(
            "ipc_write",
            num_rows=batch.num_rows,
            schema=_schema_to_dict(batch.schema),
            nbytes=len(data),
        )
    return data


def deserialize_record_batch(data: bytes) -> pa.RecordBatch:
    """Read the first record batch of an IPC stream.

    Raises:
        IPCError: If *data* is not an IPC stream or holds no batch.

    """
    try:
        with ipc.open_stream(pa.BufferReader(data)) as reader:
            try:
                batch = reader.read_next_batch()
            except StopIteration:
                raise IPCError("No RecordBatch found in provided data") from None
    except pa.ArrowException as exc:
        raise IPCError(f"Invalid Arrow IPC stream: {exc}") from exc

    if _IPC_DEBUG:
        _get_ipc_log().debug(
            "ipc_read",
            num_rows=batch.num_rows,
            schema=_schema_to_dict(batch.schema),
            nbytes=len(data),
        )
    return batch


def peek_field(data: bytes, name: str) -> Any:
    """Return top-level column *name* of the first row, or ``None``.

    Never raises: an unreadable payload, a missing column, or an empty
    batch all yield ``None``.  Used to salvage identifying fields from a
    payload that does not decode into its full record type.
    """
    try:
        batch = deserialize_record_batch(data)
    except IPCError:
        return None
    if batch.num_rows == 0 or name not in batch.schema.names:
        return None
    return batch.column(name)[0].as_py()


# =============================================================================
# Type inference
# =============================================================================


@dataclass(frozen=True)
class ArrowType:
    """Annotation marker to specify an explicit Arrow type for a field.

        @dataclass(frozen=True)
        class Target(ArrowSerializableDataclass):
            port: Annotated[int, ArrowType(pa.uint32())]

    """

    arrow_type: pa.DataType


def _split_optional(python_type: Any) -> tuple[Any, bool]:
    """Return ``(inner_type, nullable)`` for ``X | None`` annotations."""
    if get_origin(python_type) in (UnionType, Union):
        args = get_args(python_type)
        non_none = [t for t in args if t is not type(None)]
        if len(non_none) == 1 and len(args) == 2:
            return non_none[0], True
    return python_type, False


def _split_annotated(python_type: Any) -> tuple[Any, pa.DataType | None]:
    """Return ``(base_type, explicit_arrow_type)`` for ``Annotated`` annotations."""
    if get_origin(python_type) is Annotated:
        base, *extras = get_args(python_type)
        for extra in extras:
            if isinstance(extra, ArrowType):
                return base, extra.arrow_type
        return base, None
    return python_type, None


def _is_record(python_type: Any) -> bool:
    return isinstance(python_type, type) and issubclass(python_type, ArrowSerializableDataclass)


_SCALARS: dict[type, pa.DataType] = {
    str: pa.string(),
    bytes: pa.binary(),
    int: pa.int64(),
    float: pa.float64(),
    bool: pa.bool_(),
}


def _infer_arrow_type(python_type: Any) -> pa.DataType:
    """Infer the Arrow type for a field annotation.

    Raises:
        TypeError: For annotations with no mapping; use ``ArrowType``.

    """
    python_type, explicit = _split_annotated(python_type)
    if explicit is not None:
        return explicit
    inner, nullable = _split_optional(python_type)
    if nullable:
        return _infer_arrow_type(inner)
    if isinstance(python_type, type) and issubclass(python_type, Enum):
        return pa.string()
    if _is_record(python_type):
        return pa.struct(list(python_type.arrow_schema()))
    if get_origin(python_type) is list:
        args = get_args(python_type)
        return pa.list_(_infer_arrow_type(args[0]) if args else pa.string())
    if python_type in _SCALARS:
        return _SCALARS[python_type]
    raise TypeError(
        f"Cannot infer Arrow type for: {python_type}. "
        f"Use Annotated[T, ArrowType(...)] to specify the Arrow type explicitly."
    )


def _field_types(cls: type) -> dict[str, Any]:
    """Resolved annotations for *cls*, with ``Annotated`` wrappers kept."""
    return get_type_hints(cls, include_extras=True)


# =============================================================================
# Value conversion
# =============================================================================


def _to_arrow_value(value: Any) -> Any:
    """Convert a dataclass field value into the form ``from_pylist`` expects."""
    if value is None:
        return None
    if isinstance(value, Enum):
        # IntEnum members (status codes) travel as their integer value.
        return int(value) if isinstance(value, int) else value.name
    if isinstance(value, ArrowSerializableDataclass):
        return value.to_row()
    if isinstance(value, (list, tuple)):
        return [_to_arrow_value(v) for v in value]
    return value


def _from_arrow_value(value: Any, python_type: Any) -> Any:
    """Convert a ``to_pylist`` value back into the annotated Python type."""
    if value is None:
        return None
    python_type, _ = _split_annotated(python_type)
    python_type, _ = _split_optional(python_type)
    python_type, _ = _split_annotated(python_type)
    if isinstance(python_type, type) and issubclass(python_type, Enum):
        try:
            return python_type[value]
        except KeyError:
            raise ValueError(f"'{value}' is not a valid {python_type.__name__} name") from None
    if _is_record(python_type):
        return python_type.from_row(value)
    if get_origin(python_type) is list:
        args = get_args(python_type)
        element_type = args[0] if args else str
        return [_from_arrow_value(v, element_type) for v in value]
    return value


# =============================================================================
# ArrowSerializableDataclass
# =============================================================================


class ArrowSerializableDataclass:
    """Mixin for frozen dataclasses with Arrow IPC serialization.

    The schema is generated from the field annotations on first use and
    cached per class.  Fields annotated ``X | None`` are nullable; fields
    with defaults may be absent from an incoming batch, which keeps older
    peers readable when a field is added.
    """

    _SCHEMA_CACHE: ClassVar[dict[type, pa.Schema]] = {}

    @classmethod
    def arrow_schema(cls) -> pa.Schema:
        """Return the Arrow schema derived from this dataclass's fields."""
        cached = ArrowSerializableDataclass._SCHEMA_CACHE.get(cls)
        if cached is not None:
            return cached
        hints = _field_types(cls)
        arrow_fields: list[pa.Field] = []
        for f in dataclass_fields(cls):  # type: ignore[arg-type]
            annotation = hints.get(f.name, f.type)
            base, _ = _split_annotated(annotation)
            _, nullable = _split_optional(base)
            try:
                arrow_fields.append(pa.field(f.name, _infer_arrow_type(annotation), nullable=nullable))
            except TypeError as e:
                raise TypeError(f"Cannot generate Arrow schema for {cls.__name__}.{f.name}: {e}") from e
        schema = pa.schema(arrow_fields)
        ArrowSerializableDataclass._SCHEMA_CACHE[cls] = schema
        return schema

    def to_row(self) -> dict[str, Any]:
        """Convert this instance to a plain dict of Arrow-compatible values."""
        return {f.name: _to_arrow_value(getattr(self, f.name)) for f in dataclass_fields(self)}  # type: ignore[arg-type]

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Self:
        """Build an instance from a dict produced by ``to_row`` or ``to_pylist``.

        Raises:
            ValueError: If a field without a default is missing or null
                where the annotation does not allow ``None``.

        """
        hints = _field_types(cls)
        kwargs: dict[str, Any] = {}
        for f in dataclass_fields(cls):  # type: ignore[arg-type]
            has_default = f.default is not MISSING or f.default_factory is not MISSING
            if f.name not in row or row[f.name] is None:
                base, _ = _split_annotated(hints.get(f.name, f.type))
                _, nullable = _split_optional(base)
                if has_default:
                    continue
                if not nullable:
                    raise ValueError(f"Missing field in {cls.__name__} record: {f.name}")
            kwargs[f.name] = _from_arrow_value(row.get(f.name), hints.get(f.name, f.type))
        return cls(**kwargs)

    def serialize_to_bytes(self) -> bytes:
        """Serialize this instance to Arrow IPC stream bytes."""
        batch = pa.RecordBatch.from_pylist([self.to_row()], schema=self.arrow_schema())
        return serialize_record_batch_bytes(batch)

    @classmethod
    def deserialize_from_bytes(cls, data: bytes) -> Self:
        """Deserialize an instance from Arrow IPC stream bytes.

        Raises:
            IPCError: If *data* is not a single-row IPC stream.
            ValueError: If the row does not match this dataclass.

        """
        batch = deserialize_record_batch(data)
        if batch.num_rows != 1:
            raise IPCError(f"Expected single-row RecordBatch for {cls.__name__}, got {batch.num_rows} rows")
        return cls.from_row(batch.to_pylist()[0])
