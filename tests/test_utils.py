"""Tests for the Arrow IPC record codec."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Annotated

import pyarrow as pa
import pytest
from pyarrow import ipc

from conformance_relay.utils import (
    ArrowSerializableDataclass,
    ArrowType,
    IPCError,
    deserialize_record_batch,
    peek_field,
    serialize_record_batch_bytes,
)


class Color(Enum):
    RED = "red"
    GREEN = "green"


class Status(IntEnum):
    OK = 0
    BAD = 7


@dataclass(frozen=True)
class Inner(ArrowSerializableDataclass):
    label: str
    weight: float = 1.0


@dataclass(frozen=True)
class Outer(ArrowSerializableDataclass):
    name: str
    color: Color = Color.RED
    count: Annotated[int, ArrowType(pa.uint32())] = 0
    status: Annotated[int, ArrowType(pa.int32())] = 0
    blob: bytes = b""
    flag: bool = False
    tags: list[str] = field(default_factory=list)
    inner: Inner | None = None
    items: list[Inner] = field(default_factory=list)
    note: str | None = None


class TestSchema:
    """Schema derivation from dataclass annotations."""

    def test_field_types(self) -> None:
        schema = Outer.arrow_schema()
        assert schema.field("name").type == pa.string()
        assert schema.field("color").type == pa.string()
        assert schema.field("count").type == pa.uint32()
        assert schema.field("status").type == pa.int32()
        assert schema.field("blob").type == pa.binary()
        assert schema.field("flag").type == pa.bool_()
        assert schema.field("tags").type == pa.list_(pa.string())
        assert schema.field("inner").type == pa.struct(
            [pa.field("label", pa.string(), nullable=False), pa.field("weight", pa.float64(), nullable=False)]
        )
        assert pa.types.is_list(schema.field("items").type)

    def test_nullability(self) -> None:
        schema = Outer.arrow_schema()
        assert not schema.field("name").nullable
        assert schema.field("inner").nullable
        assert schema.field("note").nullable

    def test_schema_is_cached(self) -> None:
        assert Outer.arrow_schema() is Outer.arrow_schema()

    def test_unsupported_annotation(self) -> None:
        @dataclass(frozen=True)
        class Bad(ArrowSerializableDataclass):
            value: dict[str, int]

        with pytest.raises(TypeError, match=r"Bad\.value"):
            Bad.arrow_schema()


class TestSerialization:
    """serialize_to_bytes / deserialize_from_bytes."""

    def test_full_record(self) -> None:
        original = Outer(
            name="case",
            color=Color.GREEN,
            count=42,
            status=Status.BAD,
            blob=b"\x00\xff",
            flag=True,
            tags=["a", "b"],
            inner=Inner("in", 2.5),
            items=[Inner("x"), Inner("y", 0.5)],
            note="hello",
        )
        decoded = Outer.deserialize_from_bytes(original.serialize_to_bytes())
        assert decoded == original
        assert decoded.color is Color.GREEN
        assert decoded.status == 7

    def test_defaults_survive(self) -> None:
        assert Outer.deserialize_from_bytes(Outer("x").serialize_to_bytes()) == Outer("x")

    def test_enum_travels_by_name(self) -> None:
        batch = deserialize_record_batch(Outer("x", color=Color.GREEN).serialize_to_bytes())
        assert batch.column("color")[0].as_py() == "GREEN"

    def test_missing_defaulted_columns_use_defaults(self) -> None:
        batch = pa.RecordBatch.from_pydict({"name": ["only-name"]})
        decoded = Outer.deserialize_from_bytes(serialize_record_batch_bytes(batch))
        assert decoded == Outer("only-name")

    def test_missing_required_column(self) -> None:
        batch = pa.RecordBatch.from_pydict({"color": ["RED"]})
        with pytest.raises(ValueError, match="Missing field in Outer record: name"):
            Outer.deserialize_from_bytes(serialize_record_batch_bytes(batch))

    def test_unknown_enum_name(self) -> None:
        batch = pa.RecordBatch.from_pydict({"name": ["x"], "color": ["PURPLE"]})
        with pytest.raises(ValueError, match="not a valid Color"):
            Outer.deserialize_from_bytes(serialize_record_batch_bytes(batch))

    def test_multi_row_rejected(self) -> None:
        batch = pa.RecordBatch.from_pydict({"name": ["a", "b"]})
        with pytest.raises(IPCError, match="single-row"):
            Outer.deserialize_from_bytes(serialize_record_batch_bytes(batch))

    def test_garbage_rejected(self) -> None:
        with pytest.raises(IPCError):
            Outer.deserialize_from_bytes(b"definitely not arrow")

    def test_empty_stream_rejected(self) -> None:
        sink = pa.BufferOutputStream()
        with ipc.new_stream(sink, pa.schema([pa.field("name", pa.string())])):
            pass
        with pytest.raises(IPCError, match="No RecordBatch"):
            deserialize_record_batch(sink.getvalue().to_pybytes())


class TestPeekField:
    """peek_field salvages a single column."""

    def test_reads_column(self) -> None:
        assert peek_field(Outer("named", count=3).serialize_to_bytes(), "name") == "named"

    def test_missing_column(self) -> None:
        assert peek_field(Outer("named").serialize_to_bytes(), "nope") is None

    def test_garbage(self) -> None:
        assert peek_field(b"\x00\x01\x02", "name") is None

    def test_works_when_record_is_invalid(self) -> None:
        batch = pa.RecordBatch.from_pydict({"name": ["salvage-me"], "color": ["PURPLE"]})
        data = serialize_record_batch_bytes(batch)
        with pytest.raises(ValueError):
            Outer.deserialize_from_bytes(data)
        assert peek_field(data, "name") == "salvage-me"
