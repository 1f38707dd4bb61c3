"""``VXMB`` model container.

Layout: ``magic | u32 format version | u32 header length | JSON header |
zero padding to a 32-byte boundary | tensor data``. Tensor offsets in the
header are relative to the start of the data section. Quantized tensors store
their float16 scales first, followed by the packed block values.
"""

from __future__ import annotations

import json
import struct
from dataclasses import dataclass
from typing import Any, Literal

import numpy as np
from pydantic import BaseModel, Field, ValidationError

from voxcore.errors import ModelLoadError
from voxcore.models.descriptors import ModelRole, Quantization
from voxcore.models.quant import BLOCK_SIZE, QuantizedMatrix

MAGIC = b"VXMB"
FORMAT_VERSION = 1
ALIGNMENT = 32
_PREFIX = struct.Struct("<4sII")

TensorKind = Literal["f32", "q4_0", "q8_0"]


class TensorRecord(BaseModel):
    name: str
    kind: TensorKind
    shape: list[int] = Field(..., min_length=1, max_length=2)
    offset: int = Field(..., ge=0)
    nbytes: int = Field(..., ge=0)


class ModelHeader(BaseModel):
    family: str
    role: ModelRole
    quantization: Quantization
    config: dict[str, int | float | str] = Field(default_factory=dict)
    vocab: list[str] = Field(default_factory=list)
    special_tokens: dict[str, int] = Field(default_factory=dict)
    tensors: list[TensorRecord] = Field(default_factory=list)


Tensor = np.ndarray | QuantizedMatrix


@dataclass(slots=True)
class ParsedModel:
    header: ModelHeader
    tensors: dict[str, Tensor]

    @property
    def resident_bytes(self) -> int:
        return sum(t.nbytes for t in self.tensors.values())


def _expected_nbytes(kind: str, shape: list[int]) -> int:
    count = int(np.prod(shape))
    if kind == "f32":
        return count * 4
    rows, cols = shape
    n_blocks = rows * (cols // BLOCK_SIZE)
    value_bytes = BLOCK_SIZE // 2 if kind == "q4_0" else BLOCK_SIZE
    return n_blocks * 2 + n_blocks * value_bytes


def pack_model(
    *,
    family: str,
    role: ModelRole,
    quantization: Quantization,
    tensors: dict[str, np.ndarray],
    config: dict[str, Any] | None = None,
    vocab: list[str] | None = None,
    special_tokens: dict[str, int] | None = None,
) -> bytes:
    """Serialize weights; 2-D tensors with a block-aligned inner dim are quantized."""
    records: list[TensorRecord] = []
    chunks: list[bytes] = []
    offset = 0
    for name, array in tensors.items():
        array = np.asarray(array, dtype=np.float32)
        kind: str = "f32"
        if array.ndim == 2 and array.shape[1] % BLOCK_SIZE == 0 and quantization != "f32":
            kind = quantization
        if kind == "f32":
            payload = array.astype("<f4").tobytes()
        else:
            matrix = QuantizedMatrix.from_dense(array, kind)
            assert matrix.scales is not None
            payload = matrix.scales.astype("<f2").tobytes() + matrix.data.tobytes()
        pad = (-len(payload)) % ALIGNMENT
        records.append(TensorRecord(name=name, kind=kind, shape=list(array.shape), offset=offset, nbytes=len(payload)))
        chunks.append(payload + b"\x00" * pad)
        offset += len(payload) + pad

    header = ModelHeader(
        family=family,
        role=role,
        quantization=quantization,
        config=config or {},
        vocab=vocab or [],
        special_tokens=special_tokens or {},
        tensors=records,
    )
    header_bytes = header.model_dump_json().encode("utf-8")
    prefix = _PREFIX.pack(MAGIC, FORMAT_VERSION, len(header_bytes))
    head = prefix + header_bytes
    head += b"\x00" * ((-len(head)) % ALIGNMENT)
    return head + b"".join(chunks)


def parse_model_blob(blob: bytes) -> ParsedModel:
    if len(blob) < _PREFIX.size:
        raise ModelLoadError("model blob is truncated")
    magic, version, header_len = _PREFIX.unpack_from(blob, 0)
    if magic != MAGIC:
        raise ModelLoadError(f"unrecognized model format (magic {magic!r})")
    if version != FORMAT_VERSION:
        raise ModelLoadError(f"unsupported model format version {version}")
    header_end = _PREFIX.size + header_len
    if header_end > len(blob):
        raise ModelLoadError("model header exceeds blob size")
    try:
        header = ModelHeader.model_validate(json.loads(blob[_PREFIX.size : header_end].decode("utf-8")))
    except (UnicodeDecodeError, json.JSONDecodeError, ValidationError) as exc:
        raise ModelLoadError(f"invalid model header: {exc}") from exc

    data_start = header_end + ((-header_end) % ALIGNMENT)
    view = memoryview(blob)
    tensors: dict[str, Tensor] = {}
    for record in header.tensors:
        if record.kind != "f32" and (len(record.shape) != 2 or record.shape[1] % BLOCK_SIZE):
            raise ModelLoadError(f"tensor '{record.name}' has a shape incompatible with {record.kind}")
        if record.nbytes != _expected_nbytes(record.kind, record.shape):
            raise ModelLoadError(f"tensor '{record.name}' size does not match its shape")
        start = data_start + record.offset
        end = start + record.nbytes
        if end > len(blob):
            raise ModelLoadError(f"tensor '{record.name}' extends past end of blob")
        raw = view[start:end]
        if record.kind == "f32":
            tensors[record.name] = np.frombuffer(raw, dtype="<f4").reshape(record.shape)
            continue
        rows, cols = record.shape
        n_blocks = cols // BLOCK_SIZE
        scale_bytes = rows * n_blocks * 2
        scales = np.frombuffer(raw[:scale_bytes], dtype="<f2").reshape(rows, n_blocks)
        if record.kind == "q4_0":
            values = np.frombuffer(raw[scale_bytes:], dtype=np.uint8).reshape(rows, n_blocks, BLOCK_SIZE // 2)
        else:
            values = np.frombuffer(raw[scale_bytes:], dtype=np.int8).reshape(rows, n_blocks, BLOCK_SIZE)
        tensors[record.name] = QuantizedMatrix(record.kind, (rows, cols), values, scales)
    return ParsedModel(header=header, tensors=tensors)


__all__ = ["MAGIC", "ModelHeader", "TensorRecord", "ParsedModel", "pack_model", "parse_model_blob"]
