from __future__ import annotations

import json
import struct

import numpy as np
import pytest
from reference_models import LLM_SPECIALS, reference_vocab

from voxcore.errors import ModelLoadError
from voxcore.models.blob import MAGIC, pack_model, parse_model_blob
from voxcore.models.descriptors import ModelDescriptor, ModelRole
from voxcore.models.quant import BLOCK_SIZE, QuantizedMatrix
from voxcore.models.tokenizer import Tokenizer


def weights(rows: int = 8, cols: int = 64, seed: int = 0) -> np.ndarray:
    return np.random.default_rng(seed).standard_normal((rows, cols)).astype(np.float32)


def block_amax(matrix: np.ndarray) -> np.ndarray:
    rows, cols = matrix.shape
    amax = np.abs(matrix.reshape(rows, cols // BLOCK_SIZE, BLOCK_SIZE)).max(axis=-1)
    return np.repeat(amax, BLOCK_SIZE, axis=1)


def test_q4_error_within_one_step_per_block() -> None:
    dense = weights()
    restored = QuantizedMatrix.from_dense(dense, "q4_0").dequantize()
    assert restored.shape == dense.shape
    assert (np.abs(restored - dense) <= block_amax(dense) / 8.0 * 1.05).all()


def test_q8_error_within_one_step_per_block() -> None:
    dense = weights(seed=1)
    restored = QuantizedMatrix.from_dense(dense, "q8_0").dequantize()
    assert (np.abs(restored - dense) <= block_amax(dense) / 127.0).all()


def test_quantized_sizes_and_row_lookup() -> None:
    dense = weights(rows=4, cols=96)
    q4 = QuantizedMatrix.from_dense(dense, "q4_0")
    q8 = QuantizedMatrix.from_dense(dense, "q8_0")
    n_blocks = 4 * 96 // BLOCK_SIZE
    assert q4.nbytes == n_blocks * (2 + BLOCK_SIZE // 2)
    assert q8.nbytes == n_blocks * (2 + BLOCK_SIZE)
    np.testing.assert_allclose(q8.rows([2, 0]), q8.dequantize()[[2, 0]])
    x = np.ones(96, dtype=np.float32)
    np.testing.assert_allclose(q8.matmul(x), q8.dequantize() @ x, rtol=1e-5)


def test_quantize_rejects_unaligned_columns() -> None:
    with pytest.raises(ValueError):
        QuantizedMatrix.from_dense(weights(cols=40), "q4_0")
    with pytest.raises(ValueError):
        QuantizedMatrix.from_dense(weights(), "q3_k")


def test_pack_parse_keeps_vectors_exact_and_matrices_quantized() -> None:
    dense = weights()
    bias = np.linspace(-1, 1, 8).astype(np.float32)
    odd = weights(rows=3, cols=5)
    blob = pack_model(
        family="llama",
        role=ModelRole.LLM,
        quantization="q8_0",
        tensors={"w": dense, "b": bias, "odd": odd},
        config={"d_model": 8},
    )
    parsed = parse_model_blob(blob)
    assert parsed.header.family == "llama"
    assert parsed.header.config == {"d_model": 8}
    assert isinstance(parsed.tensors["w"], QuantizedMatrix)
    np.testing.assert_array_equal(parsed.tensors["b"], bias)
    np.testing.assert_array_equal(parsed.tensors["odd"], odd)
    assert parsed.resident_bytes <= len(blob)


def test_f32_model_stores_dense_matrices() -> None:
    dense = weights()
    parsed = parse_model_blob(pack_model(family="whisper", role=ModelRole.STT, quantization="f32", tensors={"w": dense}))
    np.testing.assert_array_equal(parsed.tensors["w"], dense)


def corrupt_header(blob: bytes, mutate) -> bytes:
    _, version, length = struct.unpack_from("<4sII", blob, 0)
    header = json.loads(blob[12 : 12 + length])
    mutate(header)
    encoded = json.dumps(header).encode()
    return struct.pack("<4sII", MAGIC, version, len(encoded)) + encoded + b"\x00" * 64


@pytest.mark.parametrize(
    "mangle",
    [
        lambda blob: blob[:6],
        lambda blob: b"GGUF" + blob[4:],
        lambda blob: blob[:4] + struct.pack("<I", 99) + blob[8:],
        lambda blob: blob[:8] + struct.pack("<I", 10**6) + blob[12:],
        lambda blob: blob[:12] + b"{not json" + blob[21:],
        lambda blob: blob[:-64],
        lambda blob: corrupt_header(blob, lambda h: h["tensors"][0].update(nbytes=3)),
        lambda blob: corrupt_header(blob, lambda h: h.update(role="tts")),
    ],
)
def test_parse_rejects_damaged_blobs(mangle) -> None:
    blob = pack_model(family="llama", role=ModelRole.LLM, quantization="q4_0", tensors={"w": weights(rows=32)})
    with pytest.raises(ModelLoadError):
        parse_model_blob(mangle(blob))


def test_descriptor_normalizes_checksum_and_storage_name() -> None:
    descriptor = ModelDescriptor(
        model_id="org/tiny model",
        family="whisper",
        role="stt",
        version="2024.1",
        url="https://models.test/tiny.vxmb",
        size_bytes=10,
        sha256="AB" * 32,
    )
    assert descriptor.sha256 == "ab" * 32
    assert descriptor.key == ("org/tiny model", "2024.1")
    assert descriptor.storage_name == "org_tiny_model@2024.1"
    with pytest.raises(ValueError):
        ModelDescriptor(model_id="x", family="whisper", role="stt", url="u", size_bytes=0, sha256="0" * 64)


@pytest.fixture
def tokenizer() -> Tokenizer:
    pieces, specials = reference_vocab(LLM_SPECIALS)
    return Tokenizer(pieces, specials)


def test_tokenizer_round_trips_unicode_through_byte_fallback(tokenizer: Tokenizer) -> None:
    text = "hello wörld, it's 21°C today 👋"
    ids = tokenizer.encode(text)
    assert tokenizer.decode(ids) == text
    assert not any(tokenizer.is_special(i) for i in ids)


def test_tokenizer_prefers_longest_piece(tokenizer: Tokenizer) -> None:
    ids = tokenizer.encode(" weather today")
    assert [tokenizer.pieces[i] for i in ids] == [" weather", " today"]


def test_special_tokens_only_when_allowed(tokenizer: Tokenizer) -> None:
    user = tokenizer.token_id("<|user|>")
    assert user not in tokenizer.encode("<|user|>hi")
    assert tokenizer.encode("<|user|>hi", allow_special=True)[0] == user
    assert tokenizer.decode([user]) == ""
    with pytest.raises(KeyError):
        tokenizer.token_id("<|nope|>")


def test_stream_decoder_holds_back_partial_utf8(tokenizer: Tokenizer) -> None:
    ids = tokenizer.encode("é")
    assert len(ids) == 2
    decoder = tokenizer.stream_decoder()
    assert decoder.feed(ids[0]) == ""
    assert decoder.feed(ids[1]) == "é"
    assert decoder.flush() == ""


def test_blank_ids_cover_whitespace_pieces(tokenizer: Tokenizer) -> None:
    blanks = tokenizer.blank_ids()
    assert tokenizer.encode(" ")[0] in blanks
    assert tokenizer.encode("\n")[0] in blanks
    assert tokenizer.encode(" hello")[0] not in blanks


def test_tokenizer_requires_byte_fallback() -> None:
    with pytest.raises(ValueError):
        Tokenizer(["<|endoftext|>", "a", "b"], {"<|endoftext|>": 0})
