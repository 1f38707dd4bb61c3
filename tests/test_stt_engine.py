from __future__ import annotations

import numpy as np
import pytest
from conftest import ScriptedSpeechModel, handle_for, scripted_handle, token_id

from voxcore.audio.features import FeatureExtractor, FeatureTensor
from voxcore.errors import InferenceError
from voxcore.stt.engine import SpeechToTextEngine
from voxcore.stt.network import normalize_log_mel


def speech_like(seconds: float = 2.0, rate: int = 16_000) -> np.ndarray:
    t = np.arange(int(rate * seconds)) / rate
    voiced = 0.2 * np.sin(2 * np.pi * 180 * t) + 0.1 * np.sin(2 * np.pi * 720 * t)
    envelope = 0.6 + 0.4 * np.sin(2 * np.pi * 3 * t)
    return (voiced * envelope).astype(np.float32)


@pytest.fixture
def features() -> FeatureTensor:
    return FeatureExtractor().extract(speech_like())


def test_reference_model_transcribes_a_segment(speech_blob, features) -> None:
    handle = handle_for(speech_blob)
    deltas = list(SpeechToTextEngine(max_tokens=24).transcribe(features, handle))

    final = deltas[-1]
    assert final.is_final
    assert final.text
    assert final.text == final.text.strip()
    assert 1 <= final.token_count <= 24
    assert all(not delta.is_final for delta in deltas[:-1])


def test_partials_accumulate_into_final(speech_blob, features) -> None:
    real = handle_for(speech_blob)
    tok = real.tokenizer
    eot = tok.token_id("<|endoftext|>")
    script = [token_id(tok, " hello"), token_id(tok, " weather"), token_id(tok, " today"), eot]
    network = ScriptedSpeechModel(script, n_vocab=tok.vocab_size)
    handle = scripted_handle(speech_blob, network)

    deltas = list(SpeechToTextEngine().transcribe(features, handle))

    assert [d.text for d in deltas if not d.is_final] == [" hello", " weather", " today"]
    assert deltas[-2].transcript == " hello weather today"
    assert deltas[-1].text == "hello weather today"
    assert deltas[-1].token_count == 3
    assert network.encoded == 1


def test_first_step_never_ends_or_blanks(speech_blob, features) -> None:
    tok = handle_for(speech_blob).tokenizer
    eot = tok.token_id("<|endoftext|>")
    first = (eot, token_id(tok, " "), tok.token_id("<|en|>"), token_id(tok, " okay"))
    network = ScriptedSpeechModel([first, eot], n_vocab=tok.vocab_size)

    deltas = list(SpeechToTextEngine().transcribe(features, scripted_handle(speech_blob, network)))

    assert deltas[-1].text == "okay"


def test_max_tokens_bounds_decoding(speech_blob, features) -> None:
    tok = handle_for(speech_blob).tokenizer
    network = ScriptedSpeechModel([token_id(tok, " play")], n_vocab=tok.vocab_size)

    deltas = list(SpeechToTextEngine(max_tokens=5).transcribe(features, scripted_handle(speech_blob, network)))

    assert deltas[-1].token_count == 5
    assert deltas[-1].text == "play play play play play"


def test_stop_callback_ends_early(speech_blob, features) -> None:
    tok = handle_for(speech_blob).tokenizer
    network = ScriptedSpeechModel([token_id(tok, " music")], n_vocab=tok.vocab_size)
    calls = []

    def should_stop() -> bool:
        calls.append(1)
        return len(calls) > 2

    deltas = list(SpeechToTextEngine().transcribe(features, scripted_handle(speech_blob, network), should_stop))

    assert deltas[-1].is_final
    assert deltas[-1].token_count == 2


def test_empty_segment_yields_empty_final(speech_blob) -> None:
    empty = FeatureExtractor().extract(np.zeros(0, dtype=np.float32))
    deltas = list(SpeechToTextEngine().transcribe(empty, handle_for(speech_blob)))
    assert len(deltas) == 1
    assert deltas[0].is_final and deltas[0].text == ""


def test_unloaded_handle_fails(speech_blob, features) -> None:
    handle = handle_for(speech_blob)
    handle.release()
    with pytest.raises(InferenceError):
        list(SpeechToTextEngine().transcribe(features, handle))


def test_unload_between_steps_surfaces_as_inference_error(speech_blob, features) -> None:
    tok = handle_for(speech_blob).tokenizer
    network = ScriptedSpeechModel([token_id(tok, " light")], n_vocab=tok.vocab_size)
    handle = scripted_handle(speech_blob, network)
    stream = SpeechToTextEngine().transcribe(features, handle)

    assert next(stream).text == " light"
    handle.release()
    with pytest.raises(InferenceError):
        next(stream)


def test_rejects_wrong_role_and_mel_width(speech_blob, language_blob, features) -> None:
    engine = SpeechToTextEngine()
    with pytest.raises(InferenceError):
        list(engine.transcribe(features, handle_for(language_blob)))
    narrow = FeatureTensor(np.zeros((10, 40), dtype=np.float32))
    with pytest.raises(InferenceError):
        list(engine.transcribe(narrow, handle_for(speech_blob)))


def test_log_mel_normalization_range() -> None:
    mel = np.log(np.array([[1e-10, 1e-3, 1.0, 10.0]], dtype=np.float32))
    normalized = normalize_log_mel(mel)
    assert normalized.max() == pytest.approx(1.0)
    assert normalized.min() == pytest.approx(-1.0)
