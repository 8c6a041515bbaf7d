"""
Shared fixtures: a tiny BPE vocabulary and deterministic stub collaborators
standing in for every neural network stage.

Stub behaviour (H = hidden width 8, V = 6761 speech vocab):
    text/speech embedding  ids[1, L]        -> ids broadcast to [1, L, H]
    llm_initial            inputs_embeds    -> hidden = inputs, cache = inputs
    llm_decode             one position     -> hidden = input, cache grows by one
    llm_decoder            any              -> logit spike at the next scripted token
    flow token embedding   token[1, T]      -> [1, T, 80]
    flow lookahead         [1, T, 80]       -> repeated to [1, 2T, 80]
    speaker projection     [1, 192]         -> first 80 values
    estimator              x, mu, ...       -> velocity = mu
    f0 predictor           mel[1, 80, T]    -> [1, T] channel mean
    source generator       f0[1, 1, T]      -> [1, 1, 480 T] sine
    hift decoder           mel, source_stft -> magnitude 0.1, phase 0
    speaker encoder        fbank[1, F, 80]  -> [1, 192] filled with F
    speech tokenizer       feats[1, 128, F] -> F // 4 tokens
"""
from __future__ import annotations

from typing import Dict, List, Mapping

import numpy as np
import pytest

from voxflow.core.config import Defaults, PipelineConfig
from voxflow.models.collaborator import CallableCollaborator
from voxflow.models.registry import ModelSet
from voxflow.text.tokenizer import BYTE_ENCODER, ByteLevelBPETokenizer

HIDDEN = 8
SPEECH_VOCAB = Defaults.SPEECH_VOCAB_SIZE
EOS = Defaults.EOS_TOKEN

MERGES = ["#version: 0.2", "h e", "l l", "he ll", "hell o", "Ġ w"]


def make_vocab() -> Dict[str, int]:
    """Every byte symbol at its byte value, then the merged symbols."""
    vocab = {BYTE_ENCODER[b]: b for b in range(256)}
    for i, symbol in enumerate(["he", "ll", "hell", "Ġw", "hello"]):
        vocab[symbol] = 256 + i
    return vocab


class Recorder:
    """Collects the inputs of every call per stage."""

    def __init__(self) -> None:
        self.calls: Dict[str, List[Dict[str, np.ndarray]]] = {}

    def wrap(self, stage: str, fn) -> CallableCollaborator:
        def _call(inputs: Mapping[str, np.ndarray]):
            self.calls.setdefault(stage, []).append({k: np.array(v) for k, v in inputs.items()})
            return fn(inputs)
        return CallableCollaborator(_call, name=stage)

    def count(self, stage: str) -> int:
        return len(self.calls.get(stage, []))


class ScriptedLogits:
    """Emits a logit spike at script[n] on the n-th call (last entry repeats)."""

    def __init__(self, script: List[int]):
        self.script = list(script)
        self.n = 0

    def __call__(self, inputs):
        token = self.script[min(self.n, len(self.script) - 1)]
        self.n += 1
        logits = np.full((1, SPEECH_VOCAB), -50.0, dtype=np.float32)
        logits[0, token] = 50.0
        return {"logits": logits}


def _embed(inputs):
    ids = np.asarray(inputs["input_ids"], dtype=np.float32)
    return {"embeddings": np.repeat(ids[..., None], HIDDEN, axis=2)}


def _llm_initial(inputs):
    x = np.asarray(inputs["inputs_embeds"], dtype=np.float32)
    return {"hidden_states": x.copy(), "past_key_values": x.copy()}


def _llm_decode(inputs):
    x = np.asarray(inputs["inputs_embeds"], dtype=np.float32)
    past = np.asarray(inputs["past_key_values"], dtype=np.float32)
    assert inputs["attention_mask"].shape[1] == past.shape[1] + 1
    return {"hidden_states": x.copy(), "new_past_key_values": np.concatenate([past, x], axis=1)}


def _flow_token_embedding(inputs):
    tokens = np.asarray(inputs["token"], dtype=np.float32)
    return {"token_embedding": np.repeat(tokens[..., None] * 1e-3, 80, axis=2)}


def _flow_lookahead(inputs):
    return {"output": np.repeat(np.asarray(inputs["token_embedding"]), 2, axis=1)}


def _speaker_projection(inputs):
    return {"spks": np.asarray(inputs["embedding"])[:, :80].copy()}


def _estimator(inputs):
    return {"velocity": np.asarray(inputs["mu"], dtype=np.float32).copy()}


def _f0_predictor(inputs):
    return {"f0": np.asarray(inputs["mel"]).mean(axis=1)}


def _source_generator(inputs):
    frames = np.asarray(inputs["f0"]).shape[2]
    t = np.arange(480 * frames, dtype=np.float32)
    return {"source": (0.1 * np.sin(2 * np.pi * 200.0 * t / 24000.0))[None, None, :]}


def _hift_decoder(inputs):
    frames = np.asarray(inputs["source_stft"]).shape[2]
    return {
        "magnitude": np.full((1, 9, frames), 0.1, dtype=np.float32),
        "phase": np.zeros((1, 9, frames), dtype=np.float32),
    }


def _speaker_encoder(inputs):
    frames = np.asarray(inputs["input"]).shape[1]
    return {"embedding": np.full((1, 192), float(frames), dtype=np.float32)}


def _speech_tokenizer(inputs):
    frames = int(np.asarray(inputs["feats_length"])[0])
    return {"speech_tokens": np.arange(frames // 4, dtype=np.int64)[None, :]}


def make_model_set(recorder: Recorder, script: List[int], prompt: bool = True) -> ModelSet:
    w = recorder.wrap
    return ModelSet(
        text_embedding=w("text_embedding", _embed),
        speech_embedding=w("speech_embedding", _embed),
        llm_initial=w("llm_initial", _llm_initial),
        llm_decode=w("llm_decode", _llm_decode),
        llm_decoder=w("llm_decoder", ScriptedLogits(script)),
        flow_token_embedding=w("flow_token_embedding", _flow_token_embedding),
        flow_lookahead=w("flow_lookahead", _flow_lookahead),
        flow_speaker_projection=w("flow_speaker_projection", _speaker_projection),
        flow_estimator=w("flow_estimator", _estimator),
        hift_f0_predictor=w("hift_f0_predictor", _f0_predictor),
        hift_source_generator=w("hift_source_generator", _source_generator),
        hift_decoder=w("hift_decoder", _hift_decoder),
        speaker_encoder=w("speaker_encoder", _speaker_encoder) if prompt else None,
        speech_tokenizer=w("speech_tokenizer", _speech_tokenizer) if prompt else None,
    )


@pytest.fixture
def vocab() -> Dict[str, int]:
    return make_vocab()


@pytest.fixture
def tokenizer(vocab) -> ByteLevelBPETokenizer:
    return ByteLevelBPETokenizer.from_tables(vocab, MERGES)


@pytest.fixture
def tokenizer_files(tmp_path, vocab):
    """vocab.json / merges.txt written to a temp models directory."""
    import json

    vocab_path = tmp_path / "vocab.json"
    merges_path = tmp_path / "merges.txt"
    vocab_path.write_text(json.dumps(vocab, ensure_ascii=False), encoding="utf-8")
    merges_path.write_text("\n".join(MERGES) + "\n", encoding="utf-8")
    return vocab_path, merges_path


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()


@pytest.fixture
def pipeline_config() -> PipelineConfig:
    config = PipelineConfig()
    config.generation.min_tokens = 1
    config.flow.num_steps = 4
    return config
