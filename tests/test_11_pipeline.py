"""
Tests for SynthesisPipeline.

Tests cover:
- Plain synthesis end to end over stub collaborators
- Blank text, timings, request ids, WAV export
- Voice-prompt synthesis and its fallback to the default speaker
- Generation parameter clamping and the default speaker embedding
- Missing prompt models and disposal
- Concurrent requests on one pipeline
"""
import threading
import time
from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pytest

from voxflow.core.cancellation import CancellationToken
from voxflow.core.errors import CancelledError, DisposedError, InvalidArgumentError, NotLoadedError
from voxflow.models.collaborator import CallableCollaborator
from voxflow.services.synthesis import SynthesisPipeline, SynthesisResult, default_speaker_embedding

from conftest import EOS, make_model_set

SCRIPT = [11, 12, 13, 14, 15, EOS]


def _tone(seconds, sr=16000):
    t = np.arange(int(seconds * sr), dtype=np.float32) / sr
    return (0.2 * np.sin(2 * np.pi * 180.0 * t)).astype(np.float32)


@pytest.fixture
def make_pipeline(recorder, tokenizer, pipeline_config):
    def _make(script=SCRIPT, prompt=True, config=None):
        models = make_model_set(recorder, script, prompt=prompt)
        return SynthesisPipeline.from_models(models, tokenizer, config or pipeline_config)
    return _make


class TestSynthesize:
    """Tests for plain synthesis."""

    def test_end_to_end(self, make_pipeline):
        """'hi' -> 5 speech tokens -> 10 mel frames -> 4816 samples."""
        result = make_pipeline().synthesize("hi", seed=1)

        assert isinstance(result, SynthesisResult)
        assert result.speech_tokens == [11, 12, 13, 14, 15]
        assert result.mel_frames == 10
        assert result.audio.shape == (4816,)
        assert result.sample_rate == 24000
        assert np.abs(result.audio).max() <= 0.99
        assert not result.used_prompt

    def test_timings(self, make_pipeline):
        """Every stage and the total are timed."""
        result = make_pipeline().synthesize("hi")
        assert set(result.timings) == {"tokenize", "decode", "flow", "vocoder", "total"}
        assert result.timings["total"] == pytest.approx(
            sum(v for k, v in result.timings.items() if k != "total"))

    def test_text_tokens_reach_decoder(self, make_pipeline, recorder):
        """The decoder embeds the tokenizer output."""
        make_pipeline().synthesize("hello")
        np.testing.assert_array_equal(recorder.calls["text_embedding"][0]["input_ids"], [[260]])

    def test_default_speaker_used(self, make_pipeline, recorder):
        """The flow is conditioned on the default speaker embedding."""
        pipeline = make_pipeline()
        pipeline.synthesize("hi")
        fed = recorder.calls["flow_speaker_projection"][0]["embedding"][0]
        np.testing.assert_allclose(fed, default_speaker_embedding(), atol=1e-6)

    def test_seed_reproducible(self, make_pipeline):
        """Equal seeds give identical audio."""
        a = make_pipeline().synthesize("hi", seed=5).audio
        b = make_pipeline().synthesize("hi", seed=5).audio
        np.testing.assert_array_equal(a, b)

    @pytest.mark.parametrize("text", ["", "   ", "\n\t", None])
    def test_blank_text(self, make_pipeline, recorder, text):
        """Blank text returns empty audio without touching any model."""
        result = make_pipeline().synthesize(text)
        assert result.audio.size == 0
        assert result.speech_tokens == []
        assert result.duration_seconds == 0.0
        assert recorder.calls == {}

    def test_request_id(self, make_pipeline):
        """A given request id is kept; otherwise one is generated."""
        pipeline = make_pipeline()
        assert pipeline.synthesize("hi", request_id="req-1").request_id == "req-1"
        assert len(pipeline.synthesize("hi").request_id) == 12

    def test_wav_bytes(self, make_pipeline):
        """to_wav_bytes() produces a 16-bit RIFF/WAVE file."""
        result = make_pipeline().synthesize("hi")
        data = result.to_wav_bytes()
        assert data[:4] == b"RIFF"
        assert data[8:12] == b"WAVE"
        assert len(data) >= 44 + 2 * result.audio.size
        assert result.duration_seconds == pytest.approx(4816 / 24000)

    def test_cancelled(self, make_pipeline):
        """A cancelled token aborts the request."""
        token = CancellationToken()
        token.cancel()
        with pytest.raises(CancelledError):
            make_pipeline().synthesize("hi", cancel=token)


class TestSynthesizeWithPrompt:
    """Tests for voice-prompt synthesis."""

    def test_with_prompt(self, make_pipeline, recorder):
        """Prompt speech tokens condition both the decoder and the flow."""
        result = make_pipeline().synthesize_with_prompt("hi", "hello", _tone(1.0), seed=3)

        assert result.used_prompt
        assert result.speech_tokens == [11, 12, 13, 14, 15]
        assert result.mel_frames == 10
        assert result.audio.shape == (4816,)

        # 1 s at 16 kHz -> 101 whisper frames -> 25 prompt tokens
        # SOS, "hello" + "hi", TASK, prompt speech
        assert recorder.calls["llm_initial"][0]["inputs_embeds"].shape[1] == 1 + 3 + 1 + 25
        np.testing.assert_array_equal(recorder.calls["text_embedding"][0]["input_ids"], [[260, 104, 105]])

        estimator = recorder.calls["flow_estimator"][0]
        assert estimator["x"].shape == (2, 80, 2 * (25 + 5))
        assert estimator["cond"][:, :, :50].any()
        assert not estimator["cond"][:, :, 50:].any()

        for stage in ("tokenize_prompt", "tokenize", "speaker_encode", "speech_tokenize",
                      "decode", "prompt_mel", "flow", "vocoder", "total"):
            assert stage in result.timings

    def test_speaker_from_prompt(self, make_pipeline, recorder):
        """The flow speaker comes from the speaker encoder, not the default."""
        make_pipeline().synthesize_with_prompt("hi", "", _tone(1.0))
        fed = recorder.calls["flow_speaker_projection"][0]["embedding"][0]
        np.testing.assert_allclose(fed, np.full(192, 1.0 / np.sqrt(192)), rtol=1e-5)

    def test_empty_prompt_text(self, make_pipeline, recorder):
        """Without a transcript only the target text is embedded."""
        result = make_pipeline().synthesize_with_prompt("hi", None, _tone(1.0))
        assert "tokenize_prompt" not in result.timings
        np.testing.assert_array_equal(recorder.calls["text_embedding"][0]["input_ids"], [[104, 105]])

    def test_explicit_24k_audio(self, make_pipeline):
        """Supplied 24 kHz audio is used for the prompt mel."""
        result = make_pipeline().synthesize_with_prompt("hi", "hello", _tone(1.0), _tone(1.0, 24000))
        assert result.used_prompt
        assert result.audio.shape == (4816,)

    def test_prompt_too_short_for_mel(self, make_pipeline, recorder):
        """A prompt too short for one flow mel frame leaves the conditioning empty."""
        # 0.06 s -> 1 prompt token but 1440 samples at 24 kHz (< 1920)
        result = make_pipeline().synthesize_with_prompt("hi", "hello", _tone(0.06))
        assert result.used_prompt
        assert not recorder.calls["flow_estimator"][0]["cond"].any()

    @pytest.mark.parametrize("audio", [None, np.zeros(0, dtype=np.float32)])
    def test_missing_audio_falls_back(self, make_pipeline, recorder, audio):
        """Missing prompt audio falls back to the default speaker."""
        result = make_pipeline().synthesize_with_prompt("hi", "hello", audio)
        assert not result.used_prompt
        assert result.audio.shape == (4816,)
        assert recorder.count("speaker_encoder") == 0
        assert recorder.count("speech_tokenizer") == 0

    def test_blank_text(self, make_pipeline, recorder):
        """Blank target text returns empty audio."""
        result = make_pipeline().synthesize_with_prompt(" ", "hello", _tone(1.0))
        assert result.audio.size == 0
        assert recorder.calls == {}

    def test_prompt_models_missing(self, make_pipeline):
        """Without prompt encoders prompt synthesis is NotLoaded."""
        pipeline = make_pipeline(prompt=False)
        assert not pipeline.has_prompt_models
        with pytest.raises(NotLoadedError):
            pipeline.synthesize_with_prompt("hi", "hello", _tone(1.0))
        with pytest.raises(NotLoadedError):
            pipeline.extract_speaker_embedding(_tone(1.0))

    def test_prompt_over_thirty_seconds(self, make_pipeline):
        """Prompt audio over 30 s is rejected."""
        with pytest.raises(InvalidArgumentError):
            make_pipeline().synthesize_with_prompt("hi", "hello", np.full(16000 * 31, 0.1, dtype=np.float32))


class TestParameters:
    """Tests for generation parameters and the default speaker."""

    def test_config_values_applied(self, make_pipeline, pipeline_config):
        """Pipeline properties start from the config."""
        pipeline_config.generation.max_tokens = 300
        pipeline_config.generation.sampling_k = 7
        pipeline = make_pipeline(config=pipeline_config)
        assert pipeline.max_tokens == 300
        assert pipeline.min_tokens == 1
        assert pipeline.sampling_k == 7

    def test_setters_clamp(self, make_pipeline):
        """max_tokens >= 10, min_tokens >= 1, sampling_k >= 1."""
        pipeline = make_pipeline()
        pipeline.max_tokens = 3
        pipeline.min_tokens = 0
        pipeline.sampling_k = -4
        assert pipeline.max_tokens == 10
        assert pipeline.min_tokens == 1
        assert pipeline.sampling_k == 1

    def test_default_speaker_embedding(self):
        """Fixed-seed, unit-norm, 192-dimensional."""
        a = default_speaker_embedding()
        assert a.shape == (192,)
        assert np.linalg.norm(a) == pytest.approx(1.0, rel=1e-5)
        np.testing.assert_array_equal(a, default_speaker_embedding())

    def test_default_speaker_is_copied(self, make_pipeline):
        """The property returns a copy."""
        pipeline = make_pipeline()
        emb = pipeline.default_speaker_embedding
        emb[:] = 0
        assert pipeline.default_speaker_embedding.any()

    def test_set_default_speaker(self, make_pipeline, recorder):
        """A replacement speaker is used by later requests."""
        pipeline = make_pipeline()
        pipeline.set_default_speaker_embedding(np.ones(192, dtype=np.float32))
        pipeline.synthesize("hi")
        fed = recorder.calls["flow_speaker_projection"][0]["embedding"][0]
        np.testing.assert_allclose(fed, np.full(192, 1.0 / np.sqrt(192)), rtol=1e-5)

    @pytest.mark.parametrize("embedding", [None, np.ones(191), np.ones(193)])
    def test_set_default_speaker_invalid(self, make_pipeline, embedding):
        """Only 192-value embeddings are accepted."""
        with pytest.raises(InvalidArgumentError):
            make_pipeline().set_default_speaker_embedding(embedding)

    def test_extract_speaker_embedding(self, make_pipeline):
        """The speaker encoder output is returned as is."""
        embedding = make_pipeline().extract_speaker_embedding(_tone(1.0))
        assert embedding.shape == (192,)


class TestLifecycle:
    """Tests for close()."""

    def test_close_disposes(self, make_pipeline):
        """Calls after close() raise DisposedError."""
        pipeline = make_pipeline()
        pipeline.close()
        assert pipeline.closed
        with pytest.raises(DisposedError):
            pipeline.synthesize("hi")
        with pytest.raises(DisposedError):
            pipeline.synthesize_with_prompt("hi", "hello", _tone(1.0))

    def test_close_idempotent(self, make_pipeline):
        """A second close() is harmless."""
        pipeline = make_pipeline()
        pipeline.close()
        pipeline.close()

    def test_context_manager(self, make_pipeline):
        """The with-block closes the pipeline."""
        with make_pipeline() as pipeline:
            pipeline.synthesize("hi")
        assert pipeline.closed


class OverlapGuard:
    """Wraps collaborators and records how many run at the same time."""

    def __init__(self):
        self._lock = threading.Lock()
        self.active = 0
        self.max_active = 0

    def wrap(self, name, model):
        def _call(inputs):
            with self._lock:
                self.active += 1
                self.max_active = max(self.max_active, self.active)
            try:
                time.sleep(0.0002)
                return model.evaluate(inputs)
            finally:
                with self._lock:
                    self.active -= 1
        return CallableCollaborator(_call, name=name)


def _mel_level_decoder(inputs):
    # Loudness follows the mel so the audio depends on the flow noise
    frames = inputs["source_stft"].shape[2]
    level = 0.05 + 0.01 * float(np.abs(inputs["mel"]).mean())
    phase = np.repeat(-np.pi * np.arange(9, dtype=np.float32)[:, None], frames, axis=1)
    return {"magnitude": np.full((1, 9, frames), level, dtype=np.float32), "phase": phase[None]}


class TestConcurrency:
    """Tests for concurrent requests on one pipeline."""

    SEEDS = [1, 2, 3, 4, 5, 6]

    @staticmethod
    def _pipeline(recorder, tokenizer, config, guard=None):
        models = make_model_set(recorder, [11], prompt=False)
        models.hift_decoder = CallableCollaborator(_mel_level_decoder, name="hift_decoder")
        if guard is not None:
            for name, model in list(models.items()):
                setattr(models, name, guard.wrap(name, model))
        return SynthesisPipeline.from_models(models, tokenizer, config)

    def test_threads_match_sequential(self, recorder, tokenizer, pipeline_config):
        """Each threaded request equals the same seed run alone."""
        expected = {
            seed: self._pipeline(recorder, tokenizer, pipeline_config).synthesize("hi", seed=seed)
            for seed in self.SEEDS
        }
        assert not np.array_equal(expected[1].audio, expected[2].audio)

        guard = OverlapGuard()
        pipeline = self._pipeline(recorder, tokenizer, pipeline_config, guard)
        with ThreadPoolExecutor(max_workers=4) as pool:
            futures = {seed: pool.submit(pipeline.synthesize, "hi", seed=seed) for seed in self.SEEDS}
            results = {seed: f.result(timeout=60) for seed, f in futures.items()}

        for seed in self.SEEDS:
            assert results[seed].speech_tokens == expected[seed].speech_tokens
            np.testing.assert_array_equal(results[seed].audio, expected[seed].audio)

    def test_collaborators_never_overlap(self, recorder, tokenizer, pipeline_config):
        """The instance lock keeps one request inside the models at a time."""
        guard = OverlapGuard()
        pipeline = self._pipeline(recorder, tokenizer, pipeline_config, guard)

        threads = [threading.Thread(target=pipeline.synthesize, args=("hi",), kwargs={"seed": s})
                   for s in self.SEEDS]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=60)

        assert guard.max_active == 1
        assert guard.active == 0

    def test_request_ids_are_per_call(self, recorder, tokenizer, pipeline_config):
        """Concurrent calls keep their own request ids."""
        pipeline = self._pipeline(recorder, tokenizer, pipeline_config)
        with ThreadPoolExecutor(max_workers=3) as pool:
            futures = [pool.submit(pipeline.synthesize, "hi", request_id=f"req-{i}") for i in range(3)]
            ids = [f.result(timeout=60).request_id for f in futures]
        assert ids == ["req-0", "req-1", "req-2"]
