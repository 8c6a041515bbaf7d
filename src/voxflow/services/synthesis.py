"""
SynthesisPipeline - Text to Waveform.

This module provides the SynthesisPipeline class that coordinates every
stage of one synthesis request.

Architecture:
    text -> BPE tokenize -> AutoregressiveDecoder -> FlowSynthesizer -> VocoderSynthesizer -> audio

Voice Cloning:
    synthesize_with_prompt() adds a reference recording and its transcript:
        - speaker embedding      SpeakerEncoder(prompt 16 kHz)
        - prompt speech tokens   SpeechTokenizer(prompt 16 kHz)
        - prompt text tokens     prefixed to the target text for the decoder
        - prompt mel             FlowMelExtractor(prompt 24 kHz, resampled from
                                 16 kHz when not supplied)

Concurrency:
    Requests on one pipeline are serialized by an instance lock; every call
    builds its own buffers and random generator. Independent pipelines may
    run in parallel.

Example:
    >>> from voxflow.services import SynthesisPipeline
    >>> pipeline = SynthesisPipeline.from_models(models, tokenizer, config)
    >>> result = pipeline.synthesize("Hello there.", seed=7)
    >>> wav = result.to_wav_bytes()
"""
from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import numpy as np

from voxflow.audio.features import FlowMelExtractor
from voxflow.core.cancellation import CancellationToken, check_cancelled
from voxflow.core.config import Defaults, PipelineConfig
from voxflow.core.errors import DisposedError, InvalidArgumentError, NotLoadedError
from voxflow.core.logging import debug, get_logger, info, set_request_id, success, verbose, warn
from voxflow.inference.flow import FlowSynthesizer, l2_normalize
from voxflow.inference.llm import AutoregressiveDecoder
from voxflow.inference.prompt import SpeakerEncoder, SpeechTokenizer
from voxflow.inference.vocoder import VocoderSynthesizer
from voxflow.models.registry import ModelSet, load_model_set
from voxflow.text.tokenizer import ByteLevelBPETokenizer
from voxflow.utils.audio import make_rng, resample_linear, wav_bytes_from_float32
from voxflow.utils.timeit import StageTimer

_LOG = get_logger("voxflow.pipeline")


# =============================================================================
# Result
# =============================================================================

@dataclass
class SynthesisResult:
    """
    Result of one synthesis request.

    Attributes:
        audio: float32 mono waveform in [-0.99, 0.99] (empty for blank text).
        sample_rate: Output sample rate (24000).
        speech_tokens: Speech tokens produced by the decoder.
        mel_frames: Frames of the synthesized mel.
        timings: Per-stage seconds (tokenize, decode, flow, vocoder, ...).
        request_id: Request id used for log correlation.
        used_prompt: True when voice-prompt conditioning was applied.
    """
    audio: np.ndarray
    sample_rate: int
    speech_tokens: List[int] = field(default_factory=list)
    mel_frames: int = 0
    timings: Dict[str, float] = field(default_factory=dict)
    request_id: str = "-"
    used_prompt: bool = False

    @property
    def duration_seconds(self) -> float:
        return self.audio.size / self.sample_rate if self.sample_rate else 0.0

    def to_wav_bytes(self) -> bytes:
        """Encode the audio as 16-bit PCM WAV."""
        wav_bytes, _ = wav_bytes_from_float32(self.audio, self.sample_rate)
        return wav_bytes


def default_speaker_embedding(
    dim: int = Defaults.SPEAKER_EMBEDDING_DIM,
    seed: int = Defaults.DEFAULT_SPEAKER_SEED,
) -> np.ndarray:
    """Small uniform values in [-0.01, 0.01) from a fixed seed, L2-normalized."""
    rng = np.random.default_rng(seed)
    values = (rng.random(dim) * 0.02 - 0.01).astype(np.float32)
    return l2_normalize(values)


# =============================================================================
# Pipeline
# =============================================================================

class SynthesisPipeline:
    """
    Coordinates tokenizer, decoder, flow and vocoder for each request.

    Usage:
        pipeline = SynthesisPipeline.load(settings.get_pipeline_config())
        result = pipeline.synthesize("Good morning.")

        # Voice cloning (needs the prompt encoders)
        result = pipeline.synthesize_with_prompt(
            "Good morning.", "Transcript of the reference.", ref_16k)
    """

    def __init__(
        self,
        tokenizer: ByteLevelBPETokenizer,
        decoder: AutoregressiveDecoder,
        flow: FlowSynthesizer,
        vocoder: VocoderSynthesizer,
        config: Optional[PipelineConfig] = None,
        speaker_encoder: Optional[SpeakerEncoder] = None,
        speech_tokenizer: Optional[SpeechTokenizer] = None,
    ):
        self._config = config or PipelineConfig()
        self._tokenizer = tokenizer
        self._decoder = decoder
        self._flow = flow
        self._vocoder = vocoder
        self._speaker_encoder = speaker_encoder
        self._speech_tokenizer = speech_tokenizer
        self._flow_mel = FlowMelExtractor()
        self._models: Optional[ModelSet] = None

        # ─────────────────────────────────────────────────────────────────────
        # Generation parameters (clamped through the property setters)
        # ─────────────────────────────────────────────────────────────────────
        gen = self._config.generation
        self._max_tokens = Defaults.GENERATION_MAX_TOKENS
        self._min_tokens = Defaults.GENERATION_MIN_TOKENS
        self._sampling_k = Defaults.GENERATION_SAMPLING_K
        self.max_tokens = gen.max_tokens
        self.min_tokens = gen.min_tokens
        self.sampling_k = gen.sampling_k
        self._seed = gen.seed

        self._sample_rate = self._config.vocoder.sample_rate
        self._text_preview_chars = self._config.logging.text_preview_chars
        self._default_speaker = default_speaker_embedding()

        self._lock = threading.Lock()
        self._closed = False

    # =========================================================================
    # Construction
    # =========================================================================

    @classmethod
    def from_models(
        cls,
        models: ModelSet,
        tokenizer: ByteLevelBPETokenizer,
        config: Optional[PipelineConfig] = None,
    ) -> "SynthesisPipeline":
        """Wire every stage from a ModelSet."""
        config = config or PipelineConfig()
        decoder = AutoregressiveDecoder(
            models.text_embedding,
            models.speech_embedding,
            models.llm_initial,
            models.llm_decode,
            models.llm_decoder,
        )
        flow = FlowSynthesizer(
            models.flow_token_embedding,
            models.flow_lookahead,
            models.flow_speaker_projection,
            models.flow_estimator,
            num_steps=config.flow.num_steps,
        )
        vocoder = VocoderSynthesizer(
            models.hift_f0_predictor,
            models.hift_source_generator,
            models.hift_decoder,
            audio_limit=config.vocoder.audio_limit,
        )
        speaker_encoder = SpeakerEncoder(models.speaker_encoder) if models.speaker_encoder is not None else None
        speech_tokenizer = SpeechTokenizer(models.speech_tokenizer) if models.speech_tokenizer is not None else None
        pipeline = cls(tokenizer, decoder, flow, vocoder, config, speaker_encoder, speech_tokenizer)
        pipeline._models = models
        return pipeline

    @classmethod
    def load(cls, config: Optional[PipelineConfig] = None, include_prompt: bool = True) -> "SynthesisPipeline":
        """
        Open the tokenizer files and ONNX graphs named by ``config``.

        Raises:
            NotFoundError: If the models directory, a required graph or a tokenizer file is missing.
        """
        config = config or PipelineConfig()
        models_dir = config.models.models_dir
        vocab_path, merges_path = config.tokenizer.resolve(models_dir)

        tokenizer = ByteLevelBPETokenizer()
        tokenizer.load(vocab_path, merges_path)
        models = load_model_set(models_dir, providers=config.models.providers, include_prompt=include_prompt)
        return cls.from_models(models, tokenizer, config)

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def tokenizer(self) -> ByteLevelBPETokenizer:
        return self._tokenizer

    @property
    def sample_rate(self) -> int:
        return self._sample_rate

    @property
    def has_prompt_models(self) -> bool:
        return self._speaker_encoder is not None and self._speech_tokenizer is not None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def max_tokens(self) -> int:
        return self._max_tokens

    @max_tokens.setter
    def max_tokens(self, value: int) -> None:
        self._max_tokens = max(Defaults.GENERATION_MAX_TOKENS_FLOOR, int(value))

    @property
    def min_tokens(self) -> int:
        return self._min_tokens

    @min_tokens.setter
    def min_tokens(self, value: int) -> None:
        self._min_tokens = max(1, int(value))

    @property
    def sampling_k(self) -> int:
        return self._sampling_k

    @sampling_k.setter
    def sampling_k(self, value: int) -> None:
        self._sampling_k = max(1, int(value))

    @property
    def default_speaker_embedding(self) -> np.ndarray:
        return self._default_speaker.copy()

    def set_default_speaker_embedding(self, embedding: np.ndarray) -> None:
        """
        Replace the speaker used by synthesize().

        Raises:
            InvalidArgumentError: Unless ``embedding`` has exactly 192 values.
        """
        if embedding is None:
            raise InvalidArgumentError("speaker embedding must not be None")
        values = np.asarray(embedding, dtype=np.float32).reshape(-1)
        if values.size != Defaults.SPEAKER_EMBEDDING_DIM:
            raise InvalidArgumentError(
                f"speaker embedding must be {Defaults.SPEAKER_EMBEDDING_DIM}-dimensional, got {values.size}",
                {"size": int(values.size)})
        self._default_speaker = values.copy()

    def extract_speaker_embedding(self, audio_16k: np.ndarray) -> np.ndarray:
        """
        Embed a 16 kHz recording with the speaker encoder.

        Raises:
            NotLoadedError: If the pipeline has no speaker encoder.
        """
        self._require_open()
        if self._speaker_encoder is None:
            raise NotLoadedError("speaker encoder not loaded")
        with self._lock:
            return self._speaker_encoder.encode(audio_16k)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _require_open(self) -> None:
        if self._closed:
            raise DisposedError("pipeline has been closed")

    def _begin(self, text: str, request_id: Optional[str]) -> str:
        rid = request_id or uuid.uuid4().hex[:12]
        set_request_id(rid)
        preview = text[:self._text_preview_chars] if self._text_preview_chars > 0 else ""
        info(_LOG, "request", chars=len(text), text_preview=preview)
        debug(_LOG, "request_full", text=text)
        return rid

    def _rng(self, seed: Optional[int]) -> np.random.Generator:
        return make_rng(seed if seed is not None else self._seed)

    def _empty_result(self, rid: str) -> SynthesisResult:
        info(_LOG, "blank_text", result="empty")
        return SynthesisResult(audio=np.zeros(0, dtype=np.float32), sample_rate=self._sample_rate,
                               request_id=rid)

    def _tokenize(self, text: str, timer: StageTimer, stage: str = "tokenize") -> List[int]:
        with timer.stage(stage):
            ids = self._tokenizer.encode(text)
        verbose(_LOG, "tokenized", stage=stage, tokens=len(ids))
        return ids

    def _finish(
        self,
        rid: str,
        speech_tokens: List[int],
        mel: np.ndarray,
        audio: np.ndarray,
        timer: StageTimer,
        used_prompt: bool,
    ) -> SynthesisResult:
        timings = timer.as_dict()
        timings["total"] = timer.total
        duration = audio.size / self._sample_rate
        rtf = timings["total"] / duration if duration > 0 else 0.0
        success(_LOG, "synth_done", tokens=len(speech_tokens), mel_frames=mel.shape[1],
                samples=audio.size, audio_seconds=round(duration, 3),
                seconds=round(timings["total"], 3), rtf=round(rtf, 3), prompt=used_prompt)
        return SynthesisResult(
            audio=audio,
            sample_rate=self._sample_rate,
            speech_tokens=list(speech_tokens),
            mel_frames=int(mel.shape[1]),
            timings=timings,
            request_id=rid,
            used_prompt=used_prompt,
        )

    # =========================================================================
    # Public API
    # =========================================================================

    def synthesize(
        self,
        text: str,
        *,
        seed: Optional[int] = None,
        cancel: Optional[CancellationToken] = None,
        request_id: Optional[str] = None,
    ) -> SynthesisResult:
        """
        Synthesize ``text`` with the default speaker.

        Pipeline:
            1. Tokenize (blank text returns an empty result)
            2. Generate speech tokens
            3. Flow-match a mel spectrogram with the default speaker
            4. Vocode to 24 kHz audio

        Args:
            text: Input text (already normalized).
            seed: Seed for this request; falls back to the configured seed.
            cancel: Token checked between stages and inside the loops.
            request_id: Log correlation id (generated when omitted).

        Raises:
            DisposedError: After close().
            InvalidArgumentError: If the text yields no tokens.
            ModelInvocationError: If a collaborator fails.
            CancelledError: If ``cancel`` fires.
        """
        self._require_open()
        text = text or ""
        rid = self._begin(text, request_id)
        if not text.strip():
            return self._empty_result(rid)

        with self._lock:
            self._require_open()
            rng = self._rng(seed)
            timer = StageTimer()

            text_tokens = self._tokenize(text, timer)
            check_cancelled(cancel, "tokenize")

            with timer.stage("decode"):
                speech_tokens = self._decoder.generate(
                    text_tokens,
                    max_len=self._max_tokens,
                    min_len=self._min_tokens,
                    k=self._sampling_k,
                    rng=rng,
                    cancel=cancel,
                )

            with timer.stage("flow"):
                mel = self._flow.synthesize(speech_tokens, self._default_speaker, rng=rng, cancel=cancel)
            check_cancelled(cancel, "flow")

            with timer.stage("vocoder"):
                audio = self._vocoder.synthesize(mel)

            return self._finish(rid, speech_tokens, mel, audio, timer, used_prompt=False)

    def synthesize_with_prompt(
        self,
        text: str,
        prompt_text: Optional[str],
        prompt_audio_16k: Optional[np.ndarray],
        prompt_audio_24k: Optional[np.ndarray] = None,
        *,
        seed: Optional[int] = None,
        cancel: Optional[CancellationToken] = None,
        request_id: Optional[str] = None,
    ) -> SynthesisResult:
        """
        Synthesize ``text`` in the voice of a reference recording.

        Missing or empty ``prompt_audio_16k`` falls back to synthesize() with
        the default speaker (logged, ``used_prompt=False``). The prompt mel is
        only built when the prompt yields speech tokens.

        Raises:
            NotLoadedError: If the prompt encoders are not loaded.
            InvalidArgumentError: If the prompt is too short or longer than 30 s.
            (plus everything synthesize() raises)
        """
        self._require_open()
        if not self.has_prompt_models:
            raise NotLoadedError("prompt models not loaded",
                                 {"speaker_encoder": self._speaker_encoder is not None,
                                  "speech_tokenizer": self._speech_tokenizer is not None})
        text = text or ""
        if not text.strip():
            return self._empty_result(self._begin(text, request_id))

        prompt_16k = None if prompt_audio_16k is None else np.asarray(prompt_audio_16k, dtype=np.float32).reshape(-1)
        if prompt_16k is None or prompt_16k.size == 0:
            warn(_LOG, "prompt_audio_missing_fallback")
            return self.synthesize(text, seed=seed, cancel=cancel, request_id=request_id)

        rid = self._begin(text, request_id)
        with self._lock:
            self._require_open()
            rng = self._rng(seed)
            timer = StageTimer()

            prompt_text = (prompt_text or "").strip()
            prompt_text_tokens = self._tokenize(prompt_text, timer, "tokenize_prompt") if prompt_text else []
            text_tokens = self._tokenize(text, timer)

            with timer.stage("speaker_encode"):
                speaker = self._speaker_encoder.encode(prompt_16k)
            with timer.stage("speech_tokenize"):
                prompt_speech_tokens = self._speech_tokenizer.tokenize(prompt_16k)
            verbose(_LOG, "prompt_encoded", prompt_text_tokens=len(prompt_text_tokens),
                    prompt_speech_tokens=len(prompt_speech_tokens), speaker_dim=speaker.size)
            check_cancelled(cancel, "prompt")

            with timer.stage("decode"):
                speech_tokens = self._decoder.generate(
                    text_tokens,
                    prompt_text_tokens=prompt_text_tokens,
                    prompt_speech_tokens=prompt_speech_tokens,
                    max_len=self._max_tokens,
                    min_len=self._min_tokens,
                    k=self._sampling_k,
                    rng=rng,
                    cancel=cancel,
                )

            prompt_mel = None
            if prompt_speech_tokens:
                with timer.stage("prompt_mel"):
                    audio_24k = prompt_audio_24k
                    if audio_24k is None:
                        audio_24k = resample_linear(prompt_16k, Defaults.PROMPT_SAMPLE_RATE,
                                                    FlowMelExtractor.SAMPLE_RATE)
                    prompt_mel = self._flow_mel.extract(audio_24k)
                verbose(_LOG, "prompt_mel", frames=prompt_mel.shape[1])
                if prompt_mel.shape[1] == 0:
                    prompt_mel = None

            with timer.stage("flow"):
                mel = self._flow.synthesize(speech_tokens, speaker, prompt_tokens=prompt_speech_tokens,
                                            prompt_mel=prompt_mel, rng=rng, cancel=cancel)
            check_cancelled(cancel, "flow")

            with timer.stage("vocoder"):
                audio = self._vocoder.synthesize(mel)

            return self._finish(rid, speech_tokens, mel, audio, timer, used_prompt=True)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def close(self) -> None:
        """Dispose every stage; later calls raise DisposedError."""
        if self._closed:
            return
        with self._lock:
            self._closed = True
            self._decoder.close()
            self._flow.close()
            self._vocoder.close()
            if self._speaker_encoder is not None:
                self._speaker_encoder.close()
            if self._speech_tokenizer is not None:
                self._speech_tokenizer.close()
            if self._models is not None:
                self._models.close()
        info(_LOG, "pipeline_closed")

    def __enter__(self) -> "SynthesisPipeline":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
