"""
Voice-Prompt Encoders.

Both encoders take 16 kHz reference audio:

    SpeakerEncoder   Kaldi fbank (CMN) [1, F<=200, 80] -> 192-dim embedding
    SpeechTokenizer  Whisper log-mel [1, 128, F]       -> speech token ids
"""
from __future__ import annotations

from typing import List, Optional

import numpy as np

from voxflow.audio.features import KaldiFbank, WhisperMelExtractor
from voxflow.core.config import Defaults
from voxflow.core.errors import DisposedError, InvalidArgumentError
from voxflow.core.logging import get_logger, verbose, warn
from voxflow.models.collaborator import ModelCollaborator, invoke, pick_output
from voxflow.models.registry import Stage

_LOG = get_logger("voxflow.prompt")


def _mono(audio: Optional[np.ndarray]) -> np.ndarray:
    if audio is None:
        return np.zeros(0, dtype=np.float32)
    return np.asarray(audio, dtype=np.float32).reshape(-1)


class SpeakerEncoder:
    """CAM++ style speaker embedding from 16 kHz audio."""

    SAMPLE_RATE = Defaults.PROMPT_SAMPLE_RATE
    EMBEDDING_DIM = Defaults.SPEAKER_EMBEDDING_DIM
    MAX_FRAMES = 200  # position-encoding limit of the encoder graph

    def __init__(self, model: ModelCollaborator):
        self._model = model
        self._fbank = KaldiFbank()
        self._closed = False

    def close(self) -> None:
        self._closed = True

    def encode(self, audio: np.ndarray) -> np.ndarray:
        """
        Embed ``audio`` (16 kHz mono) into a float32 vector.

        Raises:
            DisposedError: After close().
            InvalidArgumentError: On empty audio or audio shorter than one frame.
        """
        if self._closed:
            raise DisposedError("speaker encoder has been closed")
        audio = _mono(audio)
        if audio.size == 0:
            raise InvalidArgumentError("speaker audio must not be empty")

        fbank = self._fbank.extract(audio, subtract_mean=True)
        if fbank.shape[0] == 0:
            raise InvalidArgumentError("speaker audio too short to extract features",
                                       {"samples": int(audio.size)})
        if fbank.shape[0] > self.MAX_FRAMES:
            warn(_LOG, "speaker_frames_truncated", frames=fbank.shape[0], limit=self.MAX_FRAMES)
            fbank = fbank[:self.MAX_FRAMES]

        out = invoke(self._model, Stage.SPEAKER_ENCODER, {"input": fbank[None, :, :]})
        embedding = pick_output(out, Stage.SPEAKER_ENCODER, "embedding", "output")
        embedding = np.asarray(embedding, dtype=np.float32).reshape(-1)
        verbose(_LOG, "speaker_encoded", frames=fbank.shape[0], dim=embedding.size)
        return embedding


class SpeechTokenizer:
    """Discrete speech tokens from 16 kHz audio (at most 30 s)."""

    SAMPLE_RATE = Defaults.PROMPT_SAMPLE_RATE
    MAX_SECONDS = 30

    def __init__(self, model: ModelCollaborator):
        self._model = model
        self._mel = WhisperMelExtractor()
        self._closed = False

    def close(self) -> None:
        self._closed = True

    def tokenize(self, audio: np.ndarray) -> List[int]:
        """
        Tokenize ``audio``; empty audio yields [].

        Raises:
            DisposedError: After close().
            InvalidArgumentError: If the audio is longer than 30 seconds.
        """
        if self._closed:
            raise DisposedError("speech tokenizer has been closed")
        audio = _mono(audio)
        if audio.size == 0:
            return []
        seconds = audio.size / self.SAMPLE_RATE
        if seconds > self.MAX_SECONDS:
            raise InvalidArgumentError(
                f"audio length ({seconds:.1f}s) exceeds maximum ({self.MAX_SECONDS}s)",
                {"seconds": round(seconds, 3)})

        feats = self._mel.extract_batched(audio)
        out = invoke(self._model, Stage.SPEECH_TOKENIZER, {
            "feats": feats,
            "feats_length": np.array([feats.shape[2]], dtype=np.int32),
        })
        tokens = pick_output(out, Stage.SPEECH_TOKENIZER, "speech_tokens", "output", "tokens")
        tokens = [int(t) for t in np.asarray(tokens).reshape(-1)]
        verbose(_LOG, "speech_tokenized", frames=feats.shape[2], tokens=len(tokens))
        return tokens
