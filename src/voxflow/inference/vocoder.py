"""
HiFT Vocoder Synthesizer.

Mel spectrogram [80, T] -> 24 kHz waveform:

    1. f0     = f0_predictor(mel[1, 80, T])                   [1, T]
    2. source = source_generator(f0[1, 1, T])                 [1, 1, 480 * T]
    3. s_stft = MiniSTFT(source, center=True)                 [1, 18, F]
    4. mag, phase = decoder(mel, s_stft)                      [9, F'] each
    5. audio  = MiniISTFT(mag, phase), hard-clipped to +-0.99

The decoder may return separate "magnitude"/"phase" tensors or one
combined [1, 18, F'] tensor whose first 9 rows are magnitude.
"""
from __future__ import annotations

import numpy as np

from voxflow.audio.stft import N_FREQS, MiniISTFT, MiniSTFT
from voxflow.core.config import Defaults
from voxflow.core.errors import DisposedError, InvalidArgumentError, ModelInvocationError
from voxflow.core.logging import get_logger, info, verbose
from voxflow.models.collaborator import ModelCollaborator, expect_shape, invoke, pick_output
from voxflow.models.registry import Stage
from voxflow.utils.timeit import timeit

_LOG = get_logger("voxflow.vocoder")


class VocoderSynthesizer:
    """Neural-source-filter vocoder over three collaborators."""

    def __init__(
        self,
        f0_predictor: ModelCollaborator,
        source_generator: ModelCollaborator,
        decoder: ModelCollaborator,
        audio_limit: float = Defaults.VOCODER_AUDIO_LIMIT,
        mel_channels: int = Defaults.FLOW_MEL_CHANNELS,
    ):
        self._f0_predictor = f0_predictor
        self._source_generator = source_generator
        self._decoder = decoder
        self.audio_limit = float(audio_limit)
        self.mel_channels = mel_channels
        self._stft = MiniSTFT()
        self._istft = MiniISTFT()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        self._closed = True

    def __enter__(self) -> "VocoderSynthesizer":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _split_decoder_output(self, out) -> tuple[np.ndarray, np.ndarray]:
        if "magnitude" in out and "phase" in out:
            magnitude = np.asarray(out["magnitude"], dtype=np.float32).reshape(N_FREQS, -1)
            phase = np.asarray(out["phase"], dtype=np.float32).reshape(N_FREQS, -1)
            return magnitude, phase

        combined = pick_output(out, Stage.HIFT_DECODER, "output", "magnitude_phase")
        combined = np.asarray(combined, dtype=np.float32)
        if combined.ndim == 3:
            combined = combined[0]
        expect_shape(combined, Stage.HIFT_DECODER, (2 * N_FREQS, None))
        return combined[:N_FREQS], combined[N_FREQS:]

    def synthesize(self, mel: np.ndarray) -> np.ndarray:
        """
        Vocode ``mel`` ([80, T] or [1, 80, T]) to float32 audio in [-limit, limit].

        Raises:
            DisposedError: After close().
            InvalidArgumentError: On an empty mel or a channel count other than 80.
            ModelInvocationError: If a collaborator fails or breaks its shape contract.
        """
        if self._closed:
            raise DisposedError("vocoder has been closed")
        mel = np.asarray(mel, dtype=np.float32)
        if mel.ndim == 3 and mel.shape[0] == 1:
            mel = mel[0]
        if mel.ndim != 2 or mel.shape[0] != self.mel_channels:
            raise InvalidArgumentError(
                f"mel must be [{self.mel_channels}, T], got {list(mel.shape)}",
                {"shape": list(mel.shape)})
        if mel.shape[1] == 0:
            raise InvalidArgumentError("mel has no frames")

        frames = mel.shape[1]
        mel_batch = mel[None, :, :]

        with timeit("vocoder") as t:
            out = invoke(self._f0_predictor, Stage.HIFT_F0_PREDICTOR, {"mel": mel_batch})
            f0 = pick_output(out, Stage.HIFT_F0_PREDICTOR, "f0", "output")
            f0 = np.asarray(f0, dtype=np.float32).reshape(1, 1, -1)
            if f0.shape[2] != frames:
                raise ModelInvocationError(
                    f"f0 length {f0.shape[2]} != mel frames {frames}", stage=Stage.HIFT_F0_PREDICTOR)

            out = invoke(self._source_generator, Stage.HIFT_SOURCE_GENERATOR, {"f0": f0})
            source = pick_output(out, Stage.HIFT_SOURCE_GENERATOR, "source", "output")
            source = np.asarray(source, dtype=np.float32).reshape(-1)
            if source.size == 0:
                raise ModelInvocationError("source signal is empty", stage=Stage.HIFT_SOURCE_GENERATOR)

            source_stft = self._stft.process_combined(source, center=True)[None, :, :]
            verbose(_LOG, "vocoder_source", frames=frames, source_samples=source.size,
                    stft_frames=source_stft.shape[2])

            out = invoke(self._decoder, Stage.HIFT_DECODER, {"mel": mel_batch, "source_stft": source_stft})
            magnitude, phase = self._split_decoder_output(out)
            if magnitude.shape[1] == 0:
                raise ModelInvocationError("decoder returned no frames", stage=Stage.HIFT_DECODER)

            audio = self._istft.process(magnitude, phase)
            audio = np.clip(audio, -self.audio_limit, self.audio_limit).astype(np.float32)

        info(_LOG, "vocoder_done", frames=frames, samples=audio.size, seconds=round(t.seconds, 3))
        return audio
