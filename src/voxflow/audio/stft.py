"""
16-Point Spectral Codec.

The vocoder's decoder network works on a tiny STFT of the harmonic
source signal: 16-sample periodic Hann frames at hop 4, 9 one-sided
frequency bins. MiniSTFT analyses the source signal for the decoder;
MiniISTFT turns the decoder's predicted magnitude/phase back into a
waveform by inverse DFT and windowed overlap-add.

Both directions use precomputed twiddle tables (9x16 forward, 16x16
inverse) and process every frame in one matrix product, since frames
are independent.

Layout:
    process()          -> (real[9, F], imag[9, F])
    process_combined() -> [18, F]: rows 0..8 real, rows 9..17 imaginary
    MiniISTFT.process(magnitude[9, F], phase[9, F]) -> audio[16 + 4 * (F - 1)]
"""
from __future__ import annotations

from typing import Tuple

import numpy as np
from numpy.lib.stride_tricks import sliding_window_view

from voxflow.core.errors import InvalidArgumentError

N_FFT = 16
HOP_LENGTH = 4
N_FREQS = N_FFT // 2 + 1
CENTER_PAD = N_FFT // 2
MAGNITUDE_CLIP = 100.0
WINDOW_EPS = 1e-8


def hann_window(length: int) -> np.ndarray:
    """Periodic Hann window: 0.5 * (1 - cos(2*pi*i / length))."""
    i = np.arange(length, dtype=np.float64)
    return (0.5 * (1.0 - np.cos(2.0 * np.pi * i / length))).astype(np.float32)


def pad_reflect(signal: np.ndarray, pad: int) -> np.ndarray:
    """
    Edge-reflect ``pad`` samples onto both ends (edge sample not repeated).

    Reflection indices are clamped into the signal, so inputs shorter than
    ``pad`` + 1 repeat their boundary samples instead of failing.
    """
    signal = np.asarray(signal, dtype=np.float32).reshape(-1)
    n = signal.size
    if n == 0:
        raise InvalidArgumentError("cannot pad an empty signal")
    i = np.arange(pad)
    left = signal[np.minimum(pad - i, n - 1)]
    right = signal[np.maximum(n - 2 - i, 0)]
    return np.concatenate([left, signal, right])


def frame_count(length: int, frame_length: int, hop: int) -> int:
    """Frames that fit fully in ``length`` samples: (length - frame) // hop + 1, or 0."""
    if length < frame_length:
        return 0
    return (length - frame_length) // hop + 1


def frame_signal(signal: np.ndarray, frame_length: int, hop: int) -> np.ndarray:
    """Strided [F, frame_length] view of the full frames in ``signal``."""
    n_frames = frame_count(signal.size, frame_length, hop)
    if n_frames == 0:
        return np.zeros((0, frame_length), dtype=signal.dtype)
    return sliding_window_view(signal, frame_length)[::hop][:n_frames]


class MiniSTFT:
    """Forward 16-point STFT."""

    def __init__(self) -> None:
        self.window = hann_window(N_FFT)
        k = np.arange(N_FREQS, dtype=np.float64)[:, None]
        n = np.arange(N_FFT, dtype=np.float64)[None, :]
        angle = -2.0 * np.pi * k * n / N_FFT
        self._cos = np.cos(angle).astype(np.float32)  # [9, 16]
        self._sin = np.sin(angle).astype(np.float32)

    def process(self, signal: np.ndarray, center: bool = True) -> Tuple[np.ndarray, np.ndarray]:
        """
        Analyse ``signal`` into (real, imag), each [9, F].

        With center=True the signal is reflect-padded by 8 samples per side
        first. A (padded) signal shorter than 16 samples yields F = 0.

        Raises:
            InvalidArgumentError: On an empty signal.
        """
        signal = np.asarray(signal, dtype=np.float32).reshape(-1)
        if signal.size == 0:
            raise InvalidArgumentError("STFT input signal is empty")
        if center:
            signal = pad_reflect(signal, CENTER_PAD)

        frames = frame_signal(signal, N_FFT, HOP_LENGTH) * self.window  # [F, 16]
        real = self._cos @ frames.T
        imag = self._sin @ frames.T
        return real.astype(np.float32), imag.astype(np.float32)

    def process_combined(self, signal: np.ndarray, center: bool = True) -> np.ndarray:
        """Analyse into one [18, F] array: 9 real rows, then 9 imaginary rows."""
        real, imag = self.process(signal, center=center)
        return np.concatenate([real, imag], axis=0)


class MiniISTFT:
    """Inverse 16-point STFT with squared-window overlap-add normalization."""

    def __init__(self) -> None:
        self.window = hann_window(N_FFT)
        k = np.arange(N_FFT, dtype=np.float64)[:, None]
        n = np.arange(N_FFT, dtype=np.float64)[None, :]
        angle = 2.0 * np.pi * k * n / N_FFT
        self._cos = np.cos(angle).astype(np.float32)  # [16, 16], k x n
        self._sin = np.sin(angle).astype(np.float32)

    def process(self, magnitude: np.ndarray, phase: np.ndarray) -> np.ndarray:
        """
        Reconstruct a waveform from one-sided magnitude/phase.

        Magnitude is clamped to MAGNITUDE_CLIP from above. Bins 9..15 are
        filled as conjugates of bins 7..1 so the inverse DFT is real.

        Args:
            magnitude: [9, F], F >= 1.
            phase: [9, F], radians.

        Returns:
            float32 waveform of 16 + 4 * (F - 1) samples.

        Raises:
            InvalidArgumentError: On mismatched or malformed shapes.
        """
        magnitude = np.asarray(magnitude, dtype=np.float32)
        phase = np.asarray(phase, dtype=np.float32)
        if magnitude.ndim != 2 or magnitude.shape[0] != N_FREQS:
            raise InvalidArgumentError(
                f"magnitude must be [{N_FREQS}, F], got {list(magnitude.shape)}")
        if phase.shape != magnitude.shape:
            raise InvalidArgumentError(
                f"phase shape {list(phase.shape)} does not match magnitude {list(magnitude.shape)}")
        n_frames = magnitude.shape[1]
        if n_frames < 1:
            raise InvalidArgumentError("ISTFT needs at least one frame")

        mag = np.minimum(magnitude, MAGNITUDE_CLIP)
        re_half = mag * np.cos(phase)
        im_half = mag * np.sin(phase)

        mirror = np.arange(N_FREQS - 2, 0, -1)  # bins 7..1 -> 9..15
        re = np.concatenate([re_half, re_half[mirror]], axis=0)   # [16, F]
        im = np.concatenate([im_half, -im_half[mirror]], axis=0)

        frames = (re.T @ self._cos - im.T @ self._sin) / N_FFT  # [F, 16]
        frames *= self.window

        out_len = N_FFT + (n_frames - 1) * HOP_LENGTH
        positions = (np.arange(n_frames)[:, None] * HOP_LENGTH + np.arange(N_FFT)[None, :]).ravel()
        audio = np.zeros(out_len, dtype=np.float32)
        window_sum = np.zeros(out_len, dtype=np.float32)
        np.add.at(audio, positions, frames.ravel())
        np.add.at(window_sum, positions, np.tile(self.window * self.window, n_frames))

        nonzero = window_sum > WINDOW_EPS
        audio[nonzero] /= window_sum[nonzero]
        return audio
