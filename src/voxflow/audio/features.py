"""
Prompt Audio Feature Extractors.

Voice cloning feeds reference audio through three fixed front ends:

    KaldiFbank          16 kHz -> [F, 80] log fbank  (speaker encoder input)
    WhisperMelExtractor 16 kHz -> [128, F] log mel   (speech tokenizer input)
    FlowMelExtractor    24 kHz -> [80, F] log mel    (flow conditioning prompt)

Each extractor frames the signal, windows it, takes the power spectrum
with a real FFT of the frame size, and projects onto a triangular mel
filterbank. All frames are transformed in one vectorized call.

Frame Counts:
    Kaldi / Flow (no padding): (len - frame) // hop + 1, or 0 if len < frame
    Whisper (reflect pad n_fft/2 each side): len // hop + 1
"""
from __future__ import annotations

from typing import Callable

import numpy as np

from voxflow.audio.stft import frame_signal, pad_reflect


def _hz_to_mel_htk(hz):
    return 2595.0 * np.log10(1.0 + np.asarray(hz, dtype=np.float64) / 700.0)


def _mel_to_hz_htk(mel):
    return 700.0 * (np.power(10.0, np.asarray(mel, dtype=np.float64) / 2595.0) - 1.0)


def _hz_to_mel_kaldi(hz):
    return 1127.0 * np.log(1.0 + np.asarray(hz, dtype=np.float64) / 700.0)


def _mel_to_hz_kaldi(mel):
    return 700.0 * (np.exp(np.asarray(mel, dtype=np.float64) / 1127.0) - 1.0)


def mel_filterbank(
    n_mels: int,
    n_fft: int,
    sample_rate: int,
    f_min: float,
    f_max: float,
    hz_to_mel: Callable = _hz_to_mel_htk,
    mel_to_hz: Callable = _mel_to_hz_htk,
    area_normalize: bool = True,
) -> np.ndarray:
    """
    Triangular mel filterbank, [n_mels, n_fft // 2 + 1].

    Filter edges are n_mels + 2 points evenly spaced on the mel scale,
    converted to (fractional) FFT bin positions hz * n_fft / sample_rate.
    With area_normalize, filter m is scaled by 2 / (hz[m + 2] - hz[m])
    (Slaney normalization).
    """
    n_freqs = n_fft // 2 + 1
    mel_points = np.linspace(hz_to_mel(f_min), hz_to_mel(f_max), n_mels + 2)
    hz_points = mel_to_hz(mel_points)
    bins = hz_points * n_fft / sample_rate

    k = np.arange(n_freqs, dtype=np.float64)[None, :]
    left = bins[:-2, None]
    center = bins[1:-1, None]
    right = bins[2:, None]

    rise_width = np.where(center > left, center - left, 1.0)
    fall_width = np.where(right > center, right - center, 1.0)
    rising = (k >= left) & (k <= center) & (center > left)
    falling = (k >= center) & (k <= right) & (right > center)
    weights = np.where(
        rising,
        (k - left) / rise_width,
        np.where(falling, (right - k) / fall_width, 0.0),
    )

    if area_normalize:
        weights *= (2.0 / (hz_points[2:] - hz_points[:-2]))[:, None]
    return weights.astype(np.float32)


def power_spectrum(frames: np.ndarray, fft_size: int) -> np.ndarray:
    """|rfft|^2 of each row, zero-padded to ``fft_size``: [F, fft_size // 2 + 1]."""
    spec = np.fft.rfft(frames, n=fft_size, axis=-1)
    return (spec.real ** 2 + spec.imag ** 2).astype(np.float32)


def _periodic_hann(length: int) -> np.ndarray:
    i = np.arange(length, dtype=np.float64)
    return (0.5 * (1.0 - np.cos(2.0 * np.pi * i / length))).astype(np.float32)


class FlowMelExtractor:
    """
    24 kHz log-mel for flow prompt conditioning.

    n_fft = window = 1920, hop 480 (one frame per 20 ms, matching two
    frames per speech token at 25 Hz), 80 HTK mels over 0..12 kHz with
    Slaney normalization, log(max(e, 1e-5)), no center padding.
    """

    SAMPLE_RATE = 24000
    N_FFT = 1920
    HOP_LENGTH = 480
    N_MELS = 80
    LOG_FLOOR = 1e-5

    def __init__(self) -> None:
        self.window = _periodic_hann(self.N_FFT)
        self.filterbank = mel_filterbank(
            self.N_MELS, self.N_FFT, self.SAMPLE_RATE, 0.0, self.SAMPLE_RATE / 2.0)

    def num_frames(self, length: int) -> int:
        if length < self.N_FFT:
            return 0
        return (length - self.N_FFT) // self.HOP_LENGTH + 1

    def extract(self, audio: np.ndarray) -> np.ndarray:
        """Log-mel [80, F]; audio shorter than one frame gives F = 0."""
        audio = np.asarray(audio, dtype=np.float32).reshape(-1)
        frames = frame_signal(audio, self.N_FFT, self.HOP_LENGTH)
        if frames.shape[0] == 0:
            return np.zeros((self.N_MELS, 0), dtype=np.float32)
        power = power_spectrum(frames * self.window, self.N_FFT)
        mel = power @ self.filterbank.T
        return np.log(np.maximum(mel, self.LOG_FLOOR)).T.astype(np.float32)

    def extract_batched(self, audio: np.ndarray) -> np.ndarray:
        return self.extract(audio)[None, :, :]


class WhisperMelExtractor:
    """
    Whisper-style 128-bin log-mel at 16 kHz for the speech tokenizer.

    n_fft 400, hop 160, reflect padding of 200 samples per side, HTK
    mels over 0..8 kHz with Slaney normalization, log10(max(e, 1e-10)),
    then dynamic-range clamp to (global max - 8) and (v + 4) / 4.
    """

    SAMPLE_RATE = 16000
    N_FFT = 400
    HOP_LENGTH = 160
    N_MELS = 128
    LOG_FLOOR = 1e-10
    DYNAMIC_RANGE = 8.0

    def __init__(self) -> None:
        self.window = _periodic_hann(self.N_FFT)
        self.filterbank = mel_filterbank(
            self.N_MELS, self.N_FFT, self.SAMPLE_RATE, 0.0, self.SAMPLE_RATE / 2.0)

    def num_frames(self, length: int) -> int:
        if length == 0:
            return 0
        padded = length + self.N_FFT
        return (padded - self.N_FFT) // self.HOP_LENGTH + 1

    def extract(self, audio: np.ndarray) -> np.ndarray:
        """Normalized log-mel [128, F]; empty audio gives F = 0."""
        audio = np.asarray(audio, dtype=np.float32).reshape(-1)
        if audio.size == 0:
            return np.zeros((self.N_MELS, 0), dtype=np.float32)

        padded = pad_reflect(audio, self.N_FFT // 2)
        frames = frame_signal(padded, self.N_FFT, self.HOP_LENGTH)
        power = power_spectrum(frames * self.window, self.N_FFT)
        log_mel = np.log10(np.maximum(power @ self.filterbank.T, self.LOG_FLOOR))

        log_mel = np.maximum(log_mel, log_mel.max() - self.DYNAMIC_RANGE)
        return ((log_mel + 4.0) / 4.0).T.astype(np.float32)

    def extract_batched(self, audio: np.ndarray) -> np.ndarray:
        return self.extract(audio)[None, :, :]


class KaldiFbank:
    """
    Kaldi-compatible 80-bin log filterbank at 16 kHz.

    25 ms frames (400 samples) every 10 ms (160), pre-emphasis 0.97 over
    the whole signal, per-frame DC removal, Povey window, 512-point FFT,
    mel scale 1127 * ln(1 + f / 700) from 20 Hz to Nyquist without area
    normalization, natural log with a 1e-10 floor. Output is frame-major.
    """

    SAMPLE_RATE = 16000
    FRAME_LENGTH = 400
    FRAME_SHIFT = 160
    FFT_SIZE = 512
    NUM_MEL_BINS = 80
    PREEMPHASIS = 0.97
    LOW_FREQ = 20.0
    LOG_FLOOR = 1e-10

    def __init__(self) -> None:
        i = np.arange(self.FRAME_LENGTH, dtype=np.float64)
        hann = 0.5 - 0.5 * np.cos(2.0 * np.pi * i / (self.FRAME_LENGTH - 1))
        self.window = np.power(hann, 0.85).astype(np.float32)
        self.filterbank = mel_filterbank(
            self.NUM_MEL_BINS, self.FFT_SIZE, self.SAMPLE_RATE,
            self.LOW_FREQ, self.SAMPLE_RATE / 2.0,
            hz_to_mel=_hz_to_mel_kaldi, mel_to_hz=_mel_to_hz_kaldi,
            area_normalize=False,
        )

    def num_frames(self, length: int) -> int:
        if length < self.FRAME_LENGTH:
            return 0
        return (length - self.FRAME_LENGTH) // self.FRAME_SHIFT + 1

    def extract(self, audio: np.ndarray, subtract_mean: bool = True) -> np.ndarray:
        """
        Log fbank [F, 80]; audio shorter than one frame gives F = 0.

        With subtract_mean, each bin's mean over frames is removed (CMN).
        """
        audio = np.asarray(audio, dtype=np.float32).reshape(-1)
        if audio.size < self.FRAME_LENGTH:
            return np.zeros((0, self.NUM_MEL_BINS), dtype=np.float32)

        emphasized = audio.copy()
        emphasized[1:] = audio[1:] - self.PREEMPHASIS * audio[:-1]

        frames = frame_signal(emphasized, self.FRAME_LENGTH, self.FRAME_SHIFT)
        frames = (frames - frames.mean(axis=1, keepdims=True)) * self.window
        power = power_spectrum(frames, self.FFT_SIZE)
        fbank = np.log(np.maximum(power @ self.filterbank.T, self.LOG_FLOOR))

        if subtract_mean:
            fbank = fbank - fbank.mean(axis=0, keepdims=True)
        return fbank.astype(np.float32)

    def extract_batched(self, audio: np.ndarray, subtract_mean: bool = True) -> np.ndarray:
        return self.extract(audio, subtract_mean)[None, :, :]
