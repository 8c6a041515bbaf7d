"""
Audio Utilities.

All audio in voxflow is float32 mono in [-1, 1]. WAV output is PCM
16-bit via soundfile (libsndfile).

Key Functions:
    wav_bytes_from_float32: numpy waveform -> WAV bytes
    wav_bytes_to_float32: WAV bytes -> (waveform, sample_rate)
    read_wav: WAV file -> (waveform, sample_rate), downmixed to mono
    resample_linear: linear-interpolation resampling
    make_rng: per-request numpy Generator from an optional seed
"""
from __future__ import annotations

import io
from pathlib import Path
from typing import Dict, Optional, Tuple, Union

import numpy as np
import soundfile as sf

from voxflow.core.errors import InvalidArgumentError, NotFoundError
from voxflow.core.logging import get_logger, verbose
from voxflow.utils.timeit import timeit

_LOG = get_logger("voxflow.audio")


def wav_bytes_from_float32(waveform: np.ndarray, sample_rate: int) -> tuple[bytes, Dict[str, float]]:
    """
    Convert a float32 waveform to WAV bytes (PCM 16-bit).

    Args:
        waveform: Audio samples in [-1, 1]. Multi-dimensional input is flattened.
        sample_rate: Audio sample rate (e.g., 24000).

    Returns:
        Tuple of (wav_bytes, timing_dict) where timing_dict holds 'wav_encode'.
    """
    timings: Dict[str, float] = {}

    with timeit("wav_encode") as t:
        wav = np.asarray(waveform, dtype=np.float32)
        if wav.ndim > 1:
            wav = wav.reshape(-1)

        buf = io.BytesIO()
        sf.write(buf, wav, sample_rate, format="WAV", subtype="PCM_16")
        out = buf.getvalue()

    timings["wav_encode"] = t.seconds
    verbose(_LOG, "wav_encoded", bytes=len(out), sr=sample_rate, seconds=round(timings["wav_encode"], 4))
    return out, timings


def wav_bytes_to_float32(wav_bytes: bytes) -> tuple[np.ndarray, int]:
    """Decode WAV bytes to a float32 mono array and its sample rate."""
    wav, sr = sf.read(io.BytesIO(wav_bytes), dtype="float32")
    if wav.ndim > 1:
        wav = wav.mean(axis=1)
    return np.asarray(wav, dtype=np.float32), int(sr)


def read_wav(path: Union[str, Path]) -> Tuple[np.ndarray, int]:
    """
    Read an audio file as float32 mono.

    Raises:
        NotFoundError: If the file does not exist.
    """
    p = Path(path)
    if not p.exists():
        raise NotFoundError(f"audio file not found: {p}", {"path": str(p)})
    wav, sr = sf.read(str(p), dtype="float32")
    if wav.ndim > 1:
        wav = wav.mean(axis=1)
    return np.asarray(wav, dtype=np.float32), int(sr)


def resample_linear(audio: np.ndarray, src_rate: int, dst_rate: int) -> np.ndarray:
    """
    Resample by linear interpolation between neighbouring samples.

    Output length is int(len(audio) * dst_rate / src_rate); sample i reads
    position i * src_rate / dst_rate, clamped at the last input sample.
    """
    if src_rate <= 0 or dst_rate <= 0:
        raise InvalidArgumentError("sample rates must be positive",
                                   {"src_rate": src_rate, "dst_rate": dst_rate})
    audio = np.asarray(audio, dtype=np.float32).reshape(-1)
    if audio.size == 0 or src_rate == dst_rate:
        return audio.copy()

    ratio = src_rate / dst_rate
    out_len = int(audio.size / ratio)
    pos = np.arange(out_len, dtype=np.float64) * ratio
    i0 = np.minimum(pos.astype(np.int64), audio.size - 1)
    i1 = np.minimum(i0 + 1, audio.size - 1)
    frac = (pos - i0).astype(np.float32)
    return audio[i0] + frac * (audio[i1] - audio[i0])


def make_rng(seed: Optional[int] = None) -> np.random.Generator:
    """Build a numpy Generator; ``None`` draws fresh OS entropy."""
    return np.random.default_rng(seed)
