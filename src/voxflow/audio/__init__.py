"""
Signal processing: the 16-point spectral codec used by the vocoder and
the feature extractors used for voice-cloning prompts.
"""
from voxflow.audio.features import FlowMelExtractor, KaldiFbank, WhisperMelExtractor, mel_filterbank
from voxflow.audio.stft import (
    HOP_LENGTH,
    MAGNITUDE_CLIP,
    N_FFT,
    N_FREQS,
    MiniISTFT,
    MiniSTFT,
    frame_count,
    hann_window,
    pad_reflect,
)

__all__ = [
    "FlowMelExtractor",
    "KaldiFbank",
    "WhisperMelExtractor",
    "mel_filterbank",
    "HOP_LENGTH",
    "MAGNITUDE_CLIP",
    "N_FFT",
    "N_FREQS",
    "MiniISTFT",
    "MiniSTFT",
    "frame_count",
    "hann_window",
    "pad_reflect",
]
