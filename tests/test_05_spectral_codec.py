"""
Tests for the 16-point STFT / ISTFT pair.

Tests cover:
- Hann window and reflect padding
- Frame counts with and without center padding
- Forward transform against numpy's rfft
- Combined [18, F] layout
- Inverse output length, magnitude clamp, shape validation
- Analysis/synthesis round trip
"""
import numpy as np
import pytest

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
from voxflow.core.errors import InvalidArgumentError


def _signal(n, seed=0):
    return (np.random.default_rng(seed).standard_normal(n) * 0.1).astype(np.float32)


class TestHelpers:
    """Tests for window, padding and framing helpers."""

    def test_constants(self):
        """16-point frames at hop 4 give 9 one-sided bins."""
        assert (N_FFT, HOP_LENGTH, N_FREQS) == (16, 4, 9)

    def test_periodic_hann(self):
        """Periodic Hann starts at zero and peaks at the middle sample."""
        w = hann_window(16)
        assert w[0] == 0.0
        assert w[8] == pytest.approx(1.0)
        np.testing.assert_allclose(w[1:8], w[15:8:-1], atol=1e-6)

    def test_pad_reflect(self):
        """Reflection excludes the edge sample."""
        out = pad_reflect(np.array([1, 2, 3, 4, 5], dtype=np.float32), 2)
        np.testing.assert_array_equal(out, [3, 2, 1, 2, 3, 4, 5, 4, 3])

    def test_pad_reflect_short_signal(self):
        """Signals shorter than the pad repeat boundary samples."""
        out = pad_reflect(np.array([7.0, 9.0], dtype=np.float32), 3)
        assert out.size == 8
        np.testing.assert_array_equal(out[3:5], [7.0, 9.0])

    def test_pad_reflect_empty(self):
        """Padding an empty signal is an error."""
        with pytest.raises(InvalidArgumentError):
            pad_reflect(np.zeros(0), 8)

    @pytest.mark.parametrize("length,expected", [(15, 0), (16, 1), (19, 1), (20, 2), (64, 13)])
    def test_frame_count(self, length, expected):
        """(len - 16) // 4 + 1 full frames, 0 when shorter than a frame."""
        assert frame_count(length, 16, 4) == expected


class TestMiniSTFT:
    """Tests for the forward transform."""

    def test_centered_frame_count(self):
        """Center padding yields len // 4 + 1 frames."""
        real, imag = MiniSTFT().process(_signal(64))
        assert real.shape == (9, 17)
        assert imag.shape == (9, 17)

    def test_uncentered_frame_count(self):
        """Without padding only full frames are analysed."""
        real, _ = MiniSTFT().process(_signal(64), center=False)
        assert real.shape == (9, 13)

    def test_short_uncentered_signal_has_no_frames(self):
        """A signal shorter than one frame gives F = 0."""
        real, imag = MiniSTFT().process(_signal(10), center=False)
        assert real.shape == (9, 0)
        assert imag.shape == (9, 0)

    def test_empty_signal(self):
        """Empty input is rejected."""
        with pytest.raises(InvalidArgumentError):
            MiniSTFT().process(np.zeros(0, dtype=np.float32))

    def test_matches_rfft(self):
        """Each column equals rfft of the windowed frame."""
        x = _signal(32, seed=1)
        real, imag = MiniSTFT().process(x, center=False)
        window = hann_window(16)
        for f in range(real.shape[1]):
            ref = np.fft.rfft(x[f * 4:f * 4 + 16] * window)
            np.testing.assert_allclose(real[:, f], ref.real, atol=1e-5)
            np.testing.assert_allclose(imag[:, f], ref.imag, atol=1e-5)

    def test_combined_layout(self):
        """process_combined stacks 9 real rows over 9 imaginary rows."""
        stft = MiniSTFT()
        x = _signal(40, seed=2)
        real, imag = stft.process(x)
        combined = stft.process_combined(x)
        assert combined.shape == (18, real.shape[1])
        np.testing.assert_array_equal(combined[:9], real)
        np.testing.assert_array_equal(combined[9:], imag)


class TestMiniISTFT:
    """Tests for the inverse transform."""

    @pytest.mark.parametrize("frames", [1, 2, 17, 1201])
    def test_output_length(self, frames):
        """Output has 16 + 4 * (F - 1) samples."""
        out = MiniISTFT().process(np.ones((9, frames)), np.zeros((9, frames)))
        assert out.shape == (16 + 4 * (frames - 1),)
        assert out.dtype == np.float32

    def test_zero_frames_rejected(self):
        """At least one frame is required."""
        with pytest.raises(InvalidArgumentError):
            MiniISTFT().process(np.zeros((9, 0)), np.zeros((9, 0)))

    def test_shape_mismatch(self):
        """Magnitude and phase must agree and have 9 rows."""
        istft = MiniISTFT()
        with pytest.raises(InvalidArgumentError):
            istft.process(np.zeros((9, 4)), np.zeros((9, 5)))
        with pytest.raises(InvalidArgumentError):
            istft.process(np.zeros((8, 4)), np.zeros((8, 4)))

    def test_magnitude_clamped(self):
        """Magnitudes above 100 behave exactly like 100."""
        istft = MiniISTFT()
        phase = np.zeros((9, 6))
        clipped = istft.process(np.full((9, 6), 1e6), phase)
        at_limit = istft.process(np.full((9, 6), MAGNITUDE_CLIP), phase)
        np.testing.assert_allclose(clipped, at_limit)

    def test_zero_spectrum_is_silent(self):
        """Zero magnitude gives an all-zero waveform."""
        out = MiniISTFT().process(np.zeros((9, 5)), np.zeros((9, 5)))
        assert not out.any()


class TestRoundTrip:
    """Tests for STFT -> ISTFT reconstruction."""

    def test_centered_round_trip(self):
        """The interior of the inverse reproduces the original signal."""
        x = _signal(64, seed=3)
        real, imag = MiniSTFT().process(x, center=True)
        magnitude = np.sqrt(real ** 2 + imag ** 2)
        phase = np.arctan2(imag, real)

        out = MiniISTFT().process(magnitude, phase)
        assert out.size == 64 + 16
        np.testing.assert_allclose(out[8:8 + 64], x, atol=1e-4)


def _sine(seconds=1.0, freq=440.0, sr=16000):
    t = np.arange(int(seconds * sr), dtype=np.float64) / sr
    return (0.5 * np.sin(2 * np.pi * freq * t)).astype(np.float32)


class TestSinusoid:
    """Tests on one second of a clean 16 kHz sinusoid."""

    def test_frame_counts(self):
        """Centered: 1 + 16000 // 4 frames; uncentered: 1 + (16000 - 16) // 4."""
        x = _sine()
        real, imag = MiniSTFT().process(x, center=True)
        assert real.shape == imag.shape == (N_FREQS, 4001)
        real, _ = MiniSTFT().process(x, center=False)
        assert real.shape == (N_FREQS, 3997)

    def test_round_trip(self):
        """Reconstruction matches the sinusoid away from the padded edges."""
        x = _sine()
        real, imag = MiniSTFT().process(x, center=True)
        out = MiniISTFT().process(np.sqrt(real ** 2 + imag ** 2), np.arctan2(imag, real))
        assert out.size == x.size + 16
        np.testing.assert_allclose(out[8:8 + x.size], x, atol=1e-4)
