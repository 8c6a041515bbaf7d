"""
Flow-Matching Mel Synthesizer.

Turns speech tokens into an 80-bin mel spectrogram by integrating a
learned velocity field from Gaussian noise (t=0) to data (t=1):

    1. spks = speaker_projection(embedding / (||embedding|| + 1e-8))   [1, 80]
    2. h    = token_embedding([prompt_tokens, tokens])                 [1, T, 80]
    3. mu   = lookahead(h) transposed to channel-major                 [1, 80, 2T]
    4. cond = prompt mel resampled into the first 2 * T_prompt columns [1, 80, 2T]
    5. x    ~ N(0, 1) via Box-Muller                                   [1, 80, 2T]
    6. every tensor replicated to batch 2; N Euler steps of
       x += dt * estimator(x, mask, mu, t=[t, t], spks, cond)
    7. return x[0, :, 2 * T_prompt:]                                   [80, 2 * T_gen]

The output length is always 2 * len(tokens); without a prompt the
prompt strip is zero-length.
"""
from __future__ import annotations

from typing import Optional, Sequence

import numpy as np

from voxflow.core.cancellation import CancellationToken, check_cancelled
from voxflow.core.config import Defaults
from voxflow.core.errors import DisposedError, InvalidArgumentError, ModelInvocationError
from voxflow.core.logging import debug, get_logger, info, verbose
from voxflow.generation.euler import EulerIntegrator
from voxflow.models.collaborator import ModelCollaborator, expect_shape, invoke, pick_output
from voxflow.models.registry import Stage
from voxflow.utils.timeit import timeit

_LOG = get_logger("voxflow.flow")

ESTIMATOR_BATCH = 2
NORM_EPS = 1e-8
BOX_MULLER_U1_MIN = 1e-4


def l2_normalize(embedding: np.ndarray) -> np.ndarray:
    """embedding / (||embedding|| + 1e-8)."""
    embedding = np.asarray(embedding, dtype=np.float32)
    return embedding / (np.sqrt(np.sum(embedding * embedding)) + NORM_EPS)


def box_muller_noise(shape: Sequence[int], rng: np.random.Generator) -> np.ndarray:
    """
    Standard normal samples via Box-Muller.

    Each (u1, u2) pair yields two values, r*cos(theta) and r*sin(theta),
    written to consecutive positions. u1 is drawn from [1e-4, 1) so
    log(u1) stays finite.
    """
    size = int(np.prod(shape))
    pairs = (size + 1) // 2
    u1 = rng.uniform(BOX_MULLER_U1_MIN, 1.0, size=pairs)
    u2 = rng.uniform(0.0, 1.0, size=pairs)
    r = np.sqrt(-2.0 * np.log(u1))
    theta = 2.0 * np.pi * u2
    values = np.empty(pairs * 2, dtype=np.float64)
    values[0::2] = r * np.cos(theta)
    values[1::2] = r * np.sin(theta)
    return values[:size].astype(np.float32).reshape(shape)


def resample_columns(mel: np.ndarray, length: int) -> np.ndarray:
    """
    Linearly resample [C, T_src] to [C, length] along time.

    Column t reads position t * T_src / length, interpolating between its
    floor and the next column (both clamped to the last column). Equal
    lengths copy unchanged.
    """
    mel = np.asarray(mel, dtype=np.float32)
    src_len = mel.shape[1]
    if src_len == length:
        return mel.copy()
    ratio = src_len / length
    pos = np.arange(length, dtype=np.float64) * ratio
    t0 = np.minimum(pos.astype(np.int64), src_len - 1)
    t1 = np.minimum(t0 + 1, src_len - 1)
    frac = (pos - t0).astype(np.float32)
    return mel[:, t0] + frac[None, :] * (mel[:, t1] - mel[:, t0])


def _batch(x: np.ndarray) -> np.ndarray:
    return np.repeat(x, ESTIMATOR_BATCH, axis=0)


class FlowSynthesizer:
    """Speech tokens + speaker embedding -> mel spectrogram."""

    def __init__(
        self,
        token_embedding: ModelCollaborator,
        lookahead: ModelCollaborator,
        speaker_projection: ModelCollaborator,
        estimator: ModelCollaborator,
        num_steps: int = Defaults.FLOW_NUM_STEPS,
        mel_channels: int = Defaults.FLOW_MEL_CHANNELS,
        token_mel_ratio: int = Defaults.FLOW_TOKEN_MEL_RATIO,
    ):
        self._token_embedding = token_embedding
        self._lookahead = lookahead
        self._speaker_projection = speaker_projection
        self._estimator = estimator
        self.integrator = EulerIntegrator(num_steps)
        self.mel_channels = mel_channels
        self.token_mel_ratio = token_mel_ratio
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        self._closed = True

    def __enter__(self) -> "FlowSynthesizer":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def project_speaker(self, embedding: np.ndarray) -> np.ndarray:
        """Normalize and project the raw speaker embedding to [1, mel_channels]."""
        emb = l2_normalize(np.asarray(embedding, dtype=np.float32).reshape(1, -1))
        out = invoke(self._speaker_projection, Stage.FLOW_SPEAKER_PROJECTION, {"embedding": emb})
        spks = pick_output(out, Stage.FLOW_SPEAKER_PROJECTION, "spks", "output")
        spks = np.asarray(spks, dtype=np.float32).reshape(1, -1)
        return expect_shape(spks, Stage.FLOW_SPEAKER_PROJECTION, (1, self.mel_channels))

    def encode_tokens(self, tokens: Sequence[int]) -> np.ndarray:
        """Embed and expand tokens to channel-major mu, [1, mel_channels, R * T]."""
        ids = np.asarray(list(tokens), dtype=np.int64).reshape(1, -1)
        out = invoke(self._token_embedding, Stage.FLOW_TOKEN_EMBEDDING, {"token": ids})
        emb = pick_output(out, Stage.FLOW_TOKEN_EMBEDDING, "token_embedding", "output")
        emb = expect_shape(np.asarray(emb, dtype=np.float32), Stage.FLOW_TOKEN_EMBEDDING,
                           (1, ids.shape[1], None))

        out = invoke(self._lookahead, Stage.FLOW_LOOKAHEAD, {"token_embedding": emb})
        h = pick_output(out, Stage.FLOW_LOOKAHEAD, "output", "h")
        expected_len = self.token_mel_ratio * ids.shape[1]
        h = expect_shape(np.asarray(h, dtype=np.float32), Stage.FLOW_LOOKAHEAD,
                         (1, expected_len, self.mel_channels))
        return np.ascontiguousarray(h.transpose(0, 2, 1))

    def build_conditioning(self, total_mel: int, prompt_mel_len: int,
                           prompt_mel: Optional[np.ndarray]) -> np.ndarray:
        """[1, C, total_mel] zeros with the prompt mel resampled into the first columns."""
        cond = np.zeros((1, self.mel_channels, total_mel), dtype=np.float32)
        if prompt_mel is None or prompt_mel_len == 0:
            return cond
        mel = np.asarray(prompt_mel, dtype=np.float32)
        if mel.ndim == 3:
            mel = mel[0]
        if mel.ndim != 2 or mel.shape[0] != self.mel_channels or mel.shape[1] == 0:
            raise InvalidArgumentError(
                f"prompt_mel must be [{self.mel_channels}, T] with T > 0, got {list(np.shape(prompt_mel))}")
        cond[0, :, :prompt_mel_len] = resample_columns(mel, prompt_mel_len)
        return cond

    # ------------------------------------------------------------------
    # Synthesis
    # ------------------------------------------------------------------

    def synthesize(
        self,
        tokens: Sequence[int],
        speaker_embedding: np.ndarray,
        prompt_tokens: Optional[Sequence[int]] = None,
        prompt_mel: Optional[np.ndarray] = None,
        rng: Optional[np.random.Generator] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> np.ndarray:
        """
        Synthesize a mel spectrogram for ``tokens``.

        Args:
            tokens: Generated speech tokens (non-empty).
            speaker_embedding: Raw speaker embedding (normalized here).
            prompt_tokens: Speech tokens of the voice prompt, if any.
            prompt_mel: Prompt mel [80, T] or [1, 80, T]; only used with prompt_tokens.
            rng: Noise source.
            cancel: Checked once per Euler step.

        Returns:
            float32 mel [80, 2 * len(tokens)].

        Raises:
            DisposedError: After close().
            InvalidArgumentError: On empty tokens or a malformed prompt mel.
            ModelInvocationError: If a collaborator fails or breaks its shape contract.
        """
        if self._closed:
            raise DisposedError("flow synthesizer has been closed")
        tokens = [int(t) for t in tokens]
        if not tokens:
            raise InvalidArgumentError("tokens must not be empty")
        prompt = [] if prompt_tokens is None else [int(t) for t in prompt_tokens]
        if rng is None:
            rng = np.random.default_rng()

        ratio = self.token_mel_ratio
        total_mel = ratio * (len(prompt) + len(tokens))
        prompt_mel_len = ratio * len(prompt)

        with timeit("flow") as t:
            spks = self.project_speaker(speaker_embedding)
            mu = self.encode_tokens(prompt + tokens)
            cond = self.build_conditioning(total_mel, prompt_mel_len, prompt_mel)
            mask = np.ones((1, 1, total_mel), dtype=np.float32)
            x = box_muller_noise((1, self.mel_channels, total_mel), rng)

            x_batch = _batch(x)
            feeds = {
                "mask": _batch(mask),
                "mu": _batch(mu),
                "spks": _batch(spks),
                "cond": _batch(cond),
            }
            verbose(_LOG, "flow_start", tokens=len(tokens), prompt_tokens=len(prompt),
                    frames=total_mel, steps=self.integrator.num_steps)

            for step in range(self.integrator.num_steps):
                check_cancelled(cancel, "flow")
                t_now = self.integrator.time(step)
                out = invoke(self._estimator, Stage.FLOW_ESTIMATOR, {
                    "x": x_batch,
                    "t": np.full(ESTIMATOR_BATCH, t_now, dtype=np.float32),
                    **feeds,
                })
                velocity = pick_output(out, Stage.FLOW_ESTIMATOR, "velocity", "output", "dphi_dt")
                if np.size(velocity) != x_batch.size:
                    raise ModelInvocationError(
                        f"estimator velocity size {np.size(velocity)} != state size {x_batch.size}",
                        stage=Stage.FLOW_ESTIMATOR,
                    )
                x_batch = self.integrator.step(x_batch, velocity)
                debug(_LOG, "euler_step", step=step, t=round(t_now, 4))

            mel = np.ascontiguousarray(x_batch[0, :, prompt_mel_len:], dtype=np.float32)

        info(_LOG, "flow_done", frames=mel.shape[1], seconds=round(t.seconds, 3))
        return mel
