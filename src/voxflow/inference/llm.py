"""
Autoregressive Speech-Token Decoder.

Turns text token ids into discrete speech tokens with a KV-cached
transformer split across five collaborators:

    text_embedding    ids[1, L]                -> [1, L, H]
    speech_embedding  ids[1, L]                -> [1, L, H]
    llm_initial       inputs_embeds, attention_mask
                                               -> hidden_states, past_key_values
    llm_decode        inputs_embeds[1, 1, H], attention_mask[1, L+1], past_key_values
                                               -> hidden_states, new_past_key_values
    llm_decoder       hidden_states[1, 1, H]   -> logits[1, V]

State Machine:
    BuildPrompt    [SOS, text(prompt_text + text), TASK, prompt_speech?]
    InitialForward one pass over the prompt; logits from the last position
    DecodeLoop     sample -> (stop on EOS once i >= min_len) -> append ->
                   embed -> decode one position with the current cache ->
                   replace the cache -> logits
    Done

Length bounds scale with the target text only:
    min_len' = max(min_len, 2 * len(text_tokens))
    max_len' = min(max_len, 20 * len(text_tokens))

The cache is opaque to this module. Each decode call consumes the
previous cache and returns its replacement; GenerationState enforces
that handover so a stale cache is never fed twice.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Sequence

import numpy as np

from voxflow.core.cancellation import CancellationToken, check_cancelled
from voxflow.core.config import Defaults
from voxflow.core.errors import DisposedError, InvalidArgumentError, ModelInvocationError
from voxflow.core.logging import debug, get_logger, info, verbose
from voxflow.generation.sampler import top_k_sample
from voxflow.models.collaborator import ModelCollaborator, expect_shape, invoke, pick_output
from voxflow.models.registry import Stage
from voxflow.utils.timeit import timeit

_LOG = get_logger("voxflow.decoder")


@dataclass
class GenerationState:
    """
    Per-call decoding state. Owned by exactly one generate() call.

    Attributes:
        tokens: Emitted speech token ids (append-only).
        seq_len: Positions covered by ``cache``.
    """
    tokens: List[int] = field(default_factory=list)
    seq_len: int = 0
    _cache: Optional[np.ndarray] = field(default=None, repr=False)

    @property
    def has_cache(self) -> bool:
        return self._cache is not None

    def take_cache(self) -> np.ndarray:
        """Hand the cache to a decode call; the state no longer holds it."""
        if self._cache is None:
            raise InvalidArgumentError("KV-cache already consumed or never set")
        cache, self._cache = self._cache, None
        return cache

    def replace_cache(self, cache: np.ndarray, seq_len: int) -> None:
        """Install the cache returned by the latest forward pass."""
        self._cache = cache
        self.seq_len = seq_len


def derive_length_bounds(
    text_len: int,
    min_len: int,
    max_len: int,
    min_per_text: int = Defaults.GENERATION_MIN_TOKENS_PER_TEXT,
    max_per_text: int = Defaults.GENERATION_MAX_TOKENS_PER_TEXT,
) -> tuple[int, int]:
    """Scale caller bounds by the target text length: (max(min, 2L), min(max, 20L))."""
    return max(min_len, min_per_text * text_len), min(max_len, max_per_text * text_len)


def _as_list(tokens: Optional[Sequence[int]]) -> List[int]:
    return [] if tokens is None else [int(t) for t in tokens]


def _ids(tokens: Sequence[int]) -> np.ndarray:
    return np.asarray(list(tokens), dtype=np.int64).reshape(1, -1)


def _ones_mask(length: int) -> np.ndarray:
    return np.ones((1, length), dtype=np.float32)


class AutoregressiveDecoder:
    """
    Speech-token generator over injected collaborators.

    The instance holds no per-request state, but callers must not run
    generate() concurrently on one instance (the pipeline serializes).
    """

    def __init__(
        self,
        text_embedding: ModelCollaborator,
        speech_embedding: ModelCollaborator,
        llm_initial: ModelCollaborator,
        llm_decode: ModelCollaborator,
        llm_decoder: ModelCollaborator,
        sos_token: int = Defaults.SOS_TOKEN,
        eos_token: int = Defaults.EOS_TOKEN,
        task_token: int = Defaults.TASK_TOKEN,
    ):
        self._text_embedding = text_embedding
        self._speech_embedding = speech_embedding
        self._llm_initial = llm_initial
        self._llm_decode = llm_decode
        self._llm_decoder = llm_decoder
        self.sos_token = sos_token
        self.eos_token = eos_token
        self.task_token = task_token
        self._closed = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        self._closed = True

    def __enter__(self) -> "AutoregressiveDecoder":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Collaborator helpers
    # ------------------------------------------------------------------

    def _embed(self, collaborator: ModelCollaborator, stage: str, tokens: Sequence[int]) -> np.ndarray:
        out = invoke(collaborator, stage, {"input_ids": _ids(tokens)})
        emb = pick_output(out, stage, "embeddings", "inputs_embeds", "output")
        return expect_shape(np.asarray(emb, dtype=np.float32), stage, (1, len(tokens), None))

    def _logits(self, hidden_last: np.ndarray) -> np.ndarray:
        out = invoke(self._llm_decoder, Stage.LLM_DECODER, {"hidden_states": hidden_last})
        logits = pick_output(out, Stage.LLM_DECODER, "logits")
        return np.asarray(logits, dtype=np.float32).reshape(-1)

    @staticmethod
    def _last_hidden(hidden: np.ndarray, stage: str) -> np.ndarray:
        hidden = expect_shape(np.asarray(hidden, dtype=np.float32), stage, (1, None, None), "hidden_states")
        if hidden.shape[1] == 0:
            raise ModelInvocationError(f"{stage} returned empty hidden_states", stage=stage)
        return hidden[:, -1:, :]

    def build_prompt(
        self,
        text_tokens: Sequence[int],
        prompt_text_tokens: Optional[Sequence[int]] = None,
        prompt_speech_tokens: Optional[Sequence[int]] = None,
    ) -> np.ndarray:
        """Assemble [SOS, text(prompt_text + text), TASK, prompt_speech?] -> [1, L0, H]."""
        prompt_speech_tokens = _as_list(prompt_speech_tokens)
        all_text = _as_list(prompt_text_tokens) + _as_list(text_tokens)
        parts = [
            self._embed(self._speech_embedding, Stage.SPEECH_EMBEDDING, [self.sos_token]),
            self._embed(self._text_embedding, Stage.TEXT_EMBEDDING, all_text),
            self._embed(self._speech_embedding, Stage.SPEECH_EMBEDDING, [self.task_token]),
        ]
        if prompt_speech_tokens:
            parts.append(self._embed(self._speech_embedding, Stage.SPEECH_EMBEDDING, prompt_speech_tokens))

        hidden_dims = {p.shape[2] for p in parts}
        if len(hidden_dims) != 1:
            raise ModelInvocationError(
                f"embedding widths disagree: {sorted(hidden_dims)}", stage=Stage.SPEECH_EMBEDDING)
        return np.concatenate(parts, axis=1)

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    def generate(
        self,
        text_tokens: Sequence[int],
        prompt_text_tokens: Optional[Sequence[int]] = None,
        prompt_speech_tokens: Optional[Sequence[int]] = None,
        max_len: int = Defaults.GENERATION_MAX_TOKENS,
        min_len: int = Defaults.GENERATION_MIN_TOKENS,
        k: int = Defaults.GENERATION_SAMPLING_K,
        rng: Optional[np.random.Generator] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> List[int]:
        """
        Generate speech tokens for ``text_tokens``.

        Args:
            text_tokens: Target text ids (non-empty).
            prompt_text_tokens: Transcript ids of the voice prompt, prefixed to the text.
            prompt_speech_tokens: Speech tokens of the voice prompt, appended after TASK.
            max_len, min_len: Caller bounds, rescaled by the text length.
            k: Top-k sampling width.
            rng: Sampling randomness.
            cancel: Checked once per decode iteration.

        Returns:
            Emitted speech token ids, without the terminating EOS.

        Raises:
            DisposedError: After close().
            InvalidArgumentError: On empty ``text_tokens``.
            ModelInvocationError: If any collaborator fails (fatal, no retry).
            CancelledError: If ``cancel`` fires.
        """
        if self._closed:
            raise DisposedError("decoder has been closed")
        text_tokens = _as_list(text_tokens)
        prompt_speech_tokens = _as_list(prompt_speech_tokens)
        if not text_tokens:
            raise InvalidArgumentError("text_tokens must not be empty")
        if rng is None:
            rng = np.random.default_rng()

        min_len, max_len = derive_length_bounds(len(text_tokens), min_len, max_len)
        state = GenerationState()

        with timeit("decode") as t:
            lm_input = self.build_prompt(text_tokens, prompt_text_tokens, prompt_speech_tokens)
            prompt_len = lm_input.shape[1]
            verbose(_LOG, "decode_prompt", positions=prompt_len, text_tokens=len(text_tokens),
                    prompt_speech=len(prompt_speech_tokens), min_len=min_len, max_len=max_len)

            out = invoke(self._llm_initial, Stage.LLM_INITIAL,
                         {"inputs_embeds": lm_input, "attention_mask": _ones_mask(prompt_len)})
            hidden = pick_output(out, Stage.LLM_INITIAL, "hidden_states")
            state.replace_cache(pick_output(out, Stage.LLM_INITIAL, "past_key_values"), prompt_len)
            logits = self._logits(self._last_hidden(hidden, Stage.LLM_INITIAL))

            stopped_on_eos = False
            for i in range(max_len):
                check_cancelled(cancel, "decode")
                token = top_k_sample(logits, k, rng)
                if token == self.eos_token and i >= min_len:
                    stopped_on_eos = True
                    break
                state.tokens.append(token)

                emb = self._embed(self._speech_embedding, Stage.SPEECH_EMBEDDING, [token])
                next_len = state.seq_len + 1
                out = invoke(self._llm_decode, Stage.LLM_DECODE, {
                    "inputs_embeds": emb,
                    "attention_mask": _ones_mask(next_len),
                    "past_key_values": state.take_cache(),
                })
                state.replace_cache(
                    pick_output(out, Stage.LLM_DECODE, "new_past_key_values", "past_key_values"),
                    next_len,
                )
                logits = self._logits(
                    self._last_hidden(pick_output(out, Stage.LLM_DECODE, "hidden_states"), Stage.LLM_DECODE))
                debug(_LOG, "decode_step", step=i, token=token, positions=next_len)

        info(_LOG, "decode_done", tokens=len(state.tokens), eos=stopped_on_eos,
             seconds=round(t.seconds, 3))
        return state.tokens
