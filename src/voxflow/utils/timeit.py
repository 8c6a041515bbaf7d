"""
Timing Utilities for Stage Measurement.

The pipeline wraps each stage (tokenize, decode, flow, vocoder) in a
timeit block and reports the durations in SynthesisResult.timings and
in the log stream.

Example Usage:
    with timeit("flow") as t:
        mel = flow.synthesize(tokens, embedding)
    timings["flow"] = t.seconds

    timings = StageTimer()
    with timings.stage("vocoder"):
        audio = vocoder.synthesize(mel)
    timings.as_dict()  # {"vocoder": 0.41}
"""
from __future__ import annotations

import contextlib
from dataclasses import dataclass
from time import perf_counter
from typing import Any, Dict, Iterator, Optional


@dataclass
class Timing:
    """
    Timing measurement result.

    Attributes:
        name: What was timed (e.g., "decode", "flow").
        seconds: Duration in seconds.
        meta: Optional metadata.
    """
    name: str
    seconds: float
    meta: Optional[Dict[str, Any]] = None


class timeit:
    """
    Context manager for timing code blocks with perf_counter().

    Example:
        with timeit("decode", meta={"text_tokens": 12}) as t:
            tokens = decoder.generate(text_tokens)
        print(f"decode took {t.seconds:.3f}s")
    """

    def __init__(self, name: str, meta: Optional[Dict[str, Any]] = None):
        self.name = name
        self.meta = meta
        self._t0: float | None = None
        self.timing: Timing | None = None

    def __enter__(self) -> "timeit":
        self._t0 = perf_counter()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        t1 = perf_counter()
        assert self._t0 is not None
        self.timing = Timing(name=self.name, seconds=(t1 - self._t0), meta=self.meta)

    @property
    def seconds(self) -> float:
        """Elapsed seconds, or -1.0 while the block is still running."""
        return self.timing.seconds if self.timing else -1.0


class StageTimer:
    """Accumulates named stage durations for one request."""

    def __init__(self) -> None:
        self._timings: Dict[str, float] = {}

    @contextlib.contextmanager
    def stage(self, name: str) -> Iterator[timeit]:
        """Time a block and record it under ``name`` (accumulating repeats)."""
        t = timeit(name)
        try:
            with t:
                yield t
        finally:
            self._timings[name] = self._timings.get(name, 0.0) + t.seconds

    def as_dict(self) -> Dict[str, float]:
        return dict(self._timings)

    @property
    def total(self) -> float:
        return sum(self._timings.values())
