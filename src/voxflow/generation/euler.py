"""
Fixed-Step Euler Integrator.

Integrates dx/dt = v(x, t) from t=0 to t=1 in N equal steps:

    dt = 1 / N
    t_i = i / N,  0 <= i < N
    x <- x + dt * v

The integrator never evaluates v itself; the flow synthesizer asks the
estimator collaborator for v at each step and hands it in. Step count
is fixed at construction (no adaptivity, predictable latency).
"""
from __future__ import annotations

import numpy as np

from voxflow.core.errors import InvalidArgumentError, StepOutOfRangeError


class EulerIntegrator:
    """Euler stepper over a caller-evaluated velocity field."""

    def __init__(self, num_steps: int = 10):
        if num_steps < 1:
            raise InvalidArgumentError(f"num_steps must be >= 1, got {num_steps}")
        self._num_steps = int(num_steps)
        self._dt = 1.0 / self._num_steps

    @property
    def num_steps(self) -> int:
        return self._num_steps

    @property
    def dt(self) -> float:
        return self._dt

    def time(self, step: int) -> float:
        """Time at the start of ``step``: step / N."""
        if not 0 <= step < self._num_steps:
            raise StepOutOfRangeError(
                f"step {step} outside [0, {self._num_steps})",
                {"step": step, "num_steps": self._num_steps},
            )
        return step / self._num_steps

    def times(self) -> np.ndarray:
        """All step start times, [0, 1/N, ..., (N-1)/N]."""
        return np.arange(self._num_steps, dtype=np.float64) / self._num_steps

    def step(self, x: np.ndarray, v: np.ndarray) -> np.ndarray:
        """Return x + dt * v as a new array."""
        self._check_sizes(x, v)
        return x + np.asarray(v, dtype=x.dtype).reshape(x.shape) * x.dtype.type(self._dt)

    def step_in_place(self, x: np.ndarray, v: np.ndarray) -> np.ndarray:
        """Update ``x`` in place with x += dt * v and return it."""
        self._check_sizes(x, v)
        x += np.asarray(v, dtype=x.dtype).reshape(x.shape) * x.dtype.type(self._dt)
        return x

    @staticmethod
    def _check_sizes(x: np.ndarray, v: np.ndarray) -> None:
        if np.size(x) != np.size(v):
            raise InvalidArgumentError(
                f"velocity size {np.size(v)} does not match state size {np.size(x)}",
                {"state_size": int(np.size(x)), "velocity_size": int(np.size(v))},
            )
