"""
Model Collaborators.

Every neural network forward pass the pipeline needs is an external
ModelCollaborator: a pure function from named tensors to named tensors.
The core never sees weights or runtimes, only this interface, so every
stage can be tested against deterministic stubs.

Implementations:
    - CallableCollaborator: wraps a Python function (stubs, numpy models)
    - OnnxCollaborator: wraps an ONNX Runtime InferenceSession (lazy import)

All calls go through invoke(), which times the call, logs it at DEBUG,
and turns any failure into ModelInvocationError tagged with the stage.
There is no retry: a failed call is fatal for the request.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Union

import numpy as np

from voxflow.core.errors import ModelInvocationError, NotFoundError, VoxflowError
from voxflow.core.logging import debug, get_logger, info
from voxflow.utils.timeit import timeit

_LOG = get_logger("voxflow.models")

Tensors = Dict[str, np.ndarray]


class ModelCollaborator(ABC):
    """
    Named-tensor in, named-tensor out.

    Implementations must not keep per-call state: the pipeline may call
    the same collaborator from several requests (serialized per pipeline
    instance, but not across instances).
    """

    name: str = "collaborator"

    @abstractmethod
    def evaluate(self, inputs: Mapping[str, np.ndarray]) -> Tensors:
        """Run one forward pass."""

    def close(self) -> None:
        """Release runtime resources. Default: nothing to release."""


class CallableCollaborator(ModelCollaborator):
    """
    Adapts a plain function ``fn(inputs) -> outputs`` to ModelCollaborator.

    A function returning a bare ndarray is wrapped as {"output": array}.
    """

    def __init__(self, fn: Callable[[Mapping[str, np.ndarray]], Any], name: str = "callable"):
        self._fn = fn
        self.name = name

    def evaluate(self, inputs: Mapping[str, np.ndarray]) -> Tensors:
        out = self._fn(inputs)
        if isinstance(out, np.ndarray):
            return {"output": out}
        return dict(out)


# ONNX tensor element types we cast feeds to
_ORT_DTYPES = {
    "tensor(float)": np.float32,
    "tensor(float16)": np.float16,
    "tensor(double)": np.float64,
    "tensor(int64)": np.int64,
    "tensor(int32)": np.int32,
    "tensor(bool)": np.bool_,
}


class OnnxCollaborator(ModelCollaborator):
    """
    ONNX Runtime-backed collaborator.

    The session is created on first use (or explicit load()), so building a
    ModelSet is cheap and onnxruntime is only imported when needed.

    Feeds are matched to graph inputs by name and cast to the declared
    element type; extra feeds the graph does not declare are dropped. A
    single-input graph accepts its one feed under any name. float16
    outputs are widened to float32.
    """

    def __init__(
        self,
        path: Union[str, Path],
        providers: Optional[Sequence[str]] = None,
        intra_op_threads: Optional[int] = None,
        name: Optional[str] = None,
    ):
        self.path = Path(path)
        self.providers: List[str] = list(providers or ["CPUExecutionProvider"])
        self.intra_op_threads = intra_op_threads
        self.name = name or self.path.stem
        self._session = None
        self._input_types: Dict[str, str] = {}
        self._output_names: List[str] = []

    @property
    def is_loaded(self) -> bool:
        return self._session is not None

    def load(self) -> None:
        """Create the InferenceSession.

        Raises:
            NotFoundError: If the model file is missing.
        """
        if self._session is not None:
            return
        if not self.path.exists():
            raise NotFoundError(f"model file not found: {self.path}", {"path": str(self.path)})

        import onnxruntime as ort

        opts = ort.SessionOptions()
        opts.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_ALL
        if self.intra_op_threads:
            opts.intra_op_num_threads = int(self.intra_op_threads)

        with timeit("onnx_load") as t:
            self._session = ort.InferenceSession(str(self.path), opts, providers=self.providers)
        self._input_types = {i.name: i.type for i in self._session.get_inputs()}
        self._output_names = [o.name for o in self._session.get_outputs()]
        info(_LOG, "model_loaded", model=self.name, inputs=list(self._input_types),
             outputs=self._output_names, seconds=round(t.seconds, 3))

    def _feeds(self, inputs: Mapping[str, np.ndarray]) -> Dict[str, np.ndarray]:
        if len(self._input_types) == 1 and len(inputs) == 1:
            (graph_name,), (value,) = self._input_types.keys(), inputs.values()
            named = {graph_name: value}
        else:
            named = {k: v for k, v in inputs.items() if k in self._input_types}

        feeds: Dict[str, np.ndarray] = {}
        for key, value in named.items():
            dtype = _ORT_DTYPES.get(self._input_types[key])
            arr = np.asarray(value)
            feeds[key] = arr.astype(dtype, copy=False) if dtype is not None else arr
        return feeds

    def evaluate(self, inputs: Mapping[str, np.ndarray]) -> Tensors:
        self.load()
        results = self._session.run(None, self._feeds(inputs))
        out: Tensors = {}
        for name, value in zip(self._output_names, results):
            arr = np.asarray(value)
            out[name] = arr.astype(np.float32) if arr.dtype == np.float16 else arr
        return out

    def close(self) -> None:
        self._session = None


def invoke(collaborator: ModelCollaborator, stage: str, inputs: Mapping[str, np.ndarray]) -> Tensors:
    """
    Evaluate ``collaborator`` for ``stage``.

    Raises:
        ModelInvocationError: If the call raises or returns no outputs.
    """
    try:
        with timeit(stage) as t:
            outputs = collaborator.evaluate(inputs)
    except VoxflowError as exc:
        if isinstance(exc, (ModelInvocationError, NotFoundError)):
            raise
        raise ModelInvocationError(f"{stage}: {exc.message}", stage=stage) from exc
    except Exception as exc:
        raise ModelInvocationError(f"{stage} failed: {exc}", stage=stage,
                                   details={"error_type": type(exc).__name__}) from exc

    if not outputs:
        raise ModelInvocationError(f"{stage} returned no outputs", stage=stage)

    debug(_LOG, "model_call", stage=stage,
          inputs={k: list(np.shape(v)) for k, v in inputs.items()},
          outputs={k: list(np.shape(v)) for k, v in outputs.items()},
          seconds=round(t.seconds, 4))
    return outputs


def pick_output(outputs: Mapping[str, np.ndarray], stage: str, *names: str) -> np.ndarray:
    """
    Select an output by preferred name, falling back to the sole output.

    Raises:
        ModelInvocationError: If no name matches and there is not exactly one output.
    """
    for name in names:
        if name in outputs:
            return np.asarray(outputs[name])
    if len(outputs) == 1:
        return np.asarray(next(iter(outputs.values())))
    raise ModelInvocationError(
        f"{stage} output missing: expected one of {list(names)}, got {list(outputs)}",
        stage=stage,
    )


def expect_shape(array: np.ndarray, stage: str, shape: Sequence[Optional[int]], what: str = "output") -> np.ndarray:
    """Check ``array`` against ``shape`` (None = any size) or raise ModelInvocationError."""
    if array.ndim != len(shape) or any(s is not None and s != a for s, a in zip(shape, array.shape)):
        expected = ["*" if s is None else s for s in shape]
        raise ModelInvocationError(
            f"{stage} {what} has shape {list(array.shape)}, expected {expected}",
            stage=stage,
        )
    return array
