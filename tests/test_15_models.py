"""
Tests for model collaborators and the stage registry.

Tests cover:
- CallableCollaborator output wrapping
- invoke() error wrapping and empty outputs
- pick_output() / expect_shape() contracts
- ModelSet iteration and close
- load_model_set() file discovery (without creating sessions)
- OnnxCollaborator feed renaming, dtype casting and output widening
"""
from types import SimpleNamespace
from unittest.mock import MagicMock

import numpy as np
import pytest

from voxflow.core.errors import InvalidArgumentError, ModelInvocationError, NotFoundError
from voxflow.models.collaborator import (
    CallableCollaborator,
    OnnxCollaborator,
    expect_shape,
    invoke,
    pick_output,
)
from voxflow.models.registry import MODEL_FILES, PROMPT_STAGES, Stage, load_model_set

from conftest import EOS, make_model_set


def _touch_models(directory, skip=()):
    for stage, filename in MODEL_FILES.items():
        if stage not in skip:
            (directory / filename).write_bytes(b"")


class TestCallableCollaborator:
    """Tests for CallableCollaborator."""

    def test_dict_output(self):
        """Mappings are returned as dicts."""
        c = CallableCollaborator(lambda inputs: {"y": inputs["x"] * 2}, name="double")
        out = c.evaluate({"x": np.array([1, 2])})
        np.testing.assert_array_equal(out["y"], [2, 4])
        assert c.name == "double"

    def test_bare_array_output(self):
        """A bare array is wrapped as {'output': array}."""
        c = CallableCollaborator(lambda inputs: np.zeros(3))
        assert list(c.evaluate({})) == ["output"]


class TestInvoke:
    """Tests for invoke()."""

    def test_passes_through(self):
        """Successful calls return the outputs."""
        out = invoke(CallableCollaborator(lambda i: {"a": np.ones(2)}), "stage", {})
        np.testing.assert_array_equal(out["a"], [1, 1])

    def test_wraps_exceptions(self):
        """Arbitrary exceptions become ModelInvocationError with the stage."""
        model = MagicMock()
        model.evaluate.side_effect = RuntimeError("CUDA out of memory")
        with pytest.raises(ModelInvocationError) as exc_info:
            invoke(model, Stage.FLOW_ESTIMATOR, {"x": np.zeros(1)})
        error = exc_info.value
        assert error.stage == Stage.FLOW_ESTIMATOR
        assert "CUDA out of memory" in error.message
        assert error.details["error_type"] == "RuntimeError"

    def test_wraps_voxflow_errors(self):
        """Other voxflow errors are wrapped once; the original is chained."""
        model = MagicMock()
        model.evaluate.side_effect = InvalidArgumentError("bad feed")
        with pytest.raises(ModelInvocationError) as exc_info:
            invoke(model, "s", {})
        assert isinstance(exc_info.value.__cause__, InvalidArgumentError)

    def test_not_found_propagates(self):
        """A missing model file is not rewrapped."""
        model = MagicMock()
        model.evaluate.side_effect = NotFoundError("model file not found")
        with pytest.raises(NotFoundError):
            invoke(model, "s", {})

    def test_empty_outputs(self):
        """No outputs is a model error."""
        with pytest.raises(ModelInvocationError, match="no outputs"):
            invoke(CallableCollaborator(lambda i: {}), "s", {})


class TestContracts:
    """Tests for pick_output() and expect_shape()."""

    def test_pick_preferred_name(self):
        """The first matching name wins."""
        outs = {"b": np.array(2), "a": np.array(1)}
        assert pick_output(outs, "s", "a", "b") == 1

    def test_pick_sole_output(self):
        """With no name match a single output is used."""
        assert pick_output({"whatever": np.array(7)}, "s", "velocity") == 7

    def test_pick_ambiguous(self):
        """No match among several outputs is an error."""
        with pytest.raises(ModelInvocationError):
            pick_output({"a": np.array(1), "b": np.array(2)}, "s", "c")

    def test_expect_shape(self):
        """None matches any size; rank and fixed sizes are checked."""
        x = np.zeros((1, 5, 80))
        assert expect_shape(x, "s", (1, None, 80)) is x
        with pytest.raises(ModelInvocationError):
            expect_shape(x, "s", (1, None, 40))
        with pytest.raises(ModelInvocationError):
            expect_shape(x, "s", (1, None))


class TestModelSet:
    """Tests for ModelSet."""

    def test_items_skip_missing_prompt_models(self, recorder):
        """items() yields only attached collaborators."""
        models = make_model_set(recorder, [EOS], prompt=False)
        names = [name for name, _ in models.items()]
        assert len(names) == 12
        assert Stage.SPEAKER_ENCODER not in names
        assert not models.has_prompt_models

    def test_close_closes_every_model(self, recorder):
        """close() reaches every collaborator."""
        models = make_model_set(recorder, [EOS])
        mock = MagicMock()
        models.flow_estimator = mock
        models.close()
        mock.close.assert_called_once()


class TestLoadModelSet:
    """Tests for load_model_set()."""

    def test_missing_directory(self, tmp_path):
        """A missing directory raises NotFoundError."""
        with pytest.raises(NotFoundError):
            load_model_set(tmp_path / "nope")

    def test_missing_required_model(self, tmp_path):
        """A missing required graph raises NotFoundError naming it."""
        _touch_models(tmp_path, skip=(Stage.FLOW_ESTIMATOR,))
        with pytest.raises(NotFoundError) as exc_info:
            load_model_set(tmp_path)
        assert exc_info.value.details["stage"] == Stage.FLOW_ESTIMATOR

    def test_lazy_sessions(self, tmp_path):
        """Collaborators are created without opening sessions."""
        _touch_models(tmp_path)
        models = load_model_set(tmp_path, providers=["CPUExecutionProvider"])
        assert models.has_prompt_models
        assert all(isinstance(m, OnnxCollaborator) and not m.is_loaded for _, m in models.items())
        assert models.flow_estimator.path.name == "flow.decoder.estimator.fp16.onnx"

    def test_optional_prompt_models(self, tmp_path):
        """Missing prompt encoders are skipped; include_prompt=False ignores them."""
        _touch_models(tmp_path, skip=PROMPT_STAGES)
        assert not load_model_set(tmp_path).has_prompt_models

        _touch_models(tmp_path)
        assert load_model_set(tmp_path, include_prompt=False).speaker_encoder is None

    def test_onnx_missing_file(self, tmp_path):
        """Loading a missing graph raises before onnxruntime is needed."""
        with pytest.raises(NotFoundError):
            OnnxCollaborator(tmp_path / "missing.onnx").load()


class FakeSession:
    """Stands in for onnxruntime.InferenceSession."""

    def __init__(self, inputs, outputs, results):
        self._inputs = [SimpleNamespace(name=n, type=t) for n, t in inputs.items()]
        self._outputs = [SimpleNamespace(name=n) for n in outputs]
        self._results = results
        self.feeds = None

    def get_inputs(self):
        return self._inputs

    def get_outputs(self):
        return self._outputs

    def run(self, output_names, feeds):
        self.feeds = feeds
        return self._results


def _attach(collaborator, session):
    collaborator._session = session
    collaborator._input_types = {i.name: i.type for i in session.get_inputs()}
    collaborator._output_names = [o.name for o in session.get_outputs()]
    return collaborator


class TestOnnxCollaboratorFeeds:
    """Tests for OnnxCollaborator feed and output handling."""

    def test_sole_input_renamed(self, tmp_path):
        """A single-input graph takes its feed under any name."""
        session = FakeSession({"speech_feat": "tensor(float)"}, ["y"], [np.zeros(1, dtype=np.float32)])
        model = _attach(OnnxCollaborator(tmp_path / "m.onnx"), session)

        model.evaluate({"input": np.ones((1, 3), dtype=np.float64)})

        assert list(session.feeds) == ["speech_feat"]
        assert session.feeds["speech_feat"].dtype == np.float32

    def test_feeds_cast_to_declared_types(self, tmp_path):
        """Feeds are cast to the graph's declared element types."""
        session = FakeSession(
            {"input_ids": "tensor(int64)", "attention_mask": "tensor(float)", "half": "tensor(float16)"},
            ["y"], [np.zeros(1, dtype=np.float32)])
        model = _attach(OnnxCollaborator(tmp_path / "m.onnx"), session)

        model.evaluate({
            "input_ids": np.array([[1, 2]], dtype=np.int32),
            "attention_mask": np.ones((1, 2), dtype=np.int64),
            "half": np.ones(2, dtype=np.float32),
        })

        assert session.feeds["input_ids"].dtype == np.int64
        assert session.feeds["attention_mask"].dtype == np.float32
        assert session.feeds["half"].dtype == np.float16
        np.testing.assert_array_equal(session.feeds["input_ids"], [[1, 2]])

    def test_undeclared_feeds_dropped(self, tmp_path):
        """Inputs the graph does not declare are not passed on."""
        session = FakeSession({"x": "tensor(float)", "t": "tensor(float)"}, ["y"],
                              [np.zeros(1, dtype=np.float32)])
        model = _attach(OnnxCollaborator(tmp_path / "m.onnx"), session)

        model.evaluate({"x": np.zeros(2), "t": np.zeros(1), "spks": np.zeros(3)})

        assert set(session.feeds) == {"x", "t"}

    def test_unknown_type_left_alone(self, tmp_path):
        """Types without a numpy mapping are fed unchanged."""
        session = FakeSession({"a": "tensor(uint8)", "b": "tensor(float)"}, ["y"],
                              [np.zeros(1, dtype=np.float32)])
        model = _attach(OnnxCollaborator(tmp_path / "m.onnx"), session)
        value = np.array([1, 2], dtype=np.int16)

        model.evaluate({"a": value, "b": np.zeros(1)})

        assert session.feeds["a"].dtype == np.int16

    def test_outputs_keyed_and_widened(self, tmp_path):
        """Outputs are keyed by graph name; fp16 becomes fp32, ints stay."""
        session = FakeSession(
            {"x": "tensor(float)"}, ["hidden_states", "past_key_values", "tokens"],
            [np.ones((1, 2), dtype=np.float16), np.zeros(3, dtype=np.float16),
             np.arange(4, dtype=np.int64)])
        model = _attach(OnnxCollaborator(tmp_path / "m.onnx"), session)

        out = model.evaluate({"x": np.zeros(1)})

        assert list(out) == ["hidden_states", "past_key_values", "tokens"]
        assert out["hidden_states"].dtype == np.float32
        assert out["past_key_values"].dtype == np.float32
        assert out["tokens"].dtype == np.int64

    def test_close_drops_session(self, tmp_path):
        """close() releases the session."""
        session = FakeSession({"x": "tensor(float)"}, ["y"], [np.zeros(1, dtype=np.float32)])
        model = _attach(OnnxCollaborator(tmp_path / "m.onnx"), session)
        assert model.is_loaded
        model.close()
        assert not model.is_loaded
