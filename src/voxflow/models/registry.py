"""
Model Stage Registry.

Names every collaborator stage the pipeline calls and bundles the
collaborators into a ModelSet. load_model_set() opens the exported ONNX
graphs from a models directory using the fixed file names below.

Directory layout (models/):
    text_embedding_fp32.onnx          llm_backbone_initial_fp16.onnx
    llm_speech_embedding_fp16.onnx    llm_backbone_decode_fp16.onnx
    llm_decoder_fp16.onnx             flow_token_embedding_fp16.onnx
    flow_pre_lookahead_fp16.onnx      flow_speaker_projection_fp16.onnx
    flow.decoder.estimator.fp16.onnx  hift_f0_predictor_fp32.onnx
    hift_source_generator_fp32.onnx   hift_decoder_fp32.onnx
    campplus.onnx (optional)          speech_tokenizer_v3.onnx (optional)
    vocab.json, merges.txt
"""
from __future__ import annotations

from dataclasses import dataclass, fields
from pathlib import Path
from typing import Dict, Iterator, Optional, Sequence, Tuple, Union

from voxflow.core.errors import NotFoundError
from voxflow.core.logging import get_logger, info, warn
from voxflow.models.collaborator import ModelCollaborator, OnnxCollaborator

_LOG = get_logger("voxflow.models")


class Stage:
    """Collaborator stage names (also used in logs and errors)."""
    TEXT_EMBEDDING = "text_embedding"
    SPEECH_EMBEDDING = "speech_embedding"
    LLM_INITIAL = "llm_initial"
    LLM_DECODE = "llm_decode"
    LLM_DECODER = "llm_decoder"
    FLOW_TOKEN_EMBEDDING = "flow_token_embedding"
    FLOW_LOOKAHEAD = "flow_lookahead"
    FLOW_SPEAKER_PROJECTION = "flow_speaker_projection"
    FLOW_ESTIMATOR = "flow_estimator"
    HIFT_F0_PREDICTOR = "hift_f0_predictor"
    HIFT_SOURCE_GENERATOR = "hift_source_generator"
    HIFT_DECODER = "hift_decoder"
    SPEAKER_ENCODER = "speaker_encoder"
    SPEECH_TOKENIZER = "speech_tokenizer"


MODEL_FILES: Dict[str, str] = {
    Stage.TEXT_EMBEDDING: "text_embedding_fp32.onnx",
    Stage.SPEECH_EMBEDDING: "llm_speech_embedding_fp16.onnx",
    Stage.LLM_INITIAL: "llm_backbone_initial_fp16.onnx",
    Stage.LLM_DECODE: "llm_backbone_decode_fp16.onnx",
    Stage.LLM_DECODER: "llm_decoder_fp16.onnx",
    Stage.FLOW_TOKEN_EMBEDDING: "flow_token_embedding_fp16.onnx",
    Stage.FLOW_LOOKAHEAD: "flow_pre_lookahead_fp16.onnx",
    Stage.FLOW_SPEAKER_PROJECTION: "flow_speaker_projection_fp16.onnx",
    Stage.FLOW_ESTIMATOR: "flow.decoder.estimator.fp16.onnx",
    Stage.HIFT_F0_PREDICTOR: "hift_f0_predictor_fp32.onnx",
    Stage.HIFT_SOURCE_GENERATOR: "hift_source_generator_fp32.onnx",
    Stage.HIFT_DECODER: "hift_decoder_fp32.onnx",
    Stage.SPEAKER_ENCODER: "campplus.onnx",
    Stage.SPEECH_TOKENIZER: "speech_tokenizer_v3.onnx",
}

PROMPT_STAGES: Tuple[str, ...] = (Stage.SPEAKER_ENCODER, Stage.SPEECH_TOKENIZER)


@dataclass
class ModelSet:
    """
    Collaborators for every pipeline stage.

    Field names match the Stage constants. The two prompt encoders are
    only needed for voice cloning.
    """
    text_embedding: ModelCollaborator
    speech_embedding: ModelCollaborator
    llm_initial: ModelCollaborator
    llm_decode: ModelCollaborator
    llm_decoder: ModelCollaborator
    flow_token_embedding: ModelCollaborator
    flow_lookahead: ModelCollaborator
    flow_speaker_projection: ModelCollaborator
    flow_estimator: ModelCollaborator
    hift_f0_predictor: ModelCollaborator
    hift_source_generator: ModelCollaborator
    hift_decoder: ModelCollaborator
    speaker_encoder: Optional[ModelCollaborator] = None
    speech_tokenizer: Optional[ModelCollaborator] = None

    @property
    def has_prompt_models(self) -> bool:
        return self.speaker_encoder is not None and self.speech_tokenizer is not None

    def items(self) -> Iterator[Tuple[str, ModelCollaborator]]:
        for f in fields(self):
            model = getattr(self, f.name)
            if model is not None:
                yield f.name, model

    def close(self) -> None:
        for _, model in self.items():
            model.close()


def load_model_set(
    models_dir: Union[str, Path],
    providers: Optional[Sequence[str]] = None,
    include_prompt: bool = True,
    eager: bool = False,
) -> ModelSet:
    """
    Build a ModelSet of OnnxCollaborators from ``models_dir``.

    Prompt encoders are attached when their files exist; a missing
    required graph raises. With eager=True every session is created
    now instead of on first use.

    Raises:
        NotFoundError: If the directory or a required model file is missing.
    """
    base = Path(models_dir)
    if not base.is_dir():
        raise NotFoundError(f"models directory not found: {base}", {"path": str(base)})

    models: Dict[str, OnnxCollaborator] = {}
    for stage, filename in MODEL_FILES.items():
        path = base / filename
        if stage in PROMPT_STAGES:
            if not include_prompt:
                continue
            if not path.exists():
                warn(_LOG, "prompt_model_missing", stage=stage, path=str(path))
                continue
        elif not path.exists():
            raise NotFoundError(f"model file not found: {path}", {"stage": stage, "path": str(path)})
        models[stage] = OnnxCollaborator(path, providers=providers, name=stage)

    model_set = ModelSet(**models)
    if eager:
        for model in models.values():
            model.load()
    info(_LOG, "model_set_ready", models_dir=str(base), stages=len(models),
         prompt=model_set.has_prompt_models)
    return model_set
