"""Model collaborator interface, adapters and stage registry."""
from voxflow.models.collaborator import (
    CallableCollaborator,
    ModelCollaborator,
    OnnxCollaborator,
    expect_shape,
    invoke,
    pick_output,
)
from voxflow.models.registry import MODEL_FILES, ModelSet, Stage, load_model_set

__all__ = [
    "CallableCollaborator",
    "ModelCollaborator",
    "OnnxCollaborator",
    "expect_shape",
    "invoke",
    "pick_output",
    "MODEL_FILES",
    "ModelSet",
    "Stage",
    "load_model_set",
]
