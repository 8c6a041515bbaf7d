"""
Inference stages: speech-token decoding, flow-matching mel synthesis,
vocoding and voice-prompt encoding.
"""
from voxflow.inference.flow import FlowSynthesizer, box_muller_noise, l2_normalize, resample_columns
from voxflow.inference.llm import AutoregressiveDecoder, GenerationState, derive_length_bounds
from voxflow.inference.prompt import SpeakerEncoder, SpeechTokenizer
from voxflow.inference.vocoder import VocoderSynthesizer

__all__ = [
    "AutoregressiveDecoder",
    "FlowSynthesizer",
    "GenerationState",
    "SpeakerEncoder",
    "SpeechTokenizer",
    "VocoderSynthesizer",
    "box_muller_noise",
    "derive_length_bounds",
    "l2_normalize",
    "resample_columns",
]
