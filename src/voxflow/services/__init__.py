"""
voxflow Services Layer.

Components:
    - synthesis.py: SynthesisPipeline (request orchestration) and SynthesisResult

The pipeline handles:
    - Tokenization and blank-text short-circuit
    - Stage sequencing with per-stage timings
    - Voice-prompt conditioning and its fallback
    - Request serialization and disposal
"""
from .synthesis import SynthesisPipeline, SynthesisResult, default_speaker_embedding

__all__ = [
    "SynthesisPipeline",
    "SynthesisResult",
    "default_speaker_embedding",
]
