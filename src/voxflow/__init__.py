"""
voxflow: Three-stage neural text-to-speech pipeline.

Turns normalized text into a 24 kHz mono waveform by chaining three
generative stages around externally evaluated neural networks:

    text -> BPE tokens -> autoregressive speech tokens
         -> flow-matching mel spectrogram -> vocoder waveform

Package Layout:
    - text/: Byte-level BPE tokenizer
    - generation/: Top-k sampler and Euler ODE integrator
    - audio/: 16-point STFT/ISTFT codec and prompt feature extractors
    - models/: ModelCollaborator interface and ONNX Runtime adapter
    - inference/: Decoder, flow, vocoder and prompt encoder stages
    - services/: SynthesisPipeline coordinator
    - core/: Config, errors, logging, cancellation

Example Usage:
    >>> from voxflow.models import load_model_set
    >>> from voxflow.services import SynthesisPipeline
    >>> from voxflow.text import ByteLevelBPETokenizer
    >>>
    >>> tokenizer = ByteLevelBPETokenizer()
    >>> tokenizer.load("models/vocab.json", "models/merges.txt")
    >>> pipeline = SynthesisPipeline.from_models(load_model_set("models"), tokenizer)
    >>> result = pipeline.synthesize("Hello world.", seed=7)
    >>> with open("output.wav", "wb") as f:
    ...     f.write(result.to_wav_bytes())
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
