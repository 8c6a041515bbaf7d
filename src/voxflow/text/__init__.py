"""Text front end: byte-level BPE tokenization."""
from voxflow.text.tokenizer import (
    BYTE_DECODER,
    BYTE_ENCODER,
    ByteLevelBPETokenizer,
    bytes_to_unicode,
    load_merges,
    load_vocab,
    parse_merges,
    split_words,
)

__all__ = [
    "BYTE_DECODER",
    "BYTE_ENCODER",
    "ByteLevelBPETokenizer",
    "bytes_to_unicode",
    "load_merges",
    "load_vocab",
    "parse_merges",
    "split_words",
]
