"""
Byte-Level BPE Tokenizer.

GPT-2/Qwen2 style byte-level BPE over a fixed vocabulary and merge-rank
table. Every UTF-8 byte is first mapped to a printable stand-in
character (the byte/char map) so arbitrary input can be spelled with
vocabulary symbols; BPE merges then join adjacent symbols in rank order.

Files:
    vocab.json  - flat {"symbol": id, ...} table
    merges.txt  - one "left right" pair per line; line order is the rank
                  (lower = applied first). Blank and '#' lines are ignored.

Word Splitting:
    Text is split on whitespace. Each whitespace character closes the
    current word and starts a new one with a leading ' ' marker, so
    "a b" -> ["a", " b"] and "a  b" -> ["a", " ", " b"]. The marker maps
    to the vocabulary's space symbol ("Ġ").

Example:
    >>> tok = ByteLevelBPETokenizer()
    >>> tok.load("models/vocab.json", "models/merges.txt")
    >>> ids = tok.encode("Hello world")
    >>> tok.decode(ids)
    'Hello world'
"""
from __future__ import annotations

import json
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from voxflow.core.errors import InvalidArgumentError, NotFoundError, NotLoadedError
from voxflow.core.logging import debug, get_logger, info

_LOG = get_logger("voxflow.tokenizer")

PathLike = Union[str, Path]


def bytes_to_unicode() -> Dict[int, str]:
    """
    Build the 256-entry byte -> character map.

    Printable Latin-1 ranges map to themselves; the remaining bytes
    (controls, space, soft hyphen, ...) map to consecutive code points
    starting at U+0100 in byte order.
    """
    keep = (
        list(range(ord("!"), ord("~") + 1))
        + list(range(ord("¡"), ord("¬") + 1))
        + list(range(ord("®"), ord("ÿ") + 1))
    )
    mapping = {b: chr(b) for b in keep}
    n = 0
    for b in range(256):
        if b not in mapping:
            mapping[b] = chr(256 + n)
            n += 1
    return mapping


# Immutable, shared by every tokenizer instance
BYTE_ENCODER: Mapping[int, str] = bytes_to_unicode()
BYTE_DECODER: Mapping[str, int] = {c: b for b, c in BYTE_ENCODER.items()}


def fix_surrogates(text: str) -> str:
    """Join surrogate pairs and replace lone surrogates with U+FFFD."""
    return text.encode("utf-16-le", "surrogatepass").decode("utf-16-le", "replace")


def load_vocab(path: PathLike) -> Dict[str, int]:
    """Read a {symbol: id} JSON table."""
    with Path(path).open("r", encoding="utf-8") as f:
        raw = json.load(f)
    if not isinstance(raw, dict):
        raise InvalidArgumentError(f"vocabulary must be a JSON object: {path}")
    return {str(k): int(v) for k, v in raw.items()}


def parse_merges(lines: Iterable[str]) -> Dict[Tuple[str, str], int]:
    """
    Parse merge rules into a pair -> rank table.

    Only accepted lines consume a rank. A repeated pair keeps the rank of
    its last occurrence.
    """
    ranks: Dict[Tuple[str, str], int] = {}
    rank = 0
    for line in lines:
        line = line.rstrip("\r\n")
        if not line.strip() or line.startswith("#"):
            continue
        parts = line.split(" ")
        if len(parts) < 2:
            continue
        ranks[(parts[0], parts[1])] = rank
        rank += 1
    return ranks


def load_merges(path: PathLike) -> Dict[Tuple[str, str], int]:
    with Path(path).open("r", encoding="utf-8") as f:
        return parse_merges(f)


def split_words(text: str) -> List[str]:
    """Split on whitespace, carrying each separator as a leading ' '."""
    words: List[str] = []
    current: List[str] = []
    for ch in text:
        if ch.isspace():
            if current:
                words.append("".join(current))
            current = [" "]
        else:
            current.append(ch)
    if current:
        words.append("".join(current))
    return words


class ByteLevelBPETokenizer:
    """
    Byte-level BPE encoder/decoder.

    Tables are loaded once and never mutated afterwards, so a loaded
    instance can be shared across threads.
    """

    def __init__(self) -> None:
        self._vocab: Dict[str, int] = {}
        self._id_to_token: Dict[int, str] = {}
        self._merge_ranks: Dict[Tuple[str, str], int] = {}
        self._loaded = False

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def load(self, vocab_path: PathLike, merges_path: PathLike) -> None:
        """
        Load the vocabulary and merge table from disk.

        Raises:
            NotFoundError: If either file is missing.
        """
        vocab_p, merges_p = Path(vocab_path), Path(merges_path)
        for p in (vocab_p, merges_p):
            if not p.exists():
                raise NotFoundError(f"tokenizer file not found: {p}", {"path": str(p)})

        self._set_tables(load_vocab(vocab_p), load_merges(merges_p))
        info(_LOG, "tokenizer_loaded", vocab=len(self._vocab), merges=len(self._merge_ranks))

    @classmethod
    def from_tables(
        cls,
        vocab: Mapping[str, int],
        merges: Union[Mapping[Tuple[str, str], int], Sequence[str]],
    ) -> "ByteLevelBPETokenizer":
        """Build a loaded tokenizer from in-memory tables.

        ``merges`` is either a ready pair -> rank map or merges.txt-style lines.
        """
        tok = cls()
        if isinstance(merges, Mapping):
            ranks = dict(merges)
        else:
            ranks = parse_merges(merges)
        tok._set_tables(dict(vocab), ranks)
        return tok

    def _set_tables(self, vocab: Dict[str, int], ranks: Dict[Tuple[str, str], int]) -> None:
        self._vocab = vocab
        self._id_to_token = {v: k for k, v in vocab.items()}
        self._merge_ranks = ranks
        self._loaded = True

    @property
    def is_loaded(self) -> bool:
        return self._loaded

    @property
    def vocab_size(self) -> int:
        return len(self._vocab)

    def token_to_id(self, token: str) -> Optional[int]:
        return self._vocab.get(token)

    def id_to_token(self, token_id: int) -> Optional[str]:
        return self._id_to_token.get(token_id)

    def _require_loaded(self) -> None:
        if not self._loaded:
            raise NotLoadedError("tokenizer not loaded; call load() first")

    # ------------------------------------------------------------------
    # Encoding
    # ------------------------------------------------------------------

    def encode(self, text: Optional[str]) -> List[int]:
        """
        Encode text to token ids.

        Symbols missing from the vocabulary are looked up character by
        character; characters that still do not resolve are dropped.

        Raises:
            NotLoadedError: If called before load().
        """
        self._require_loaded()
        if not text:
            return []

        ids: List[int] = []
        for word in split_words(fix_surrogates(text)):
            symbols = [BYTE_ENCODER[b] for b in word.encode("utf-8")]
            for symbol in self._bpe(symbols):
                token_id = self._vocab.get(symbol)
                if token_id is not None:
                    ids.append(token_id)
                    continue
                for ch in symbol:
                    ch_id = self._vocab.get(ch)
                    if ch_id is not None:
                        ids.append(ch_id)
                    else:
                        debug(_LOG, "bpe_unresolved_char", codepoint=ord(ch))
        return ids

    def _bpe(self, symbols: List[str]) -> List[str]:
        """Merge the lowest-rank adjacent pair (leftmost on ties) until none apply."""
        ranks = self._merge_ranks
        while len(symbols) > 1:
            best_rank = None
            best_i = -1
            for i in range(len(symbols) - 1):
                rank = ranks.get((symbols[i], symbols[i + 1]))
                if rank is not None and (best_rank is None or rank < best_rank):
                    best_rank = rank
                    best_i = i
            if best_i < 0:
                break
            symbols[best_i:best_i + 2] = [symbols[best_i] + symbols[best_i + 1]]
        return symbols

    # ------------------------------------------------------------------
    # Decoding
    # ------------------------------------------------------------------

    def decode(self, ids: Iterable[int]) -> str:
        """
        Decode token ids back to text.

        Unknown ids are skipped. A token whose bytes are not valid UTF-8
        on their own is emitted as its literal symbol text.

        Raises:
            NotLoadedError: If called before load().
        """
        self._require_loaded()
        pieces: List[str] = []
        for token_id in ids:
            token = self._id_to_token.get(int(token_id))
            if token is None:
                continue
            # Characters outside the byte map fall back to their low byte
            raw = bytes(BYTE_DECODER.get(ch, ord(ch) & 0xFF) for ch in token)
            try:
                pieces.append(raw.decode("utf-8"))
            except UnicodeDecodeError:
                pieces.append(token)
        return "".join(pieces)
