from __future__ import annotations

import codecs
import re

_BYTE_PIECE = re.compile(r"^<0x([0-9A-F]{2})>$")


class Tokenizer:
    """Greedy longest-match vocabulary with byte fallback.

    Pieces of the form ``<0xNN>`` stand for raw bytes; text that no piece
    covers is encoded through them. Special tokens are only produced by
    ``encode(..., allow_special=True)`` or by id.
    """

    def __init__(self, pieces: list[str], special_tokens: dict[str, int]) -> None:
        self.pieces = list(pieces)
        self.special_tokens = dict(special_tokens)
        self._special_ids = set(self.special_tokens.values())
        self._byte_ids: dict[int, int] = {}
        self._id_bytes: dict[int, int] = {}
        self._lookup: dict[str, int] = {}
        for idx, piece in enumerate(self.pieces):
            if idx in self._special_ids:
                continue
            match = _BYTE_PIECE.match(piece)
            if match:
                value = int(match.group(1), 16)
                self._byte_ids[value] = idx
                self._id_bytes[idx] = value
            else:
                self._lookup.setdefault(piece, idx)
        missing = [b for b in range(256) if b not in self._byte_ids]
        if missing:
            raise ValueError(f"vocabulary lacks byte fallback pieces for {len(missing)} byte values")
        self._max_piece = max((len(p) for p in self._lookup), default=1)
        self._special_pattern = (
            re.compile("|".join(re.escape(s) for s in sorted(self.special_tokens, key=len, reverse=True)))
            if self.special_tokens
            else None
        )

    @property
    def vocab_size(self) -> int:
        return len(self.pieces)

    def token_id(self, special: str) -> int:
        try:
            return self.special_tokens[special]
        except KeyError as exc:
            raise KeyError(f"vocabulary has no special token '{special}'") from exc

    def is_special(self, token_id: int) -> bool:
        return token_id in self._special_ids

    @property
    def special_ids(self) -> set[int]:
        return set(self._special_ids)

    def blank_ids(self) -> set[int]:
        """Ids whose text is whitespace only."""
        blanks = {idx for piece, idx in self._lookup.items() if not piece.strip()}
        blanks.update(idx for value, idx in self._byte_ids.items() if chr(value).isspace())
        return blanks

    def encode(self, text: str, allow_special: bool = False) -> list[int]:
        if not allow_special or self._special_pattern is None:
            return self._encode_plain(text)
        ids: list[int] = []
        cursor = 0
        for match in self._special_pattern.finditer(text):
            ids.extend(self._encode_plain(text[cursor : match.start()]))
            ids.append(self.special_tokens[match.group(0)])
            cursor = match.end()
        ids.extend(self._encode_plain(text[cursor:]))
        return ids

    def _encode_plain(self, text: str) -> list[int]:
        ids: list[int] = []
        pos = 0
        while pos < len(text):
            for length in range(min(self._max_piece, len(text) - pos), 0, -1):
                idx = self._lookup.get(text[pos : pos + length])
                if idx is not None:
                    ids.append(idx)
                    pos += length
                    break
            else:
                ids.extend(self._byte_ids[b] for b in text[pos].encode("utf-8"))
                pos += 1
        return ids

    def piece_bytes(self, token_id: int) -> bytes:
        if token_id in self._special_ids:
            return b""
        if token_id in self._id_bytes:
            return bytes([self._id_bytes[token_id]])
        return self.pieces[token_id].encode("utf-8")

    def decode(self, ids: list[int]) -> str:
        return b"".join(self.piece_bytes(i) for i in ids).decode("utf-8", errors="replace")

    def stream_decoder(self) -> "StreamDecoder":
        return StreamDecoder(self)


class StreamDecoder:
    """Turns token ids into text deltas, holding back incomplete UTF-8 sequences."""

    def __init__(self, tokenizer: Tokenizer) -> None:
        self._tokenizer = tokenizer
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def feed(self, token_id: int) -> str:
        return self._decoder.decode(self._tokenizer.piece_bytes(token_id))

    def flush(self) -> str:
        return self._decoder.decode(b"", final=True)


__all__ = ["Tokenizer", "StreamDecoder"]
