"""RouterOS API sentence codec.

A word is a length prefix followed by that many bytes; a sentence is a run
of words closed by a zero-length word. Pure transforms, no I/O.
"""
from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from typing import Iterable, Mapping

DONE = "!done"
RE = "!re"
TRAP = "!trap"
FATAL = "!fatal"
EMPTY = "!empty"

logger = logging.getLogger(__name__)

MAX_WORD_LENGTH = 0xFFFFFFFF


class ProtocolError(ValueError):
    """Bytes that cannot be a RouterOS sentence."""


class IncompleteData(ProtocolError):
    """More bytes are needed before the next item can be decoded."""


def encode_length(length: int) -> bytes:
    if length < 0 or length > MAX_WORD_LENGTH:
        raise ProtocolError(f"word length out of range: {length}")
    if length < 0x80:
        return bytes([length])
    if length < 0x4000:
        return (length | 0x8000).to_bytes(2, "big")
    if length < 0x200000:
        return (length | 0xC00000).to_bytes(3, "big")
    if length < 0x10000000:
        return (length | 0xE0000000).to_bytes(4, "big")
    return b"\xf0" + length.to_bytes(4, "big")


def length_prefix_size(first: int) -> int:
    """Total prefix size in bytes, judged from the first prefix byte."""
    if first < 0x80:
        return 1
    if first < 0xC0:
        return 2
    if first < 0xE0:
        return 3
    if first < 0xF0:
        return 4
    if first == 0xF0:
        return 5
    # 0xF8..0xFF are control bytes, never lengths
    raise ProtocolError(f"invalid length prefix byte 0x{first:02x}")


def decode_length(data: bytes, offset: int = 0) -> tuple[int, int]:
    """Decode the prefix at ``offset``; returns (length, prefix size)."""
    if offset >= len(data):
        raise IncompleteData("length prefix missing")
    first = data[offset]
    size = length_prefix_size(first)
    if offset + size > len(data):
        raise IncompleteData("length prefix truncated")
    if size == 1:
        return first, 1
    if size == 5:
        return int.from_bytes(data[offset + 1:offset + 5], "big"), 5
    masks = {2: 0x3F, 3: 0x1F, 4: 0x0F}
    value = first & masks[size]
    for b in data[offset + 1:offset + size]:
        value = (value << 8) | b
    return value, size


def encode_word(word: str | bytes) -> bytes:
    raw = word.encode("utf-8") if isinstance(word, str) else word
    return encode_length(len(raw)) + raw


def encode_sentence(words: Iterable[str | bytes]) -> bytes:
    return b"".join(encode_word(w) for w in words) + b"\x00"


def build_request(
    command: str,
    attributes: Mapping[str, object] | None = None,
    queries: Mapping[str, object] | None = None,
    extra: Iterable[str] = (),
) -> list[str]:
    """Words for one request: command path, ``=k=v`` attributes, ``?k=v`` queries, then raw words."""
    if not command.startswith("/"):
        raise ProtocolError(f"command must start with '/': {command!r}")
    words = [command]
    for key, value in (attributes or {}).items():
        words.append(f"={key}={_value(value)}")
    for key, value in (queries or {}).items():
        words.append(f"?{key}={_value(value)}")
    words.extend(extra)
    return words


def _value(value: object) -> str:
    if isinstance(value, bool):
        return "yes" if value else "no"
    return "" if value is None else str(value)


def parse_attribute_word(word: str) -> tuple[str, str]:
    """``=key=value`` -> (key, value); the value may itself contain '='."""
    if not word.startswith("="):
        raise ProtocolError(f"not an attribute word: {word!r}")
    key, sep, value = word[1:].partition("=")
    if not sep or not key:
        raise ProtocolError(f"malformed attribute word: {word!r}")
    return key, value


@dataclass
class Sentence:
    reply: str
    attributes: dict[str, str] = field(default_factory=dict)
    tag: str | None = None
    words: list[str] = field(default_factory=list)

    @property
    def message(self) -> str:
        return self.attributes.get("message", "")

    @classmethod
    def from_words(cls, words: list[str]) -> "Sentence":
        if not words:
            raise ProtocolError("empty sentence")
        sentence = cls(reply=words[0], words=list(words))
        for word in words[1:]:
            if word.startswith(".tag="):
                sentence.tag = word[len(".tag="):]
            elif word.startswith("="):
                key, value = parse_attribute_word(word)
                sentence.attributes[key] = value
        return sentence


def _read_sentence(data: bytes, offset: int) -> tuple[list[str], int]:
    words: list[str] = []
    pos = offset
    while True:
        length, size = decode_length(data, pos)
        pos += size
        if length == 0:
            return words, pos
        if pos + length > len(data):
            raise IncompleteData("word truncated")
        words.append(data[pos:pos + length].decode("utf-8", errors="replace"))
        pos += length


def decode_stream(data: bytes) -> tuple[list[Sentence], bytes]:
    """Every complete sentence in ``data`` plus the undecoded tail."""
    sentences: list[Sentence] = []
    pos = 0
    while pos < len(data):
        try:
            words, end = _read_sentence(data, pos)
        except IncompleteData:
            break
        if words:
            sentences.append(Sentence.from_words(words))
        pos = end
    return sentences, data[pos:]


class SentenceDecoder:
    """Incremental decoder fed with whatever ``recv`` returned."""

    def __init__(self) -> None:
        self._buffer = b""

    @property
    def pending(self) -> bytes:
        return self._buffer

    def feed(self, chunk: bytes) -> list[Sentence]:
        sentences, self._buffer = decode_stream(self._buffer + chunk)
        return sentences


@dataclass
class Reply:
    """Outcome of one command: accumulated ``!re`` rows plus how it ended."""

    rows: list[dict[str, str]] = field(default_factory=list)
    done: bool = False
    done_attributes: dict[str, str] = field(default_factory=dict)
    trap: str | None = None
    fatal: str | None = None

    @property
    def complete(self) -> bool:
        return self.done or self.fatal is not None

    def add(self, sentence: Sentence) -> None:
        if sentence.reply == RE:
            self.rows.append(dict(sentence.attributes))
        elif sentence.reply == DONE:
            self.done = True
            self.done_attributes = dict(sentence.attributes)
        elif sentence.reply == TRAP:
            # first trap wins; RouterOS may send several before !done
            if self.trap is None:
                self.trap = sentence.message or "trap"
        elif sentence.reply == FATAL:
            self.fatal = sentence.message or (sentence.words[1] if len(sentence.words) > 1 else "fatal")
        elif sentence.reply == EMPTY:
            # RouterOS 7.18+ announces a print that matched nothing before !done
            pass
        else:
            logger.debug("routeros reply word ignored word=%s", sentence.reply)


def collect_reply(sentences: Iterable[Sentence]) -> Reply:
    reply = Reply()
    for sentence in sentences:
        reply.add(sentence)
        if reply.complete:
            break
    return reply


def challenge_response(password: str, challenge_hex: str) -> str:
    """Pre-6.43 login: "00" + md5(0x00 + password + unhex(challenge))."""
    try:
        challenge = bytes.fromhex(challenge_hex)
    except ValueError as e:
        raise ProtocolError(f"challenge is not hex: {challenge_hex!r}") from e
    digest = hashlib.md5(b"\x00" + password.encode("utf-8") + challenge).hexdigest()
    return "00" + digest
