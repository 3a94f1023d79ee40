"""Bencoding for tracker responses (BEP 3).

The HTTP transport only encodes. The decoder is the client side of the same
format: the test suite and anything scripting against a running tracker
read responses with it. Strings are returned as bytes; dictionary keys are
sorted on encode.
"""

from __future__ import annotations

from typing import Any

from trackgate.exceptions import BencodeError


class BencodeEncodeError(BencodeError):
    """Raised when a value cannot be bencoded."""


class BencodeDecodeError(BencodeError):
    """Raised when input is not valid bencode."""


class BencodeEncoder:
    """Encoder for Python values to bencode."""

    def encode(self, obj: Any) -> bytes:
        """Encode a value."""
        out = bytearray()
        self._encode(obj, out)
        return bytes(out)

    def _encode(self, obj: Any, out: bytearray) -> None:
        if isinstance(obj, bool):
            # bool is an int subclass; refuse it to avoid silent 0/1
            msg = "Cannot bencode bool"
            raise BencodeEncodeError(msg)
        if isinstance(obj, int):
            out += b"i%de" % obj
        elif isinstance(obj, (bytes, bytearray, memoryview)):
            data = bytes(obj)
            out += b"%d:" % len(data)
            out += data
        elif isinstance(obj, str):
            self._encode(obj.encode("utf-8"), out)
        elif isinstance(obj, (list, tuple)):
            out += b"l"
            for item in obj:
                self._encode(item, out)
            out += b"e"
        elif isinstance(obj, dict):
            out += b"d"
            items = [
                (k.encode("utf-8") if isinstance(k, str) else k, v)
                for k, v in obj.items()
            ]
            for key, value in sorted(items, key=lambda kv: kv[0]):
                if not isinstance(key, bytes):
                    msg = f"Dictionary keys must be str or bytes, got {type(key)}"
                    raise BencodeEncodeError(msg)
                self._encode(key, out)
                self._encode(value, out)
            out += b"e"
        else:
            msg = f"Cannot bencode {type(obj).__name__}"
            raise BencodeEncodeError(msg)


class BencodeDecoder:
    """Decoder for bencoded bytes, used to read tracker responses client-side."""

    def __init__(self, data: bytes):
        """Initialize decoder over a complete bencoded buffer."""
        self.data = data
        self.pos = 0

    def decode(self) -> Any:
        """Decode the buffer; trailing data is an error."""
        value = self._decode()
        if self.pos != len(self.data):
            msg = f"Trailing data at offset {self.pos}"
            raise BencodeDecodeError(msg)
        return value

    def _decode(self) -> Any:
        if self.pos >= len(self.data):
            msg = "Unexpected end of data"
            raise BencodeDecodeError(msg)

        token = self.data[self.pos : self.pos + 1]
        if token == b"i":
            return self._decode_int()
        if token == b"l":
            self.pos += 1
            items = []
            while self._peek() != b"e":
                items.append(self._decode())
            self.pos += 1
            return items
        if token == b"d":
            self.pos += 1
            result: dict[bytes, Any] = {}
            while self._peek() != b"e":
                key = self._decode()
                if not isinstance(key, bytes):
                    msg = "Dictionary keys must be strings"
                    raise BencodeDecodeError(msg)
                result[key] = self._decode()
            self.pos += 1
            return result
        if token.isdigit():
            return self._decode_string()

        msg = f"Invalid token {token!r} at offset {self.pos}"
        raise BencodeDecodeError(msg)

    def _peek(self) -> bytes:
        if self.pos >= len(self.data):
            msg = "Unexpected end of data"
            raise BencodeDecodeError(msg)
        return self.data[self.pos : self.pos + 1]

    def _decode_int(self) -> int:
        end = self.data.find(b"e", self.pos)
        if end == -1:
            msg = "Unterminated integer"
            raise BencodeDecodeError(msg)
        try:
            value = int(self.data[self.pos + 1 : end])
        except ValueError as e:
            msg = f"Invalid integer at offset {self.pos}"
            raise BencodeDecodeError(msg) from e
        self.pos = end + 1
        return value

    def _decode_string(self) -> bytes:
        colon = self.data.find(b":", self.pos)
        if colon == -1:
            msg = "Unterminated string length"
            raise BencodeDecodeError(msg)
        try:
            length = int(self.data[self.pos : colon])
        except ValueError as e:
            msg = f"Invalid string length at offset {self.pos}"
            raise BencodeDecodeError(msg) from e
        start = colon + 1
        end = start + length
        if end > len(self.data):
            msg = "String extends past end of data"
            raise BencodeDecodeError(msg)
        self.pos = end
        return self.data[start:end]


def encode(obj: Any) -> bytes:
    """Bencode a value."""
    return BencodeEncoder().encode(obj)


def decode(data: bytes) -> Any:
    """Decode a bencoded buffer (client and test side; the tracker never decodes)."""
    return BencodeDecoder(data).decode()


__all__ = [
    "BencodeDecodeError",
    "BencodeDecoder",
    "BencodeEncodeError",
    "BencodeEncoder",
    "decode",
    "encode",
]
