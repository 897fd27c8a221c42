"""Base64 encoding and strict decoding of byte strings."""

import base64

_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789+/"
_DECODE = {ch: index for index, ch in enumerate(_ALPHABET)}
_PAD = "="


def base64_encode(data) -> str:
    """Encode bytes to padded standard base64 text."""
    return base64.b64encode(bytes(data)).decode("ascii")


def base64_decode(text: str) -> bytes:
    """Decode padded standard base64 text, raising ValueError on malformed input."""
    if len(text) % 4:
        raise ValueError("Invalid base64 length!")

    out = bytearray()
    acc = 0
    for pos, ch in enumerate(text):
        acc = (acc << 6) & 0xFFFFFFFF
        if ch == _PAD:
            remaining = len(text) - pos
            if remaining == 1:
                out += bytes(((acc >> 16) & 0xFF, (acc >> 8) & 0xFF))
                return bytes(out)
            if remaining == 2:
                out.append((acc >> 10) & 0xFF)
                return bytes(out)
            raise ValueError("Invalid padding in base64!")
        value = _DECODE.get(ch)
        if value is None:
            raise ValueError("Invalid character in base64!")
        acc |= value
        if pos % 4 == 3:
            out += bytes(((acc >> 16) & 0xFF, (acc >> 8) & 0xFF, acc & 0xFF))
    return bytes(out)