"""IBM code page 437, the default charset for ZIP names without the UTF-8 flag."""

from __future__ import annotations

import re
from functools import lru_cache

from .exceptions import EncodingError

CP437 = (
    "\u0000☺☻♥♦♣♠•◘○◙♂♀♪♫☼►◄↕‼¶§▬↨↑↓→←∟↔▲▼"
    " !\"#$%&'()*+,-./0123456789:;<=>?"
    "@ABCDEFGHIJKLMNOPQRSTUVWXYZ[\\]^_"
    "`abcdefghijklmnopqrstuvwxyz{|}~⌂"
    "ÇüéâäàåçêëèïîìÄÅÉæÆôöòûùÿÖÜ¢£¥₧ƒ"
    "áíóúñÑªº¿⌐¬½¼¡«»░▒▓│┤╡╢╖╕╣║╗╝╜╛┐"
    "└┴┬├─┼╞╟╚╔╩╦╠═╬╧╨╤╥╙╘╒╓╫╪┘┌█▄▌▐▀"
    "αßΓπΣσµτΦΘΩδ∞φε∩≡±≥≤⌠⌡÷≈°∙·√ⁿ²■ "
)

# CP437, ASCII and UTF-8 agree on printable ASCII.
_PRINTABLE_ASCII = re.compile(r"[\x20-\x7e]*")


@lru_cache(maxsize=None)
def _reverse_table() -> dict[str, int]:
    return {char: code for code, char in enumerate(CP437)}


def encode(text: str) -> bytes:
    """Encode *text* as CP437.

    Raises:
        EncodingError: If a character has no CP437 code point.
    """
    if _PRINTABLE_ASCII.fullmatch(text):
        return text.encode("ascii")

    reverse = _reverse_table()
    result = bytearray(len(text))
    for i, char in enumerate(text):
        code = reverse.get(char)
        if code is None:
            raise EncodingError(f"character not encodable in CP437: {char!r}")
        result[i] = code
    return bytes(result)


def decode(data: bytes) -> str:
    """Decode CP437 *data*; every byte value maps to a character."""
    if _PRINTABLE_ASCII.fullmatch(data.decode("latin-1")):
        return data.decode("ascii")
    return "".join(CP437[b] for b in data)
