"""
Event signatures and ABI word decoding.

Logs arrive as hex strings; ``data`` is a sequence of 32-byte words and
indexed parameters sit in ``topics[1:]``. Only the handful of shapes the
indexers consume are supported: addresses, uint256 and dynamic strings.
"""

from __future__ import annotations

from decimal import Decimal

from eth_utils import keccak

WORD_HEX = 64  # one ABI word = 32 bytes = 64 hex chars
ZERO_ADDRESS = "0x" + "0" * 40


def event_topic(signature: str) -> str:
    """Topic0 for an event signature, e.g. ``Transfer(address,address,uint256)``."""
    return "0x" + keccak(text=signature).hex()


# ─── Event signatures ────────────────────────────────────────────────

TRANSFER_SIGNATURE = "Transfer(address,address,uint256)"
FEEDBACK_SUBMITTED_SIGNATURE = "FeedbackSubmitted(address,address,string,uint8,string)"

TRANSFER_TOPIC = event_topic(TRANSFER_SIGNATURE)
FEEDBACK_SUBMITTED_TOPIC = event_topic(FEEDBACK_SUBMITTED_SIGNATURE)


# ─── Decoders ────────────────────────────────────────────────────────


def strip_0x(hex_data: str) -> str:
    if hex_data.startswith(("0x", "0X")):
        return hex_data[2:]
    return hex_data


def parse_quantity(value: str | int | None) -> int | None:
    """Decode a JSON-RPC quantity (``"0x1a"``) to int."""
    if value is None:
        return None
    if isinstance(value, int):
        return value
    return int(value, 16)


def _word(hex_data: str, index: int) -> str:
    start = index * WORD_HEX
    word = hex_data[start:start + WORD_HEX]
    if len(word) != WORD_HEX:
        raise ValueError(f"ABI data too short for word {index}")
    return word


def decode_address(word: str) -> str:
    """Decode a left-padded address word (or indexed topic)."""
    clean = strip_0x(word)
    if len(clean) != WORD_HEX:
        raise ValueError(f"Expected 32-byte word, got {len(clean) // 2} bytes")
    return "0x" + clean[-40:].lower()


def decode_uint256(hex_data: str, index: int = 0) -> int:
    """Decode the uint256 at word ``index``."""
    return int(_word(strip_0x(hex_data), index), 16)


def decode_string(hex_data: str, index: int) -> str:
    """
    Decode the dynamic string whose offset pointer sits at word ``index``.

    Raises ValueError if the pointer or length runs past the data.
    """
    clean = strip_0x(hex_data)
    offset = int(_word(clean, index), 16) * 2
    if offset % WORD_HEX or len(clean) < offset + WORD_HEX:
        raise ValueError(f"Invalid string offset {offset // 2}")
    length = int(clean[offset:offset + WORD_HEX], 16)
    start = offset + WORD_HEX
    end = start + length * 2
    if len(clean) < end:
        raise ValueError("String runs past end of data")
    return bytes.fromhex(clean[start:end]).decode("utf-8", errors="replace")


# ─── Amount scaling ──────────────────────────────────────────────────


def from_base_units(raw: int, decimals: int) -> Decimal:
    """Scale an integer token amount down by ``decimals``."""
    return Decimal(raw).scaleb(-decimals)


def to_base_units(amount: Decimal, decimals: int) -> int:
    """Scale a decimal token amount up to integer base units."""
    return int((amount * (Decimal(10) ** decimals)).to_integral_value())
