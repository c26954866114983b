"""Tests for event topics and ABI word decoding."""

from decimal import Decimal

import pytest

from fakes import feedback_data, uint_word
from paytrail.chain.abi import (
    TRANSFER_TOPIC,
    decode_address,
    decode_string,
    decode_uint256,
    event_topic,
    from_base_units,
    parse_quantity,
    to_base_units,
)


def test_transfer_topic():
    assert TRANSFER_TOPIC == "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"
    assert event_topic("Transfer(address,address,uint256)") == TRANSFER_TOPIC


def test_decode_address_from_topic():
    topic = "0x000000000000000000000000AbCdEf0123456789abcdef0123456789ABCDEF01"
    assert decode_address(topic) == "0xabcdef0123456789abcdef0123456789abcdef01"


def test_decode_address_rejects_short_word():
    with pytest.raises(ValueError):
        decode_address("0x1234")


def test_decode_uint256():
    data = "0x" + uint_word(7) + uint_word(2**200)
    assert decode_uint256(data, 0) == 7
    assert decode_uint256(data, 1) == 2**200
    with pytest.raises(ValueError):
        decode_uint256(data, 2)


def test_decode_strings():
    data = feedback_data("speed", 88, "ünïcode ok")
    assert decode_string(data, 0) == "speed"
    assert decode_uint256(data, 1) == 88
    assert decode_string(data, 2) == "ünïcode ok"


def test_decode_string_bad_offset():
    with pytest.raises(ValueError):
        decode_string("0x" + uint_word(5), 0)


def test_parse_quantity():
    assert parse_quantity("0x1a") == 26
    assert parse_quantity(26) == 26
    assert parse_quantity(None) is None


def test_base_unit_scaling():
    assert from_base_units(5_250_000, 6) == Decimal("5.25")
    assert to_base_units(Decimal("5.25"), 6) == 5_250_000
