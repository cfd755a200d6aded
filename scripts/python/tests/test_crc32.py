# SPDX-License-Identifier: MIT
# Copyright (c) 2026 ADNT Sarl <info@adnt.io>

"""Tests for the bootloader CRC-32."""

import zlib

import pytest

from fclink.crc32 import _CRC32_TABLE, crc32, crc32_fill

MASK = 0xFFFFFFFF


def reference(data: bytes, state: int = 0) -> int:
    """Uninverted CRC-32 derived from zlib, which inverts on entry and exit."""
    return ~zlib.crc32(data, ~state & MASK) & MASK


class TestCrc32:
    """Tests for crc32 function."""

    def test_empty_data(self):
        """Empty data leaves the state unchanged."""
        assert crc32(b"") == 0
        assert crc32(b"", 0x12345678) == 0x12345678

    def test_known_values(self):
        """Matches the standard table CRC without inversion."""
        assert crc32(b"123456789") == reference(b"123456789")
        assert crc32(b"\x00") == 0
        assert crc32(b"\x01") == _CRC32_TABLE[1]

    def test_not_zlib(self):
        """Differs from the inverted ISO HDLC CRC."""
        assert crc32(b"123456789") != 0xCBF43926

    def test_matches_reference(self):
        """Matches the zlib-derived reference across inputs and seeds."""
        test_cases = [
            b"a",
            b"abc",
            b"Hello, World!",
            bytes(range(256)),
            b"\x00" * 100,
            b"\xFF" * 100,
        ]
        for data in test_cases:
            for state in (0, 1, 0xDEADBEEF, MASK):
                assert crc32(data, state) == reference(data, state), f"Mismatch for {data!r}"

    @pytest.mark.parametrize("split", [0, 1, 7, 128, 255])
    def test_chaining(self, split):
        """State from one call seeds the next."""
        data = bytes(range(256))
        assert crc32(data[split:], crc32(data[:split])) == crc32(data)

    def test_order_matters(self):
        """Byte order affects CRC."""
        assert crc32(b"ab") != crc32(b"ba")

    def test_returns_32bit_unsigned(self):
        """Result is always 32-bit unsigned."""
        for data in (b"", b"test", bytes(range(256)) * 4):
            result = crc32(data, MASK)
            assert 0 <= result <= MASK


class TestCrc32Fill:
    """Tests for crc32_fill."""

    @pytest.mark.parametrize("length", [0, 1, 4, 255, 256, 257, 1000])
    def test_matches_explicit_bytes(self, length):
        """A fill run equals feeding the bytes one by one."""
        assert crc32_fill(length, 0x1234) == crc32(b"\xff" * length, 0x1234)

    def test_custom_value(self):
        """Fill value is configurable."""
        assert crc32_fill(300, value=0x00) == crc32(b"\x00" * 300)

    def test_negative_length(self):
        """Non-positive lengths leave the state unchanged."""
        assert crc32_fill(-4, 0xCAFE) == 0xCAFE

    def test_continues_image_crc(self):
        """Image CRC followed by erased flash."""
        image = b"\x01\x02\x03\x04"
        assert crc32_fill(12, crc32(image)) == crc32(image + b"\xff" * 12)


class TestCrc32Table:
    """Tests for CRC-32 lookup table."""

    def test_table_initialized(self):
        """Table is initialized with 256 entries."""
        assert len(_CRC32_TABLE) == 256

    def test_table_values_32bit(self):
        """All table values are 32-bit."""
        for value in _CRC32_TABLE:
            assert 0 <= value <= MASK

    def test_table_deterministic(self):
        """Known values of the 0xEDB88320 table."""
        assert _CRC32_TABLE[0] == 0x00000000
        assert _CRC32_TABLE[1] == 0x77073096
        assert _CRC32_TABLE[255] == 0x2D02EF8D
