# SPDX-License-Identifier: MIT
# Copyright (c) 2026 ADNT Sarl <info@adnt.io>

"""
CRC-32 as computed by the ArduPilot bootloader.

Same reflected polynomial as ISO HDLC / IEEE 802.3, but the running
state is seeded with 0 and never inverted. The state returned by one
call is passed as the seed of the next to checksum a logical stream
that is not contiguous in memory.
"""

# Pre-computed CRC-32 lookup table
_CRC32_TABLE = []

# Fill runs are fed through the table in blocks of this size
_FILL_BLOCK = 256


def _init_table():
    """Initialize the CRC-32 lookup table."""
    global _CRC32_TABLE
    poly = 0xEDB88320
    for i in range(256):
        crc = i
        for _ in range(8):
            if crc & 1:
                crc = (crc >> 1) ^ poly
            else:
                crc >>= 1
        _CRC32_TABLE.append(crc)


_init_table()


def crc32(data: bytes, state: int = 0) -> int:
    """
    Continue a CRC-32 over data.

    Args:
        data: Bytes to feed into the checksum
        state: Running state from a previous call (0 to start)

    Returns:
        New 32-bit running state
    """
    crc = state & 0xFFFFFFFF
    for byte in data:
        crc = _CRC32_TABLE[(crc ^ byte) & 0xFF] ^ (crc >> 8)
    return crc


def crc32_fill(length: int, state: int = 0, value: int = 0xFF) -> int:
    """
    Continue a CRC-32 over a virtual run of identical bytes.

    Args:
        length: Number of bytes in the run
        state: Running state from a previous call
        value: Byte value of the run (0xFF models erased flash)

    Returns:
        New 32-bit running state
    """
    block = bytes([value]) * _FILL_BLOCK
    full, rest = divmod(max(length, 0), _FILL_BLOCK)
    for _ in range(full):
        state = crc32(block, state)
    return crc32(block[:rest], state)
