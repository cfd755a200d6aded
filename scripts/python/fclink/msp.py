# SPDX-License-Identifier: MIT
# Copyright (c) 2026 ADNT Sarl <info@adnt.io>

"""
MSP (MultiWii Serial Protocol) v1 and v2 framing.

v1 frame::

    $ M <dir> [len] [cmd] [payload...] [xor(len, cmd, payload)]

v2 frame::

    $ X <dir> [flag] [cmd LE16] [len LE16] [payload...] [crc8_dvb_s2]

``<dir>`` is ``<`` for requests, ``>`` for responses and ``!`` for
errors (command not supported by the board).
"""

import logging
import struct
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import List, Optional

logger = logging.getLogger(__name__)

HEADER_START = 0x24  # '$'
V1_MARKER = 0x4D  # 'M'
V2_MARKER = 0x58  # 'X'

V1_MAX_PAYLOAD = 255
V2_MAX_PAYLOAD = 65535


class MspCommand(IntEnum):
    """MSP command ids used by this package."""
    API_VERSION = 1
    FC_VARIANT = 2
    FC_VERSION = 3
    BOARD_INFO = 4
    STATUS = 101
    RC = 105
    ATTITUDE = 108
    SERVO_CONFIGURATIONS = 120
    SET_SERVO_CONFIGURATION = 212
    EEPROM_WRITE = 250
    COMMON_SETTING = 0x1003
    INAV_STATUS = 0x2000


class Direction(Enum):
    """Frame direction marker."""
    REQUEST = 0x3C  # '<'
    RESPONSE = 0x3E  # '>'
    ERROR = 0x21  # '!'


@dataclass
class MspPacket:
    """Decoded MSP frame."""
    version: int
    direction: Direction
    command: int
    payload: bytes
    flag: int = 0


@dataclass
class ParserStats:
    """Counters kept by ``MspParser``."""
    packets: int = 0
    packets_v1: int = 0
    packets_v2: int = 0
    errors: int = 0
    bad_checksum: int = 0
    bytes_received: int = 0


def v1_checksum(data: bytes) -> int:
    """XOR of all bytes."""
    checksum = 0
    for byte in data:
        checksum ^= byte
    return checksum


def crc8_dvb_s2(data: bytes, crc: int = 0) -> int:
    """CRC-8/DVB-S2 (polynomial 0xD5) as used by MSP v2."""
    for byte in data:
        crc ^= byte
        for _ in range(8):
            if crc & 0x80:
                crc = ((crc << 1) ^ 0xD5) & 0xFF
            else:
                crc = (crc << 1) & 0xFF
    return crc


def encode_v1(command: int, payload: bytes = b"", direction: Direction = Direction.REQUEST) -> bytes:
    """
    Build an MSP v1 frame.

    Raises:
        ValueError: If the command id or payload does not fit in v1
    """
    if not 0 <= command <= 0xFF:
        raise ValueError(f"Command {command} does not fit in MSP v1")
    if len(payload) > V1_MAX_PAYLOAD:
        raise ValueError(f"Payload too large for MSP v1: {len(payload)} > {V1_MAX_PAYLOAD}")
    body = bytes([len(payload), command]) + payload
    return bytes([HEADER_START, V1_MARKER, direction.value]) + body + bytes([v1_checksum(body)])


def encode_v2(
    command: int,
    payload: bytes = b"",
    flag: int = 0,
    direction: Direction = Direction.REQUEST,
) -> bytes:
    """
    Build an MSP v2 frame.

    Raises:
        ValueError: If the command id or payload does not fit in v2
    """
    if not 0 <= command <= 0xFFFF:
        raise ValueError(f"Command {command} does not fit in MSP v2")
    if len(payload) > V2_MAX_PAYLOAD:
        raise ValueError(f"Payload too large for MSP v2: {len(payload)} > {V2_MAX_PAYLOAD}")
    body = struct.pack("<BHH", flag, command, len(payload)) + payload
    return bytes([HEADER_START, V2_MARKER, direction.value]) + body + bytes([crc8_dvb_s2(body)])


def encode_request(command: int, payload: bytes = b"", version: Optional[int] = None) -> bytes:
    """
    Build a request frame, picking v1 unless the command or payload needs v2.

    Args:
        command: MSP command id
        payload: Request payload
        version: Force 1 or 2
    """
    if version is None:
        version = 2 if command > 0xFF or len(payload) > V1_MAX_PAYLOAD else 1
    if version == 1:
        return encode_v1(command, payload)
    return encode_v2(command, payload)


@dataclass
class BoardInfo:
    """Decoded ``BOARD_INFO`` response."""
    board_id: str
    hardware_revision: int = 0
    board_type: int = 0
    capabilities: int = 0
    target_name: str = ""
    board_name: str = ""

    @property
    def name(self) -> str:
        """Most specific board name the firmware reported."""
        return self.target_name or self.board_name or self.board_id


def _require(payload: bytes, size: int, what: str):
    if len(payload) < size:
        raise ValueError(f"{what} payload too short: {len(payload)} < {size} bytes")


def _ascii(data: bytes) -> str:
    return data.decode("ascii", errors="replace").rstrip("\x00")


def decode_api_version(payload: bytes) -> str:
    """``API_VERSION`` -> ``"major.minor"`` (the protocol byte is skipped)."""
    _require(payload, 3, "API_VERSION")
    return f"{payload[1]}.{payload[2]}"


def decode_fc_variant(payload: bytes) -> str:
    """``FC_VARIANT`` -> four letter firmware id, e.g. ``"BTFL"``."""
    _require(payload, 4, "FC_VARIANT")
    return _ascii(payload[:4])


def decode_fc_version(payload: bytes) -> str:
    """``FC_VERSION`` -> ``"major.minor.patch"``."""
    _require(payload, 3, "FC_VERSION")
    return "%d.%d.%d" % (payload[0], payload[1], payload[2])


def decode_board_info(payload: bytes) -> BoardInfo:
    """
    Decode ``BOARD_INFO``.

    Only the four character board id is mandatory; older firmware stops
    after any of the later fields.
    """
    _require(payload, 4, "BOARD_INFO")
    info = BoardInfo(board_id=_ascii(payload[:4]))
    pos = 4
    if len(payload) - pos >= 2:
        info.hardware_revision = struct.unpack_from("<H", payload, pos)[0]
        pos += 2
    if pos < len(payload):
        info.board_type = payload[pos]
        pos += 1
    if pos < len(payload):
        info.capabilities = payload[pos]
        pos += 1
    names = []
    for _ in range(2):
        if pos >= len(payload):
            break
        length = payload[pos]
        names.append(_ascii(payload[pos + 1:pos + 1 + length]))
        pos += 1 + length
    if names:
        info.target_name = names[0]
    if len(names) > 1:
        info.board_name = names[1]
    return info


class _State(IntEnum):
    IDLE = 0
    HEADER_MARKER = 1
    DIRECTION = 2
    V1_LENGTH = 3
    V1_COMMAND = 4
    V2_HEADER = 5
    PAYLOAD = 6
    CHECKSUM = 7


class MspParser:
    """
    Incremental MSP v1/v2 frame parser.

    Bytes outside a frame are skipped; frames with a bad checksum are
    dropped and counted in ``stats``.
    """

    def __init__(self):
        self.stats = ParserStats()
        self.reset()

    def reset(self):
        """Drop any partial frame."""
        self._state = _State.IDLE
        self._version = 1
        self._direction = Direction.RESPONSE
        self._header = bytearray()
        self._flag = 0
        self._command = 0
        self._length = 0
        self._payload = bytearray()

    def feed(self, data: bytes) -> List[MspPacket]:
        """
        Consume bytes and return every frame they complete.

        Args:
            data: Bytes received from the link

        Returns:
            Complete, checksum-valid packets in arrival order
        """
        self.stats.bytes_received += len(data)
        packets = []
        for byte in data:
            packet = self._feed_byte(byte)
            if packet is not None:
                packets.append(packet)
        return packets

    def _feed_byte(self, byte: int) -> Optional[MspPacket]:
        state = self._state

        if state == _State.IDLE:
            if byte == HEADER_START:
                self._state = _State.HEADER_MARKER
            return None

        if state == _State.HEADER_MARKER:
            if byte == V1_MARKER:
                self._version = 1
            elif byte == V2_MARKER:
                self._version = 2
            else:
                self._restart(byte)
                return None
            self._state = _State.DIRECTION
            return None

        if state == _State.DIRECTION:
            try:
                self._direction = Direction(byte)
            except ValueError:
                self._restart(byte)
                return None
            self._header = bytearray()
            self._payload = bytearray()
            self._state = _State.V1_LENGTH if self._version == 1 else _State.V2_HEADER
            return None

        if state == _State.V1_LENGTH:
            self._length = byte
            self._state = _State.V1_COMMAND
            return None

        if state == _State.V1_COMMAND:
            self._command = byte
            self._state = _State.PAYLOAD if self._length else _State.CHECKSUM
            return None

        if state == _State.V2_HEADER:
            self._header.append(byte)
            if len(self._header) < 5:
                return None
            self._flag, self._command, self._length = struct.unpack("<BHH", self._header)
            self._state = _State.PAYLOAD if self._length else _State.CHECKSUM
            return None

        if state == _State.PAYLOAD:
            self._payload.append(byte)
            if len(self._payload) >= self._length:
                self._state = _State.CHECKSUM
            return None

        # _State.CHECKSUM
        self._state = _State.IDLE
        return self._finish(byte)

    def _restart(self, byte: int):
        # A stray byte may itself open the next frame
        self._state = _State.HEADER_MARKER if byte == HEADER_START else _State.IDLE

    def _finish(self, checksum: int) -> Optional[MspPacket]:
        payload = bytes(self._payload)
        if self._version == 1:
            expected = v1_checksum(bytes([self._length, self._command]) + payload)
        else:
            expected = crc8_dvb_s2(bytes(self._header) + payload)

        if checksum != expected:
            self.stats.bad_checksum += 1
            logger.debug(
                "Dropping MSP v%d frame for command %d: bad checksum 0x%02x (expected 0x%02x)",
                self._version, self._command, checksum, expected,
            )
            return None

        self.stats.packets += 1
        if self._version == 1:
            self.stats.packets_v1 += 1
        else:
            self.stats.packets_v2 += 1
        if self._direction == Direction.ERROR:
            self.stats.errors += 1

        return MspPacket(
            version=self._version,
            direction=self._direction,
            command=self._command,
            payload=payload,
            flag=self._flag if self._version == 2 else 0,
        )
