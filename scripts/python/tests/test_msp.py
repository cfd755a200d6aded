# SPDX-License-Identifier: MIT
# Copyright (c) 2026 ADNT Sarl <info@adnt.io>

"""Tests for MSP framing and parsing."""

import pytest

from fclink.msp import (
    BoardInfo,
    Direction,
    MspCommand,
    MspPacket,
    MspParser,
    crc8_dvb_s2,
    decode_api_version,
    decode_board_info,
    decode_fc_variant,
    decode_fc_version,
    encode_request,
    encode_v1,
    encode_v2,
    v1_checksum,
)


class TestChecksums:
    """Tests for v1 XOR and v2 CRC-8."""

    def test_v1_checksum(self):
        """XOR of all bytes."""
        assert v1_checksum(b"") == 0
        assert v1_checksum(b"\x00\x01") == 0x01
        assert v1_checksum(b"\x0f\xf0\xff") == 0x00

    def test_crc8_check_value(self):
        """CRC-8/DVB-S2 check value."""
        assert crc8_dvb_s2(b"123456789") == 0xBC

    def test_crc8_chaining(self):
        """Seed continues a running CRC."""
        data = b"hello msp"
        assert crc8_dvb_s2(data[4:], crc8_dvb_s2(data[:4])) == crc8_dvb_s2(data)


class TestEncode:
    """Tests for frame encoders."""

    def test_v1_empty_request(self):
        """MSP_API_VERSION request."""
        assert encode_v1(MspCommand.API_VERSION) == b"$M<\x00\x01\x01"

    def test_v1_with_payload(self):
        """Length, command and payload are covered by the checksum."""
        frame = encode_v1(MspCommand.SET_SERVO_CONFIGURATION, b"\x01\x02")
        assert frame[:3] == b"$M<"
        assert frame[3] == 2
        assert frame[4] == 212
        assert frame[5:7] == b"\x01\x02"
        assert frame[7] == v1_checksum(frame[3:7])

    def test_v1_response_direction(self):
        """Direction marker is configurable."""
        assert encode_v1(1, direction=Direction.RESPONSE)[2:3] == b">"
        assert encode_v1(1, direction=Direction.ERROR)[2:3] == b"!"

    def test_v2_layout(self):
        """Flag, little-endian command and length, then CRC-8."""
        frame = encode_v2(MspCommand.COMMON_SETTING, b"abc", flag=0)
        assert frame[:3] == b"$X<"
        assert frame[3:8] == b"\x00\x03\x10\x03\x00"
        assert frame[8:11] == b"abc"
        assert frame[11] == crc8_dvb_s2(frame[3:11])
        assert len(frame) == 12

    def test_v1_limits(self):
        """v1 holds one-byte commands and up to 255 payload bytes."""
        with pytest.raises(ValueError):
            encode_v1(0x100)
        with pytest.raises(ValueError, match="Payload too large"):
            encode_v1(1, bytes(256))
        assert len(encode_v1(1, bytes(255))) == 255 + 6

    def test_v2_limits(self):
        """v2 holds two-byte commands."""
        with pytest.raises(ValueError):
            encode_v2(0x10000)

    def test_request_version_selection(self):
        """v1 unless the command or payload needs v2."""
        assert encode_request(MspCommand.STATUS)[:2] == b"$M"
        assert encode_request(MspCommand.INAV_STATUS)[:2] == b"$X"
        assert encode_request(MspCommand.STATUS, bytes(300))[:2] == b"$X"
        assert encode_request(MspCommand.STATUS, version=2)[:2] == b"$X"


class TestParser:
    """Tests for MspParser."""

    def test_v1_response(self):
        """A single v1 response frame."""
        parser = MspParser()
        packets = parser.feed(encode_v1(MspCommand.API_VERSION, b"\x00\x02\x05", Direction.RESPONSE))

        assert packets == [MspPacket(1, Direction.RESPONSE, 1, b"\x00\x02\x05")]
        assert parser.stats.packets == 1
        assert parser.stats.packets_v1 == 1

    def test_v2_response(self):
        """A v2 frame keeps its flag."""
        parser = MspParser()
        frame = encode_v2(MspCommand.INAV_STATUS, b"\x01" * 10, flag=1, direction=Direction.RESPONSE)
        packets = parser.feed(frame)

        assert len(packets) == 1
        assert packets[0].version == 2
        assert packets[0].command == 0x2000
        assert packets[0].flag == 1
        assert packets[0].payload == b"\x01" * 10
        assert parser.stats.packets_v2 == 1

    def test_split_feed(self):
        """Frames may arrive one byte at a time."""
        parser = MspParser()
        frame = encode_v1(MspCommand.ATTITUDE, b"\x10\x00\x20\x00\x30\x00", Direction.RESPONSE)
        packets = []
        for byte in frame:
            packets += parser.feed(bytes([byte]))
        assert [p.command for p in packets] == [108]

    def test_skips_garbage(self):
        """Bytes outside a frame are ignored."""
        parser = MspParser()
        data = b"noise\r\n# " + encode_v1(MspCommand.RC, b"", Direction.RESPONSE) + b"\xff\x00"
        packets = parser.feed(data)
        assert [p.command for p in packets] == [105]
        assert parser.stats.bytes_received == len(data)

    def test_multiple_frames(self):
        """One chunk may hold several frames of both versions."""
        parser = MspParser()
        data = (
            encode_v1(MspCommand.STATUS, b"\x01", Direction.RESPONSE)
            + encode_v2(MspCommand.COMMON_SETTING, b"\x02", direction=Direction.RESPONSE)
            + encode_v1(MspCommand.ATTITUDE, b"\x03", Direction.RESPONSE)
        )
        packets = parser.feed(data)
        assert [(p.version, p.command, p.payload) for p in packets] == [
            (1, 101, b"\x01"),
            (2, 0x1003, b"\x02"),
            (1, 108, b"\x03"),
        ]

    def test_bad_checksum_dropped(self):
        """Corrupt frames are counted and the parser recovers."""
        parser = MspParser()
        bad = bytearray(encode_v1(MspCommand.STATUS, b"\x01\x02", Direction.RESPONSE))
        bad[-1] ^= 0xFF
        good = encode_v1(MspCommand.STATUS, b"\x03", Direction.RESPONSE)

        packets = parser.feed(bytes(bad) + good)
        assert [p.payload for p in packets] == [b"\x03"]
        assert parser.stats.bad_checksum == 1
        assert parser.stats.packets == 1

    def test_bad_v2_checksum(self):
        """v2 frames are checked with CRC-8."""
        parser = MspParser()
        bad = bytearray(encode_v2(MspCommand.COMMON_SETTING, b"x", direction=Direction.RESPONSE))
        bad[-1] ^= 0x01
        assert parser.feed(bytes(bad)) == []
        assert parser.stats.bad_checksum == 1

    def test_error_frame(self):
        """'!' frames are returned with ERROR direction."""
        parser = MspParser()
        packets = parser.feed(encode_v1(MspCommand.BOARD_INFO, b"", Direction.ERROR))
        assert packets[0].direction == Direction.ERROR
        assert parser.stats.errors == 1

    def test_stray_header_restarts(self):
        """A '$' in place of the marker starts the next frame."""
        parser = MspParser()
        frame = encode_v1(MspCommand.STATUS, b"", Direction.RESPONSE)
        packets = parser.feed(b"$" + frame)
        assert [p.command for p in packets] == [101]

    def test_bad_direction_restarts(self):
        """Unknown direction bytes abort the frame."""
        parser = MspParser()
        frame = encode_v1(MspCommand.STATUS, b"", Direction.RESPONSE)
        assert [p.command for p in parser.feed(b"$M?" + frame)] == [101]

    def test_zero_length_payload(self):
        """Empty payload goes straight to the checksum."""
        parser = MspParser()
        packets = parser.feed(encode_v2(MspCommand.EEPROM_WRITE, b"", direction=Direction.RESPONSE))
        assert packets[0].payload == b""

    def test_reset_drops_partial_frame(self):
        """reset() forgets a half-received frame."""
        parser = MspParser()
        frame = encode_v1(MspCommand.STATUS, b"\x01\x02\x03", Direction.RESPONSE)
        parser.feed(frame[:5])
        parser.reset()
        assert parser.feed(frame[5:]) == []
        assert parser.feed(frame) != []


class TestIdentificationDecoders:
    """Tests for the API_VERSION, FC_VARIANT, FC_VERSION and BOARD_INFO decoders."""

    def test_api_version(self):
        assert decode_api_version(b"\x00\x02\x05") == "2.5"

    def test_fc_variant(self):
        assert decode_fc_variant(b"BTFL") == "BTFL"

    def test_fc_version(self):
        assert decode_fc_version(b"\x04\x05\x01") == "4.5.1"

    def test_board_info_full(self):
        """Target name wins over board name and board id."""
        payload = (
            b"S405" + b"\x02\x00" + b"\x01" + b"\x04"
            + bytes([9]) + b"MATEKF405" + bytes([5]) + b"MATEK"
        )
        info = decode_board_info(payload)
        assert info == BoardInfo(
            board_id="S405",
            hardware_revision=2,
            board_type=1,
            capabilities=4,
            target_name="MATEKF405",
            board_name="MATEK",
        )
        assert info.name == "MATEKF405"

    def test_board_info_id_only(self):
        """Older firmware sends just the board id and hardware revision."""
        info = decode_board_info(b"AFNA\x00\x00")
        assert info.name == "AFNA"
        assert info.target_name == ""

    def test_board_info_empty_target_uses_board_name(self):
        payload = b"S411" + b"\x00\x00\x00\x00" + bytes([0]) + bytes([4]) + b"SPRF"
        assert decode_board_info(payload).name == "SPRF"

    @pytest.mark.parametrize("decode, payload", [
        (decode_api_version, b"\x00\x02"),
        (decode_fc_variant, b"BTF"),
        (decode_fc_version, b""),
        (decode_board_info, b"S40"),
    ])
    def test_short_payload(self, decode, payload):
        with pytest.raises(ValueError, match="payload too short"):
            decode(payload)
