# SPDX-License-Identifier: MIT
# Copyright (c) 2026 ADNT Sarl <info@adnt.io>

"""Pytest configuration and simulated devices."""

import queue
import struct

import pytest

from fclink.bootloader import EOC, Command, DeviceParam, Reply
from fclink.crc32 import crc32
from fclink.errors import LinkUnavailable
from fclink.guard import flash_lock
from fclink.msp import Direction, MspParser, encode_v1, encode_v2


class FakeBootloader:
    """
    Simulated ArduPilot bootloader behind a link.

    Answers the serial protocol the way the real bootloader does and keeps
    a flash array, so GET_CRC is computed from what was actually written.
    """

    port = "/dev/ttyTEST"

    def __init__(
        self,
        bl_rev: int = 5,
        board_id: int = 9,
        board_rev: int = 0,
        flash_size: int = 16 * 1024,
        ignore_syncs: int = 0,
        reject_syncs: int = 0,
        silent: bool = False,
        crc_error: int = 0,
    ):
        self.values = {
            DeviceParam.BL_REV: bl_rev,
            DeviceParam.BOARD_ID: board_id,
            DeviceParam.BOARD_REV: board_rev,
            DeviceParam.FLASH_SIZE: flash_size,
        }
        self.flash = bytearray(b"\xff" * flash_size)
        self.ignore_syncs = ignore_syncs
        self.reject_syncs = reject_syncs
        self.silent = silent
        self.crc_error = crc_error
        self.commands = []
        self.chunks = []
        self.erased = False
        self.rebooted = False
        self.is_open = False
        self.opened = 0
        self._addr = 0
        self._rx = bytearray()

    def open(self):
        self.is_open = True
        self.opened += 1

    def close(self):
        self.is_open = False

    def discard_input(self):
        self._rx.clear()

    def read(self, size: int, timeout: float = None) -> bytes:
        data = bytes(self._rx[:size])
        del self._rx[:size]
        return data

    def read_available(self, timeout: float = None) -> bytes:
        data = bytes(self._rx)
        self._rx.clear()
        return data

    def _ok(self):
        self._rx += bytes([Reply.INSYNC, Reply.OK])

    def write(self, data: bytes):
        if not self.is_open:
            raise LinkUnavailable("fake link closed")
        cmd = data[0]
        self.commands.append(cmd)
        if self.silent:
            return

        if cmd == Command.GET_SYNC:
            if self.ignore_syncs > 0:
                self.ignore_syncs -= 1
                return
            if self.reject_syncs > 0:
                self.reject_syncs -= 1
                self._rx += bytes([Reply.INSYNC, Reply.INVALID])
                return
            self._ok()
        elif cmd == Command.GET_DEVICE:
            self._rx += struct.pack("<i", self.values[DeviceParam(data[1])])
            self._ok()
        elif cmd == Command.CHIP_ERASE:
            self.flash[:] = b"\xff" * len(self.flash)
            self._addr = 0
            self.erased = True
            self._ok()
        elif cmd == Command.PROG_MULTI:
            length = data[1]
            chunk = data[2:2 + length]
            assert len(chunk) == length and data[-1] == EOC
            self.flash[self._addr:self._addr + length] = chunk
            self._addr += length
            self.chunks.append(length)
            self._ok()
        elif cmd == Command.GET_CRC:
            self._rx += struct.pack("<I", crc32(bytes(self.flash)) ^ self.crc_error)
            self._ok()
        elif cmd == Command.REBOOT:
            self.rebooted = True

    def count(self, command: Command) -> int:
        return self.commands.count(command)


CLI_BANNER = b"\r\nEntering CLI Mode, type 'exit' to return, or 'help'\r\n\r\n# "


class FakeMspBoard:
    """
    Simulated Betaflight/iNav board.

    Replies to MSP requests from ``responses``, answers error frames for
    ``unsupported`` commands and stays silent for ``silent`` ones. ``#``
    switches it to a text CLI. Output goes to ``sink`` when set, otherwise
    it is queued for ``read_available``.
    """

    port = "/dev/ttyMSP"

    def __init__(self, responses=None, unsupported=(), silent=(), cli_replies=None, dump_text=""):
        self.responses = dict(responses or {})
        self.unsupported = set(unsupported)
        self.silent = set(silent)
        self.cli_replies = dict(cli_replies or {})
        self.dump_text = dump_text
        self.sink = None
        self.is_open = False
        self.written = []
        self.cli_lines = []
        self.cli_mode = False
        self.saved = False
        self._parser = MspParser()
        self._rx = queue.Queue()

    def open(self):
        self.is_open = True

    def close(self):
        self.is_open = False

    def discard_input(self):
        while not self._rx.empty():
            self._rx.get_nowait()

    def read_available(self, timeout: float = None) -> bytes:
        if not self.is_open:
            raise LinkUnavailable("fake link closed")
        try:
            return self._rx.get(timeout=timeout)
        except queue.Empty:
            return b""

    def read(self, size: int, timeout: float = None) -> bytes:
        return self.read_available(timeout)[:size]

    def emit(self, data: bytes):
        if self.sink is not None:
            self.sink(data)
        else:
            self._rx.put(data)

    def write(self, data: bytes):
        if not self.is_open:
            raise LinkUnavailable("fake link closed")
        data = bytes(data)
        self.written.append(data)

        if self.cli_mode:
            self._cli(data.decode())
            return
        if data == b"#":
            self.cli_mode = True
            self.emit(CLI_BANNER)
            return

        for packet in self._parser.feed(data):
            command = packet.command
            if command in self.silent:
                continue
            if command in self.unsupported:
                direction, payload = Direction.ERROR, b""
            else:
                direction, payload = Direction.RESPONSE, self.responses.get(command, b"")
            if packet.version == 1:
                self.emit(encode_v1(command, payload, direction=direction))
            else:
                self.emit(encode_v2(command, payload, direction=direction))

    def _cli(self, text: str):
        line = text.rstrip("\n")
        if line == "exit":
            self.cli_mode = False
            self.emit(b"\r\nLeaving CLI mode, unsaved changes lost.\r\n")
        elif line == "save":
            self.cli_mode = False
            self.saved = True
            self.emit(b"\r\nSaving\r\nRebooting")
        elif line == "dump":
            self.emit(self.dump_text.encode())
        else:
            self.cli_lines.append(line)
            reply = self.cli_replies.get(line, "")
            self.emit(f"{line}\r\n{reply}# ".encode())


@pytest.fixture
def make_bootloader():
    """Factory for simulated ArduPilot bootloaders."""
    return FakeBootloader


@pytest.fixture
def make_msp_board():
    """Factory for simulated MSP boards."""
    return FakeMspBoard


@pytest.fixture(autouse=True)
def release_flash_lock():
    """Never leak the process-wide flash lock between tests."""
    yield
    flash_lock.release()
