# SPDX-License-Identifier: MIT
# Copyright (c) 2026 ADNT Sarl <info@adnt.io>

"""
ArduPilot serial bootloader protocol.

Every command is a single byte followed by its arguments and EOC. The
bootloader answers INSYNC followed by OK, FAILED or INVALID, optionally
preceded by a little-endian value. The link runs 115200 8N1.

A ``BootloaderSession`` walks one link through

    IDLE -> SYNCING -> SYNCED -> READING_DEVICE_INFO -> ERASING
         -> PROGRAMMING -> VERIFYING -> REBOOTING -> DONE

with ABORTED and FAILED reachable from any non-terminal state.
"""

import logging
import struct
import threading
import time
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Callable, Iterator, Optional

from .crc32 import crc32, crc32_fill
from .errors import (
    Aborted,
    InvalidSessionState,
    LinkUnavailable,
    ProtocolRejected,
    ProtocolTimeout,
    ValidationFailed,
    VerificationMismatch,
)
from .firmware import FirmwareImage

logger = logging.getLogger(__name__)

EOC = 0x20

# Protocol max is 255, chunks must be a multiple of 4
PROG_MULTI_MAX = 252

BL_REV_MIN = 2
BL_REV_MAX = 20

# First bootloader revision that implements GET_CRC
BL_REV_CRC = 3


class Command(IntEnum):
    """Bootloader command bytes."""
    GET_SYNC = 0x21
    GET_DEVICE = 0x22
    CHIP_ERASE = 0x23
    PROG_MULTI = 0x27
    GET_CRC = 0x29
    REBOOT = 0x30


class Reply(IntEnum):
    """Bootloader reply bytes."""
    OK = 0x10
    FAILED = 0x11
    INSYNC = 0x12
    INVALID = 0x13

    def __str__(self) -> str:
        return self.name


class DeviceParam(IntEnum):
    """GET_DEVICE sub-parameters."""
    BL_REV = 1
    BOARD_ID = 2
    BOARD_REV = 3
    FLASH_SIZE = 4


class SessionState(Enum):
    """Bootloader session state."""
    IDLE = "idle"
    SYNCING = "syncing"
    SYNCED = "synced"
    READING_DEVICE_INFO = "reading-device-info"
    ERASING = "erasing"
    PROGRAMMING = "programming"
    VERIFYING = "verifying"
    REBOOTING = "rebooting"
    DONE = "done"
    ABORTED = "aborted"
    FAILED = "failed"

    def __str__(self) -> str:
        return self.value


_TERMINAL = {SessionState.DONE, SessionState.ABORTED, SessionState.FAILED}

_TRANSITIONS = {
    SessionState.IDLE: {SessionState.SYNCING},
    SessionState.SYNCING: {SessionState.SYNCED, SessionState.IDLE},
    SessionState.SYNCED: {SessionState.READING_DEVICE_INFO, SessionState.REBOOTING},
    SessionState.READING_DEVICE_INFO: {SessionState.ERASING, SessionState.REBOOTING},
    SessionState.ERASING: {SessionState.PROGRAMMING},
    SessionState.PROGRAMMING: {SessionState.VERIFYING, SessionState.REBOOTING},
    SessionState.VERIFYING: {SessionState.REBOOTING},
    SessionState.REBOOTING: {SessionState.DONE},
}

# States in which the bootloader has acknowledged a GET_SYNC
_SYNCHRONIZED = {
    SessionState.SYNCED,
    SessionState.READING_DEVICE_INFO,
    SessionState.ERASING,
    SessionState.PROGRAMMING,
    SessionState.VERIFYING,
    SessionState.REBOOTING,
}


@dataclass
class BootloaderTimeouts:
    """Per-step time budgets, in seconds."""
    sync: float = 1.0
    device_info: float = 2.0
    erase: float = 20.0
    program: float = 5.0
    crc: float = 10.0
    retry_delay: float = 0.3


@dataclass
class DeviceInfo:
    """Values reported by GET_DEVICE."""
    bl_rev: int
    board_id: int
    board_rev: int
    flash_size: int

    @property
    def supports_crc(self) -> bool:
        return self.bl_rev >= BL_REV_CRC


def iter_chunks(image: bytes, size: int = PROG_MULTI_MAX) -> Iterator[bytes]:
    """Split an image into PROG_MULTI payloads."""
    for offset in range(0, len(image), size):
        yield image[offset:offset + size]


def expected_crc(image: bytes, flash_size: int) -> int:
    """
    CRC the bootloader reports for a correctly programmed image.

    The bootloader checksums the whole application area: the image, then
    erased flash (0xFF) in 4-byte words up to ``flash_size - 1``.
    """
    state = crc32(image)
    remaining = flash_size - 1 - len(image)
    if remaining > 0:
        state = crc32_fill((remaining + 3) & ~3, state)
    return state


class BootloaderSession:
    """
    One synchronized conversation with the ArduPilot bootloader.

    The session does not own the link; the caller opens and closes it.
    """

    def __init__(
        self,
        link,
        timeouts: Optional[BootloaderTimeouts] = None,
        abort_event: Optional[threading.Event] = None,
    ):
        self._link = link
        self._timeouts = timeouts or BootloaderTimeouts()
        self._abort = abort_event
        self._state = SessionState.IDLE
        self._info: Optional[DeviceInfo] = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def synchronized(self) -> bool:
        return self._state in _SYNCHRONIZED

    @property
    def info(self) -> Optional[DeviceInfo]:
        """Device info, available once ``read_device_info()`` completed."""
        return self._info

    def _advance(self, new_state: SessionState):
        current = self._state
        if new_state in (SessionState.ABORTED, SessionState.FAILED):
            allowed = current not in _TERMINAL
        else:
            allowed = new_state in _TRANSITIONS.get(current, ())
        if not allowed:
            raise InvalidSessionState(f"Cannot go from {current} to {new_state}")
        logger.debug("Bootloader session %s -> %s", current, new_state)
        self._state = new_state

    def abandon(self, error: Exception):
        """Move to ABORTED or FAILED after ``error`` ended the session."""
        if self._state in _TERMINAL:
            return
        if isinstance(error, Aborted):
            self._advance(SessionState.ABORTED)
        else:
            self._advance(SessionState.FAILED)

    def check_abort(self):
        """Raise Aborted if cancellation was requested."""
        if self._abort is not None and self._abort.is_set():
            if self._state not in _TERMINAL:
                self._advance(SessionState.ABORTED)
            raise Aborted("Flash operation aborted")

    def _send(self, *parts: int, data: bytes = b""):
        if parts[0] != Command.GET_SYNC and not self.synchronized:
            raise InvalidSessionState(
                f"{Command(parts[0]).name} sent before bootloader sync"
            )
        self._link.write(bytes(parts[:-1]) + data + bytes(parts[-1:]))

    def _read_exact(self, size: int, timeout: float) -> Optional[bytes]:
        data = self._link.read(size, timeout)
        if len(data) != size:
            return None
        return data

    def _get_sync(self, timeout: float) -> bool:
        """
        Read INSYNC + status.

        Returns:
            True on INSYNC OK, False on silence or garbage

        Raises:
            ProtocolRejected: If the bootloader answered INVALID or FAILED
        """
        resp = self._read_exact(2, timeout)
        if resp is None or resp[0] != Reply.INSYNC:
            return False
        if resp[1] == Reply.OK:
            return True
        if resp[1] == Reply.INVALID:
            raise ProtocolRejected("Bootloader reports INVALID OPERATION")
        if resp[1] == Reply.FAILED:
            raise ProtocolRejected("Bootloader reports OPERATION FAILED")
        return False

    def sync(self, max_attempts: int = 3) -> bool:
        """
        Synchronize with the bootloader.

        Args:
            max_attempts: GET_SYNC attempts before giving up

        Returns:
            True once INSYNC OK was received, False if every attempt failed
        """
        self._advance(SessionState.SYNCING)

        for attempt in range(max_attempts):
            logger.info("Sync attempt %d/%d...", attempt + 1, max_attempts)
            self._link.discard_input()
            self._send(Command.GET_SYNC, EOC)

            try:
                if self._get_sync(self._timeouts.sync):
                    logger.info("Bootloader synchronized")
                    self._advance(SessionState.SYNCED)
                    return True
            except ProtocolRejected as e:
                # Bootloader is there but busy
                logger.debug("Sync rejected: %s", e)

            time.sleep(self._timeouts.retry_delay)

        self._advance(SessionState.IDLE)
        return False

    def get_device_info(self, param: DeviceParam) -> int:
        """
        Query one GET_DEVICE value.

        Returns:
            Signed 32-bit value

        Raises:
            ProtocolTimeout: If the value or the trailing sync is missing
        """
        self._send(Command.GET_DEVICE, param, EOC)

        data = self._read_exact(4, self._timeouts.device_info)
        if data is None:
            raise ProtocolTimeout(
                f"GET_DEVICE({int(param)}) timeout - no response from bootloader"
            )
        value = struct.unpack("<i", data)[0]

        if not self._get_sync(self._timeouts.sync):
            raise ProtocolTimeout(f"GET_DEVICE({int(param)}) sync failed after reading value")
        return value

    def read_device_info(self) -> DeviceInfo:
        """Read bootloader revision, board id, board revision and flash size."""
        self._advance(SessionState.READING_DEVICE_INFO)

        info = DeviceInfo(
            bl_rev=self.get_device_info(DeviceParam.BL_REV),
            board_id=self.get_device_info(DeviceParam.BOARD_ID),
            board_rev=self.get_device_info(DeviceParam.BOARD_REV),
            flash_size=self.get_device_info(DeviceParam.FLASH_SIZE),
        )
        logger.info("Bootloader rev: %d", info.bl_rev)
        logger.info("Board ID: %d, Board rev: %d", info.board_id, info.board_rev)
        logger.info("Flash size: %d bytes (%d KB)", info.flash_size, info.flash_size // 1024)

        self._info = info
        return info

    def check_image(self, firmware: FirmwareImage):
        """
        Refuse firmware the connected board cannot take.

        Raises:
            ValidationFailed: On unsupported bootloader revision, board id
                mismatch or an image larger than flash
        """
        info = self._require_info()

        if not BL_REV_MIN <= info.bl_rev <= BL_REV_MAX:
            logger.error("Unsupported bootloader revision: %d", info.bl_rev)
            raise ValidationFailed(
                f"Unsupported bootloader revision: {info.bl_rev} "
                f"(expected {BL_REV_MIN}-{BL_REV_MAX})"
            )

        if firmware.board_id != 0 and firmware.board_id != info.board_id:
            logger.error(
                "Board ID mismatch: firmware board_id=%d, device board_id=%d",
                firmware.board_id, info.board_id,
            )
            raise ValidationFailed(
                f"Board ID mismatch: firmware is for board {firmware.board_id}, "
                f"but connected board reports ID {info.board_id}.\n\n"
                "Please select the correct firmware for your board."
            )

        if len(firmware.image) > info.flash_size:
            logger.error(
                "Firmware too large: %d bytes > flash %d bytes",
                len(firmware.image), info.flash_size,
            )
            raise ValidationFailed(
                f"Firmware too large: {round(len(firmware.image) / 1024)} KB, "
                f"but board flash is {round(info.flash_size / 1024)} KB"
            )

    def _require_info(self) -> DeviceInfo:
        if self._info is None:
            raise InvalidSessionState("Device info has not been read")
        return self._info

    def erase(self):
        """
        Erase the application flash.

        Raises:
            ProtocolTimeout: If the erase is not acknowledged in time
        """
        self._advance(SessionState.ERASING)
        logger.info("Erasing flash (this may take up to %d seconds)...", self._timeouts.erase)

        # Some bootloaders fail CHIP_ERASE unless it directly follows a
        # fresh sync and GET_DEVICE.
        self._send(Command.GET_SYNC, EOC)
        try:
            self._get_sync(self._timeouts.sync)
        except ProtocolRejected as e:
            logger.debug("Pre-erase sync rejected: %s", e)
        self.get_device_info(DeviceParam.BL_REV)

        self._send(Command.CHIP_ERASE, EOC)
        if not self._get_sync(self._timeouts.erase):
            raise ProtocolTimeout("Chip erase failed or timed out")

        logger.info("Flash erased")

    def program_multi(self, chunk: bytes):
        """
        Write one chunk.

        Raises:
            ValueError: If the chunk is empty or longer than PROG_MULTI_MAX
            ProtocolTimeout: If the write is not acknowledged
        """
        if not 0 < len(chunk) <= PROG_MULTI_MAX:
            raise ValueError(f"Invalid PROG_MULTI size: {len(chunk)}")

        self._send(Command.PROG_MULTI, len(chunk), EOC, data=chunk)

        if not self._get_sync(self._timeouts.program):
            raise ProtocolTimeout("PROG_MULTI failed - bootloader did not acknowledge write")

    def program(
        self,
        image: bytes,
        progress_callback: Optional[Callable[[int, int], None]] = None,
    ):
        """
        Program a whole image.

        Args:
            image: 4-byte aligned firmware bytes
            progress_callback: Optional callback(bytes_written, total_bytes)

        Raises:
            Aborted: If cancellation was requested between chunks
        """
        self._advance(SessionState.PROGRAMMING)

        total = len(image)
        written = 0
        for index, chunk in enumerate(iter_chunks(image), start=1):
            self.check_abort()
            self.program_multi(chunk)
            written += len(chunk)

            if progress_callback:
                progress_callback(written, total)
            if index % 64 == 0:
                logger.info("Written %d KB...", written // 1024)

        logger.info("Firmware written: %d bytes", total)

    def verify(self, image: bytes) -> int:
        """
        Compare the device CRC with the CRC of ``image``.

        Returns:
            The matching CRC

        Raises:
            ProtocolTimeout: If the device does not answer GET_CRC
            VerificationMismatch: If the CRCs differ
        """
        info = self._require_info()
        self._advance(SessionState.VERIFYING)
        logger.info("Verifying firmware CRC...")

        expected = expected_crc(image, info.flash_size)

        self._send(Command.GET_CRC, EOC)
        data = self._read_exact(4, self._timeouts.crc)
        if data is None:
            raise ProtocolTimeout("CRC verification timeout - no response from bootloader")
        actual = struct.unpack("<I", data)[0]

        if not self._get_sync(self._timeouts.sync):
            raise ProtocolTimeout("CRC verification sync failed")

        logger.info("CRC: device=0x%08x, expected=0x%08x", actual, expected)
        if actual != expected:
            logger.error("CRC MISMATCH - firmware verification failed")
            raise VerificationMismatch(expected, actual)

        logger.info("CRC verified - firmware matches")
        return actual

    def reboot(self):
        """Leave the bootloader and start the application."""
        self._advance(SessionState.REBOOTING)
        logger.info("Rebooting into application...")
        try:
            self._send(Command.REBOOT, EOC)
            self._link.discard_input()
        except LinkUnavailable as e:
            # The port usually drops as the board resets
            logger.debug("Link dropped during reboot: %s", e)
        self._advance(SessionState.DONE)
