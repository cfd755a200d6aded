# SPDX-License-Identifier: MIT
# Copyright (c) 2026 ADNT Sarl <info@adnt.io>

"""
Firmware flashing through the ArduPilot bootloader.

``flash_firmware`` is the single entry point used by front-ends. It owns
the flash lock and the link for the whole attempt, reports progress
through a callback and always returns exactly one ``FlashResult``.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Optional, Union

from .bootloader import BootloaderSession, BootloaderTimeouts
from .errors import Aborted, LinkError, ProtocolTimeout, VerificationMismatch
from .firmware import FirmwareImage, load_firmware
from .guard import flash_lock
from .link import SerialLink
from .reboot import reboot_to_bootloader

logger = logging.getLogger(__name__)

# Seconds to wait for the bootloader to come up after a reboot command
REBOOT_WAIT = 3.0
RECOVERY_REBOOT_WAIT = 4.0
RECOVERY_IDLE_WAIT = 2.0

CONNECT_FAILED = (
    "Could not connect to ArduPilot bootloader on {port}.\n\n"
    "Make sure:\n"
    "1. The board is running ArduPilot firmware (not Betaflight/iNav)\n"
    "2. The board has the ArduPilot bootloader installed\n"
    "3. No other application is using the serial port\n\n"
    "If the board does not respond, try disconnecting and reconnecting USB."
)


class FlashState(Enum):
    """Phase reported in progress events."""
    PREPARING = "preparing"
    ENTERING_BOOTLOADER = "entering-bootloader"
    ERASING = "erasing"
    FLASHING = "flashing"
    VERIFYING = "verifying"
    REBOOTING = "rebooting"
    COMPLETE = "complete"

    def __str__(self) -> str:
        return self.value


@dataclass
class ProgressEvent:
    """Progress notification sent to the front-end."""
    state: FlashState
    progress: int
    message: str
    bytes_written: Optional[int] = None
    total_bytes: Optional[int] = None


@dataclass
class FlashResult:
    """Terminal outcome of one flash attempt."""
    success: bool
    duration: int
    error: Optional[str] = None
    message: Optional[str] = None
    verified: Optional[bool] = None
    cause: Optional[Exception] = field(default=None, repr=False, compare=False)


@dataclass
class FlashOptions:
    """Caller-supplied settings for one flash attempt."""
    baudrate: int = 115200
    in_bootloader: bool = False
    no_reboot_sequence: bool = False
    sync_attempts: int = 3
    recovery_sync_attempts: int = 5
    timeouts: BootloaderTimeouts = field(default_factory=BootloaderTimeouts)


ProgressCallback = Callable[[ProgressEvent], None]


class _FlashAttempt:
    """State of one call to ``flash_firmware``."""

    def __init__(
        self,
        port: str,
        options: FlashOptions,
        progress_callback: Optional[ProgressCallback],
        abort_event: Optional[threading.Event],
        link_factory,
        rebooter,
    ):
        self._port = port
        self._options = options
        self._progress_callback = progress_callback
        self._abort = abort_event
        self._link_factory = link_factory
        self._rebooter = rebooter
        self._link = None
        self._session: Optional[BootloaderSession] = None

    def _progress(self, state: FlashState, progress: int, message: str, **kwargs):
        if self._progress_callback:
            self._progress_callback(ProgressEvent(state, progress, message, **kwargs))

    def _check_abort(self):
        if self._abort is not None and self._abort.is_set():
            raise Aborted("Flash operation aborted")

    def _open_session(self) -> BootloaderSession:
        link = self._link_factory(self._port, baudrate=self._options.baudrate)
        link.open()
        self._link = link
        logger.info("Serial port opened at %d 8N1", self._options.baudrate)
        self._session = BootloaderSession(link, self._options.timeouts, self._abort)
        return self._session

    def close(self):
        """Close the link if one is open. Runs exactly once per link."""
        link, self._link = self._link, None
        if link is not None:
            link.close()

    def _reboot_into_bootloader(self) -> bool:
        rebooted = self._rebooter(self._port, self._link_factory)
        if not rebooted:
            logger.warning("All reboot methods failed - board may already be in bootloader")
        return rebooted

    def _connect(self) -> BootloaderSession:
        self._progress(FlashState.PREPARING, 5, "Connecting to ArduPilot bootloader...")
        session = self._open_session()

        self._progress(FlashState.PREPARING, 8, "Synchronizing with bootloader...")
        if session.sync(self._options.sync_attempts):
            return session

        # The board may still be running its application
        logger.warning("Initial sync failed, attempting bootloader reboot...")
        self.close()
        if self._reboot_into_bootloader():
            logger.info("Reboot sent, waiting for bootloader...")
            time.sleep(RECOVERY_REBOOT_WAIT)
        else:
            time.sleep(RECOVERY_IDLE_WAIT)

        session = self._open_session()
        if not session.sync(self._options.recovery_sync_attempts):
            raise ProtocolTimeout(CONNECT_FAILED.format(port=self._port))
        return session

    def _report_write(self, written: int, total: int):
        percent = round(written * 100 / total)
        self._progress(
            FlashState.FLASHING,
            20 + round(percent * 0.6),
            f"Writing firmware... {percent}% ({written // 1024}/{total // 1024} KB)",
            bytes_written=written,
            total_bytes=total,
        )

    def run(self, firmware: Union[FirmwareImage, str, Path]) -> bool:
        """
        Drive the whole flash.

        Returns:
            True if the image was CRC-verified, False if the bootloader
            cannot verify
        """
        try:
            return self._run(firmware)
        except LinkError as e:
            if self._session is not None:
                self._session.abandon(e)
            raise

    def _run(self, firmware) -> bool:
        self._progress(FlashState.PREPARING, 0, "Loading firmware file...")
        if not isinstance(firmware, FirmwareImage):
            firmware = load_firmware(firmware)
        logger.info(
            "Firmware: board_id=%d, image_size=%d, padded=%d",
            firmware.board_id, firmware.declared_size, len(firmware.image),
        )
        self._check_abort()

        if self._options.no_reboot_sequence:
            logger.info("Skipping reboot - assuming board is already in bootloader")
        elif not self._options.in_bootloader:
            self._progress(
                FlashState.ENTERING_BOOTLOADER, 3, "Rebooting board into bootloader mode..."
            )
            if self._reboot_into_bootloader():
                logger.info("Reboot command sent, waiting for bootloader to start...")
                time.sleep(REBOOT_WAIT)

        session = self._connect()
        self._check_abort()

        self._progress(FlashState.PREPARING, 10, "Reading board info...")
        info = session.read_device_info()
        session.check_image(firmware)
        self._check_abort()

        self._progress(FlashState.ERASING, 12, "Erasing flash...")
        session.erase()
        self._check_abort()

        self._progress(FlashState.FLASHING, 20, "Writing firmware...")
        session.program(firmware.image, self._report_write)
        self._check_abort()

        verified = False
        if info.supports_crc:
            self._progress(FlashState.VERIFYING, 85, "Verifying firmware CRC...")
            session.verify(firmware.image)
            verified = True
        else:
            logger.info(
                "Bootloader rev %d does not support CRC verification - skipping", info.bl_rev
            )

        self._progress(FlashState.REBOOTING, 95, "Rebooting board...")
        session.reboot()
        self.close()

        self._progress(FlashState.COMPLETE, 100, "Flash complete!")
        return verified


def flash_firmware(
    port: str,
    firmware: Union[FirmwareImage, str, Path],
    options: Optional[FlashOptions] = None,
    progress_callback: Optional[ProgressCallback] = None,
    abort_event: Optional[threading.Event] = None,
    link_factory=SerialLink,
    rebooter=reboot_to_bootloader,
) -> FlashResult:
    """
    Flash firmware using the ArduPilot serial bootloader.

    Args:
        port: Serial port or pyserial URL of the board
        firmware: FirmwareImage, or path to a ``.apj``/``.bin`` file
        options: FlashOptions (defaults apply when omitted)
        progress_callback: Optional callback(ProgressEvent)
        abort_event: Set to cancel; honoured between steps and chunks
        link_factory: Callable(port, baudrate=...) returning a link
        rebooter: Callable(port, link_factory) -> bool

    Returns:
        FlashResult; this function does not raise for link, protocol,
        validation or file errors
    """
    start = time.monotonic()

    def elapsed() -> int:
        return round((time.monotonic() - start) * 1000)

    if not port:
        return FlashResult(
            success=False,
            error="No serial port specified for ArduPilot bootloader flash",
            duration=elapsed(),
        )

    if not flash_lock.acquire("ardupilot", port):
        return FlashResult(
            success=False,
            error="Another flash operation is already in progress. Please wait for it to complete.",
            duration=elapsed(),
        )

    logger.info("Starting ArduPilot bootloader flash on %s", port)
    attempt = _FlashAttempt(
        port, options or FlashOptions(), progress_callback, abort_event, link_factory, rebooter
    )
    try:
        verified = attempt.run(firmware)
    except VerificationMismatch as e:
        return FlashResult(
            success=False,
            error="Firmware CRC verification failed - the firmware was written but "
                  "could not be verified. Please try again.",
            verified=False,
            cause=e,
            duration=elapsed(),
        )
    except Aborted as e:
        logger.warning("Flash aborted by user")
        return FlashResult(success=False, error="Aborted", cause=e, duration=elapsed())
    except (LinkError, OSError) as e:
        logger.error("ArduPilot flash failed: %s", e)
        return FlashResult(success=False, error=str(e), cause=e, duration=elapsed())
    finally:
        attempt.close()
        flash_lock.release()

    duration = elapsed()
    logger.info("Flash complete in %.1fs", duration / 1000)
    return FlashResult(
        success=True,
        message="Firmware flashed successfully via ArduPilot bootloader",
        verified=verified,
        duration=duration,
    )
