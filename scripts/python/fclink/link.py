# SPDX-License-Identifier: MIT
# Copyright (c) 2026 ADNT Sarl <info@adnt.io>

"""
Byte link to a flight controller.

Every protocol layer in this package talks to a link exposing:

- ``read(size, timeout)``: up to ``size`` bytes, fewer on timeout
- ``read_available(timeout)``: whatever arrives first, ``b""`` on timeout
- ``write(data)``
- ``discard_input()``
- ``close()`` and ``is_open``

``SerialLink`` implements it with pyserial. Any pyserial URL works as a
port, so ``socket://host:5760`` reaches a TCP bridge and ``loop://`` is
a local loopback.
"""

import logging
import time
from typing import Optional

import serial

from .errors import LinkUnavailable

logger = logging.getLogger(__name__)


class SerialLink:
    """
    pyserial-backed byte link.

    Can be used as a context manager:
        with SerialLink("/dev/ttyACM0") as link:
            link.write(b"\\x21\\x20")
    """

    def __init__(
        self,
        port: str,
        baudrate: int = 115200,
        parity: str = serial.PARITY_NONE,
        timeout: float = 1.0,
        dtr: Optional[bool] = None,
        rts: Optional[bool] = None,
        settle: float = 0.1,
    ):
        """
        Describe a link; nothing is opened until ``open()``.

        Args:
            port: Serial port path or pyserial URL
            baudrate: Baud rate (default 115200)
            parity: pyserial parity constant (default none)
            timeout: Default read timeout in seconds
            dtr: Force DTR state on open (None leaves the driver default)
            rts: Force RTS state on open (None leaves the driver default)
            settle: Seconds to wait after opening
        """
        self._port = port
        self._baudrate = baudrate
        self._parity = parity
        self._timeout = timeout
        self._dtr = dtr
        self._rts = rts
        self._settle = settle
        self._ser = None

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    @property
    def port(self) -> str:
        """Return the port name."""
        return self._port

    @property
    def is_open(self) -> bool:
        return self._ser is not None and self._ser.is_open

    def open(self):
        """
        Open the port.

        Raises:
            LinkUnavailable: If the port cannot be opened
        """
        if self.is_open:
            return
        try:
            ser = serial.serial_for_url(self._port, do_not_open=True)
            ser.baudrate = self._baudrate
            ser.bytesize = serial.EIGHTBITS
            ser.parity = self._parity
            ser.stopbits = serial.STOPBITS_ONE
            ser.timeout = self._timeout
            ser.write_timeout = self._timeout
            if self._dtr is not None:
                ser.dtr = self._dtr
            if self._rts is not None:
                ser.rts = self._rts
            ser.open()
        except (serial.SerialException, ValueError) as e:
            raise LinkUnavailable(f"Error opening {self._port}: {e}") from e

        self._ser = ser
        logger.debug("Opened %s at %d baud (parity %s)", self._port, self._baudrate, self._parity)
        if self._settle:
            time.sleep(self._settle)  # Let the device settle

    def close(self):
        """Close the port. Safe to call more than once."""
        if self._ser is not None and self._ser.is_open:
            try:
                self._ser.close()
            except serial.SerialException as e:
                logger.debug("Error closing %s: %s", self._port, e)
        self._ser = None

    def _require_open(self):
        if not self.is_open:
            raise LinkUnavailable(f"Link {self._port} is not open")
        return self._ser

    def write(self, data: bytes) -> None:
        """Write bytes and wait until they are out."""
        ser = self._require_open()
        try:
            ser.write(data)
            ser.flush()
        except serial.SerialException as e:
            raise LinkUnavailable(f"Write to {self._port} failed: {e}") from e

    def read(self, size: int, timeout: Optional[float] = None) -> bytes:
        """
        Read up to ``size`` bytes.

        Blocks until ``size`` bytes arrived or ``timeout`` expired, so a
        short result means the device went quiet.
        """
        ser = self._require_open()
        try:
            wanted = self._timeout if timeout is None else timeout
            # Setting the timeout reconfigures the port on some platforms
            if ser.timeout != wanted:
                ser.timeout = wanted
            return ser.read(size)
        except serial.SerialException as e:
            raise LinkUnavailable(f"Read from {self._port} failed: {e}") from e

    def read_available(self, timeout: Optional[float] = None) -> bytes:
        """Wait for at least one byte, then return everything buffered."""
        first = self.read(1, timeout)
        if not first:
            return b""
        ser = self._require_open()
        try:
            waiting = ser.in_waiting
            return first + (ser.read(waiting) if waiting else b"")
        except serial.SerialException as e:
            raise LinkUnavailable(f"Read from {self._port} failed: {e}") from e

    def discard_input(self) -> None:
        """Drop any stale received bytes."""
        ser = self._require_open()
        try:
            ser.reset_input_buffer()
        except serial.SerialException as e:
            raise LinkUnavailable(f"Flush of {self._port} failed: {e}") from e
