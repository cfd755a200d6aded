# SPDX-License-Identifier: MIT
# Copyright (c) 2026 ADNT Sarl <info@adnt.io>

"""
MSP connection to a running flight controller.

An ``MspConnection`` owns one link together with the frame parser, the
MSP transport, the CLI session and a reader thread. The reader routes
bytes to the MSP dispatcher, or to the CLI while CLI mode is active.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Optional

from .cli import CliSession
from .errors import CliModeActive, LinkError, LinkUnavailable, ProtocolTimeout, Unsupported
from .guard import flash_lock
from .link import SerialLink
from .msp import (
    MspCommand,
    MspParser,
    decode_api_version,
    decode_board_info,
    decode_fc_variant,
    decode_fc_version,
)
from .transport import MspTransport, TransportMode

logger = logging.getLogger(__name__)


@dataclass
class BoardIdentity:
    """What a board reports about itself over MSP."""
    fc_variant: str
    fc_version: str
    board_id: str
    api_version: str


class MspConnection:
    """
    MSP session on one port.

    Can be used as a context manager:
        with MspConnection("/dev/ttyACM0") as conn:
            version = conn.send_request(MspCommand.API_VERSION)
    """

    def __init__(
        self,
        port: str,
        baudrate: int = 115200,
        link_factory=SerialLink,
        read_timeout: float = 0.05,
        on_cli_text: Optional[Callable[[str], None]] = None,
    ):
        """
        Args:
            port: Serial port or pyserial URL
            baudrate: Baud rate (default 115200)
            link_factory: Callable(port, baudrate=...) returning a link
            read_timeout: Reader poll interval in seconds
            on_cli_text: Optional callback(text) for CLI output
        """
        self._port = port
        self._read_timeout = read_timeout
        self._link = link_factory(port, baudrate=baudrate)
        self.parser = MspParser()
        self.transport = MspTransport(self._link)
        self.cli = CliSession(self._link, self.transport, on_cli_text)
        self.transport.add_mode_listener(self._on_mode_change)
        self._reader: Optional[threading.Thread] = None
        self._stop = threading.Event()

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    @property
    def port(self) -> str:
        return self._port

    @property
    def is_open(self) -> bool:
        return self._link.is_open

    @property
    def reconnect_required(self) -> bool:
        """True after a CLI ``save``: the board is rebooting."""
        return self.cli.reboot_pending

    def open(self):
        """
        Open the link and start the reader.

        Raises:
            LinkUnavailable: If a firmware flash owns the port, or the
                port cannot be opened
        """
        if flash_lock.holds(self._port):
            raise LinkUnavailable(f"{self._port} is in use by a firmware flash ({flash_lock.owner})")

        self._link.open()
        self.parser.reset()
        self.transport.reset()
        self.cli.reboot_pending = False
        self.transport.open()

        self._stop.clear()
        self._reader = threading.Thread(
            target=self._read_loop, name=f"msp-reader-{self._port}", daemon=True
        )
        self._reader.start()
        logger.info("MSP connection open on %s", self._port)

    def close(self):
        """
        Stop the reader, fail pending requests and close the link.

        A CLI session still open is left with ``exit`` first, unless a
        ``save`` already made the board reboot.
        """
        if self.cli.active and not self.cli.reboot_pending and self._link.is_open:
            try:
                self.cli.exit()
            except LinkError as e:
                logger.warning("Could not leave CLI mode on %s: %s", self._port, e)
        self._stop.set()
        self.transport.close()
        reader, self._reader = self._reader, None
        if reader is not None and reader is not threading.current_thread():
            reader.join(timeout=1.0)
        self._link.close()
        self.transport.reset()
        logger.info("MSP connection closed on %s", self._port)

    def send_request(self, command: int, payload: bytes = b"", timeout: float = 1.0) -> bytes:
        """Shortcut for ``transport.send_request``."""
        return self.transport.send_request(command, payload, timeout)

    def detect(self, timeout: float = 1.5, info_timeout: float = 1.0) -> Optional[BoardIdentity]:
        """
        Identify the firmware and board.

        ``API_VERSION`` must answer; variant, version and board info are
        best effort and left empty when the board does not report them.

        Args:
            timeout: Seconds to wait for ``API_VERSION``
            info_timeout: Seconds to wait for each of the other requests

        Returns:
            BoardIdentity, or None if the board does not speak MSP

        Raises:
            LinkUnavailable: If the link is not open
            CliModeActive: If CLI mode is active
        """
        try:
            api_version = decode_api_version(self.send_request(MspCommand.API_VERSION, timeout=timeout))
        except (ProtocolTimeout, Unsupported, ValueError) as e:
            logger.info("No MSP answer on %s: %s", self._port, e)
            return None

        def best_effort(command, decode):
            try:
                return decode(self.send_request(command, timeout=info_timeout))
            except (ProtocolTimeout, Unsupported, ValueError) as e:
                logger.debug("MSP command %d gave no answer: %s", command, e)
                return None

        variant = best_effort(MspCommand.FC_VARIANT, decode_fc_variant)
        version = best_effort(MspCommand.FC_VERSION, decode_fc_version)
        board = best_effort(MspCommand.BOARD_INFO, decode_board_info)

        identity = BoardIdentity(
            fc_variant=variant or "",
            fc_version=version or "",
            board_id=board.name if board else "",
            api_version=api_version,
        )
        logger.info(
            "Detected %s %s on %s (board %s, API %s)",
            identity.fc_variant or "unknown firmware", identity.fc_version,
            self._port, identity.board_id or "unknown", identity.api_version,
        )
        return identity

    def handle_data(self, data: bytes):
        """Route bytes read from the link according to the transport mode."""
        if self.transport.mode == TransportMode.CLI:
            self.cli.feed(data)
            return
        for packet in self.parser.feed(data):
            self.transport.dispatch(packet)

    def _on_mode_change(self, mode: TransportMode):
        if mode == TransportMode.MSP:
            # Drop whatever half frame preceded the CLI session
            self.parser.reset()

    def _read_loop(self):
        while not self._stop.is_set():
            try:
                data = self._link.read_available(self._read_timeout)
            except LinkUnavailable as e:
                if not self._stop.is_set():
                    logger.warning("MSP link on %s lost: %s", self._port, e)
                    self.transport.close()
                return
            if data:
                self.handle_data(data)


class TelemetryPoller:
    """
    Calls ``poll(connection)`` at a fixed rate.

    Cycles are skipped while a configuration exchange holds the config
    lock. Polling stops for good when the link enters CLI mode or
    disconnects.
    """

    def __init__(self, connection: MspConnection, poll: Callable[[MspConnection], None], rate_hz: float = 10.0):
        self._connection = connection
        self._poll = poll
        self._period = 1.0 / rate_hz
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.polls = 0
        self.skipped = 0
        self.errors = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and not self._stop.is_set()

    def start(self):
        if self.running:
            return
        self._stop.clear()
        self._connection.transport.add_mode_listener(self._on_mode_change)
        self._thread = threading.Thread(target=self._run, name="msp-telemetry", daemon=True)
        self._thread.start()

    def stop(self):
        self._stop.set()
        self._connection.transport.remove_mode_listener(self._on_mode_change)
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=1.0)

    def _on_mode_change(self, mode: TransportMode):
        if mode != TransportMode.MSP:
            logger.debug("Stopping telemetry: transport is %s", mode.value)
            self._stop.set()

    def _run(self):
        transport = self._connection.transport
        while not self._stop.wait(self._period):
            if transport.config_locked or transport.mode != TransportMode.MSP:
                self.skipped += 1
                continue
            try:
                self._poll(self._connection)
                self.polls += 1
            except CliModeActive:
                self.skipped += 1
            except LinkError as e:
                self.errors += 1
                logger.debug("Telemetry poll failed: %s", e)
