# SPDX-License-Identifier: MIT
# Copyright (c) 2026 ADNT Sarl <info@adnt.io>

"""
Betaflight/iNav text CLI over the MSP link.

Sending ``#`` switches the firmware into its CLI; ``exit`` returns to MSP
and ``save`` writes the configuration and reboots the board. While the
CLI owns the link the MSP transport refuses requests, and any MSP frames
still arriving are cut out of the text.
"""

import codecs
import logging
import threading
import time
from typing import Callable, List, Optional

from .errors import InvalidSessionState, LinkError, LinkUnavailable
from .msp import HEADER_START, V1_MARKER, V2_MARKER, Direction
from .transport import MspTransport, TransportMode

logger = logging.getLogger(__name__)

ENTER_DELAY = 0.1
PROMPT_WAIT = 0.5
EXIT_WAIT = 0.5
SAVE_WAIT = 2.0

_DIRECTIONS = {d.value for d in Direction}


def filter_msp_frames(data: bytes) -> bytes:
    """
    Remove MSP v1/v2 frames from a chunk of CLI output.

    A frame header near the end of the chunk whose length field is not
    in the chunk yet drops the rest of the chunk.
    """
    if HEADER_START not in data:
        return data

    result = bytearray()
    i = 0
    n = len(data)
    while i < n:
        if data[i] == HEADER_START and i + 2 < n and data[i + 2] in _DIRECTIONS:
            marker = data[i + 1]
            if marker == V1_MARKER:
                if i + 4 >= n:
                    break
                i += min(6 + data[i + 3], n - i)
                continue
            if marker == V2_MARKER:
                if i + 8 >= n:
                    break
                i += min(9 + (data[i + 6] | (data[i + 7] << 8)), n - i)
                continue
        result.append(data[i])
        i += 1
    return bytes(result)


class CliBuffer:
    """Thread-safe accumulator for CLI text."""

    def __init__(self):
        self._cond = threading.Condition()
        self._chunks: List[str] = []
        self._last_data = time.monotonic()

    def feed(self, text: str):
        with self._cond:
            self._chunks.append(text)
            self._last_data = time.monotonic()
            self._cond.notify_all()

    def take(self) -> str:
        """Return and clear everything buffered so far."""
        with self._cond:
            return self._take_locked()

    def _take_locked(self) -> str:
        text = "".join(self._chunks)
        self._chunks.clear()
        return text

    def wait_idle(self, idle_timeout: float, max_wait: float) -> str:
        """
        Wait until output has started and then gone quiet.

        Args:
            idle_timeout: Seconds without new data that end the wait
            max_wait: Upper bound in seconds

        Returns:
            Everything received, buffer cleared
        """
        deadline = time.monotonic() + max_wait
        with self._cond:
            while True:
                now = time.monotonic()
                if now >= deadline:
                    logger.info("CLI output reached max wait time")
                    break
                if self._chunks:
                    idle = now - self._last_data
                    if idle >= idle_timeout:
                        break
                    self._cond.wait(min(idle_timeout - idle, deadline - now))
                else:
                    self._cond.wait(deadline - now)
            return self._take_locked()


class CliSession:
    """
    CLI mode on one link.

    Bytes read from the link reach the session through ``feed`` (the
    reader in ``MspConnection`` routes them here while the transport is
    in CLI mode). Text is only collected between ``enter`` and
    ``exit``/``save``.
    """

    def __init__(self, link, transport: MspTransport, on_text: Optional[Callable[[str], None]] = None):
        """
        Args:
            link: Byte link shared with the MSP transport
            transport: Transport whose mode this session drives
            on_text: Optional callback(text) for every chunk of CLI output
        """
        self._link = link
        self._transport = transport
        self._on_text = on_text
        self._attached = False
        self.buffer = CliBuffer()
        self.reboot_pending = False
        # Multi-byte characters may be split across reads
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    @property
    def active(self) -> bool:
        return self._transport.mode == TransportMode.CLI

    @property
    def attached(self) -> bool:
        return self._attached

    def feed(self, data: bytes):
        """Take bytes read from the link while in CLI mode."""
        if not self._attached:
            return
        filtered = filter_msp_frames(data)
        if not filtered:
            return
        text = self._decoder.decode(filtered)
        if not text:
            return
        self.buffer.feed(text)
        if self._on_text:
            self._on_text(text)

    def _write(self, text: str):
        self._link.write(text.encode("utf-8"))

    def _detach(self):
        self._attached = False

    def enter(self):
        """
        Switch the link to CLI mode.

        Pending MSP requests are cancelled before ``#`` is sent.

        Raises:
            LinkUnavailable: If the link is not open
        """
        if not self._link.is_open:
            raise LinkUnavailable("Transport not connected")
        if self.active:
            return

        logger.info("Entering CLI mode")
        self._transport.enter_cli_mode()
        try:
            time.sleep(ENTER_DELAY)
            self.buffer.take()
            self._decoder.reset()
            self._attached = True
            self._write("#")
            time.sleep(PROMPT_WAIT)
        except LinkError:
            self._detach()
            self._transport.exit_cli_mode()
            raise

    def send_command(self, command: str, wait: float = 0.3) -> str:
        """
        Run one CLI command, entering CLI mode first if needed.

        Args:
            command: Command text without the trailing newline
            wait: Seconds to collect output

        Returns:
            Output received during ``wait``
        """
        if not self.active:
            self.enter()
        self.buffer.take()
        # Plain \n: \r\n makes the firmware report a parse error
        self._write(command + "\n")
        time.sleep(wait)
        return self.buffer.take()

    def send_raw(self, text: str):
        """
        Write text as-is, e.g. a Ctrl-C.

        Raises:
            InvalidSessionState: If CLI mode is not active
        """
        if not self.active:
            raise InvalidSessionState("Not in CLI mode")
        self._write(text)

    def dump(self, max_wait: float = 10.0, idle_timeout: float = 0.5) -> str:
        """
        Return the full ``dump`` output.

        Enters CLI mode if needed and leaves it again afterwards in that
        case.
        """
        was_active = self.active
        if not was_active:
            self.enter()
        try:
            self.buffer.take()
            self._write("dump\n")
            output = self.buffer.wait_idle(idle_timeout, max_wait)
            logger.info("CLI dump received %d chars", len(output))
            return output
        finally:
            if not was_active:
                self.exit()

    def exit(self):
        """Leave CLI mode and hand the link back to MSP."""
        if not self.active:
            return
        try:
            if self._link.is_open:
                self._write("exit\n")
                time.sleep(EXIT_WAIT)
        finally:
            self._detach()
            self._transport.exit_cli_mode()
        logger.info("Left CLI mode")

    def save(self):
        """
        Save the configuration. The board reboots afterwards, so the
        connection must be re-established before MSP is used again.
        """
        if not self.active:
            raise InvalidSessionState("Not in CLI mode")
        try:
            self._write("save\n")
            time.sleep(SAVE_WAIT)
        finally:
            self._detach()
        self.reboot_pending = True
        logger.info("CLI save sent, board is rebooting")
