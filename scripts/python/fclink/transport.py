# SPDX-License-Identifier: MIT
# Copyright (c) 2026 ADNT Sarl <info@adnt.io>

"""
MSP request/response transport and link mode arbiter.

At most one MSP exchange is in flight per link. While the link is in CLI
mode no MSP request is accepted, and entering CLI mode cancels every
request still waiting for its response.
"""

import logging
import threading
import time
from collections import defaultdict, deque
from concurrent.futures import Future, TimeoutError as FutureTimeout
from contextlib import contextmanager
from enum import Enum
from typing import Callable, Deque, Dict, List, Optional, Set

from .errors import CliModeActive, LinkUnavailable, ProtocolTimeout, Unsupported
from .msp import Direction, MspPacket, encode_request

logger = logging.getLogger(__name__)


class TransportMode(Enum):
    """Who currently owns the link."""
    DISCONNECTED = "disconnected"
    MSP = "msp"
    CLI = "cli"


_MODE_TRANSITIONS = {
    TransportMode.DISCONNECTED: {TransportMode.MSP},
    TransportMode.MSP: {TransportMode.CLI, TransportMode.DISCONNECTED},
    TransportMode.CLI: {TransportMode.MSP, TransportMode.DISCONNECTED},
}

ModeListener = Callable[[TransportMode], None]


class MspTransport:
    """
    Serializes MSP exchanges over one link.

    Responses are delivered by whoever reads the link (see
    ``MspConnection``) through ``dispatch``, ``handle_response`` and
    ``handle_error``.

    Example:
        transport = MspTransport(link)
        transport.open()
        payload = transport.send_request(MspCommand.API_VERSION)
    """

    def __init__(self, link, settle_delay: float = 0.05):
        """
        Args:
            link: Open byte link shared with the reader
            settle_delay: Seconds the first config lock holder waits for
                in-flight telemetry to drain
        """
        self._link = link
        self._settle_delay = settle_delay
        self._mode = TransportMode.DISCONNECTED
        self._request_lock = threading.Lock()
        # Reentrant: a link may deliver the response from inside write()
        self._state_lock = threading.RLock()
        self._pending: Dict[int, Deque[Future]] = defaultdict(deque)
        self._config_lock_count = 0
        self._mode_listeners: List[ModeListener] = []
        self.requests_sent = 0
        self.responses_received = 0
        self.timeouts = 0
        # Commands the board answered with an error frame
        self.unsupported: Set[int] = set()

    @property
    def mode(self) -> TransportMode:
        return self._mode

    @property
    def config_locked(self) -> bool:
        """True while a configuration exchange holds the config lock."""
        return self._config_lock_count > 0

    @property
    def pending_count(self) -> int:
        with self._state_lock:
            return sum(len(q) for q in self._pending.values())

    def add_mode_listener(self, listener: ModeListener):
        """Call ``listener(mode)`` after every mode change."""
        self._mode_listeners.append(listener)

    def remove_mode_listener(self, listener: ModeListener):
        if listener in self._mode_listeners:
            self._mode_listeners.remove(listener)

    def _set_mode_locked(self, mode: TransportMode) -> bool:
        """Change mode; caller holds ``_state_lock``. False if unchanged."""
        if mode == self._mode:
            return False
        if mode not in _MODE_TRANSITIONS[self._mode]:
            raise LinkUnavailable(f"Cannot switch transport from {self._mode.value} to {mode.value}")
        logger.debug("Transport mode %s -> %s", self._mode.value, mode.value)
        self._mode = mode
        return True

    def _notify(self, mode: TransportMode):
        for listener in list(self._mode_listeners):
            listener(mode)

    def _take_pending_locked(self) -> List[Future]:
        futures = [f for queue in self._pending.values() for f in queue]
        self._pending.clear()
        return futures

    @staticmethod
    def _reject(futures: List[Future], error_type, message: str):
        for future in futures:
            if not future.done():
                future.set_exception(error_type(message))

    def _check_ready(self, waiting: bool = False):
        if not self._link.is_open or self._mode == TransportMode.DISCONNECTED:
            if waiting:
                raise LinkUnavailable("MSP transport closed while waiting")
            raise LinkUnavailable("MSP transport not connected")
        if self._mode == TransportMode.CLI:
            raise CliModeActive("MSP blocked - CLI mode active")

    def open(self):
        """Start accepting MSP requests. The link must already be open."""
        with self._state_lock:
            changed = self._set_mode_locked(TransportMode.MSP)
        if changed:
            self._notify(TransportMode.MSP)

    def reset(self):
        """Reject pending requests and clear counters (connect/disconnect)."""
        with self._state_lock:
            pending = self._take_pending_locked()
            self._config_lock_count = 0
        self._reject(pending, LinkUnavailable, "MSP transport reset")
        self.requests_sent = 0
        self.responses_received = 0
        self.timeouts = 0
        self.unsupported.clear()

    def close(self):
        """Stop accepting requests; anything still waiting fails."""
        with self._state_lock:
            pending = self._take_pending_locked()
            changed = self._set_mode_locked(TransportMode.DISCONNECTED)
        self._reject(pending, LinkUnavailable, "MSP transport closed")
        if changed:
            self._notify(TransportMode.DISCONNECTED)

    def send_request(
        self,
        command: int,
        payload: bytes = b"",
        timeout: float = 1.0,
        version: Optional[int] = None,
    ) -> bytes:
        """
        Send one MSP request and wait for its response.

        Args:
            command: MSP command id (v2 framing is used above 255)
            payload: Request payload
            timeout: Seconds to wait for the response
            version: Force MSP v1 or v2 framing

        Returns:
            Response payload

        Raises:
            LinkUnavailable: If the link is closed
            CliModeActive: If CLI mode is active or was entered while waiting
            ProtocolTimeout: If no response arrived in time
            Unsupported: If the board answered with an error frame
        """
        self._check_ready()
        frame = encode_request(command, payload, version)

        with self._request_lock:
            future: Future = Future()
            try:
                # enter_cli_mode() waits for an in-progress write, and no
                # write starts once the mode is CLI
                with self._state_lock:
                    self._check_ready(waiting=True)
                    self._pending[command].append(future)
                    self._link.write(frame)
                self.requests_sent += 1
                return future.result(timeout)
            except FutureTimeout:
                self.timeouts += 1
                raise ProtocolTimeout(f"MSP command {command} timed out") from None
            finally:
                self._discard(command, future)

    def _discard(self, command: int, future: Future):
        with self._state_lock:
            queue = self._pending.get(command)
            if queue and future in queue:
                queue.remove(future)
            if queue is not None and not queue:
                del self._pending[command]

    def _pop(self, command: int) -> Optional[Future]:
        with self._state_lock:
            queue = self._pending.get(command)
            if not queue:
                return None
            future = queue.popleft()
            if not queue:
                del self._pending[command]
            return future

    def handle_response(self, command: int, payload: bytes) -> bool:
        """
        Resolve the oldest request waiting on ``command``.

        Returns:
            True if a request was waiting
        """
        future = self._pop(command)
        if future is None:
            logger.debug("Unsolicited MSP response for command %d", command)
            return False
        self.responses_received += 1
        if not future.done():
            future.set_result(payload)
        return True

    def handle_error(self, command: int) -> bool:
        """Fail the oldest request waiting on ``command`` as unsupported."""
        if command not in self.unsupported:
            logger.info("Board does not support MSP command %d", command)
            self.unsupported.add(command)
        future = self._pop(command)
        if future is None:
            logger.debug("Unsolicited MSP error for command %d", command)
            return False
        if not future.done():
            future.set_exception(Unsupported(f"MSP command {command} not supported by this board"))
        return True

    def dispatch(self, packet: MspPacket):
        """Route a parsed frame to its waiting request."""
        if packet.direction == Direction.RESPONSE:
            self.handle_response(packet.command, packet.payload)
        elif packet.direction == Direction.ERROR:
            self.handle_error(packet.command)
        else:
            logger.debug("Ignoring MSP request frame for command %d", packet.command)

    @contextmanager
    def config_lock(self):
        """
        Hold off telemetry polling during a configuration exchange.

        Reentrant. The outermost holder waits ``settle_delay`` first so
        that telemetry already on the wire drains.
        """
        with self._state_lock:
            self._config_lock_count += 1
            first = self._config_lock_count == 1
        try:
            if first:
                time.sleep(self._settle_delay)
            yield self
        finally:
            with self._state_lock:
                self._config_lock_count = max(0, self._config_lock_count - 1)

    def enter_cli_mode(self):
        """
        Hand the link to the CLI.

        Every waiting request fails at once with ``CliModeActive``.
        """
        with self._state_lock:
            changed = self._set_mode_locked(TransportMode.CLI)
            pending = self._take_pending_locked()
        if pending:
            logger.info("Cancelling %d pending MSP request(s) for CLI mode", len(pending))
        self._reject(pending, CliModeActive, "MSP cancelled - entering CLI mode")
        if changed:
            self._notify(TransportMode.CLI)

    def exit_cli_mode(self):
        """Give the link back to MSP."""
        with self._state_lock:
            changed = self._set_mode_locked(TransportMode.MSP)
        if changed:
            self._notify(TransportMode.MSP)
