# SPDX-License-Identifier: MIT
# Copyright (c) 2026 ADNT Sarl <info@adnt.io>

"""Tests for the pyserial link."""

from unittest.mock import MagicMock, PropertyMock, call, patch

import pytest
import serial

from fclink.errors import LinkUnavailable
from fclink.link import SerialLink


@pytest.fixture
def mock_serial():
    with patch('fclink.link.serial.serial_for_url') as factory, patch('fclink.link.time.sleep'):
        port = MagicMock()
        port.is_open = True
        factory.return_value = port
        yield factory, port


class TestSerialLink:
    """Tests for SerialLink."""

    def test_open_configures_port(self, mock_serial):
        """Settings are applied before the port opens."""
        factory, port = mock_serial
        link = SerialLink("/dev/ttyUSB0", baudrate=57600, parity=serial.PARITY_EVEN, dtr=False, rts=False)
        link.open()

        factory.assert_called_once_with("/dev/ttyUSB0", do_not_open=True)
        assert port.baudrate == 57600
        assert port.parity == serial.PARITY_EVEN
        assert port.bytesize == serial.EIGHTBITS
        assert port.stopbits == serial.STOPBITS_ONE
        assert port.dtr is False
        assert port.rts is False
        port.open.assert_called_once()
        assert link.is_open

    def test_open_failure(self, mock_serial):
        """SerialException becomes LinkUnavailable."""
        factory, port = mock_serial
        port.open.side_effect = serial.SerialException("busy")
        link = SerialLink("/dev/ttyUSB0")

        with pytest.raises(LinkUnavailable, match="Error opening /dev/ttyUSB0: busy"):
            link.open()
        assert not link.is_open

    def test_requires_open(self):
        """I/O on a closed link raises LinkUnavailable."""
        link = SerialLink("/dev/ttyUSB0")
        assert not link.is_open
        with pytest.raises(LinkUnavailable, match="not open"):
            link.write(b"\x21\x20")
        with pytest.raises(LinkUnavailable):
            link.read(1)

    def test_write_flushes(self, mock_serial):
        factory, port = mock_serial
        link = SerialLink("/dev/ttyUSB0")
        link.open()
        link.write(b"\x21\x20")

        port.write.assert_called_once_with(b"\x21\x20")
        port.flush.assert_called_once()

    def test_write_failure(self, mock_serial):
        """A vanished device surfaces as LinkUnavailable."""
        factory, port = mock_serial
        port.write.side_effect = serial.SerialException("device disconnected")
        link = SerialLink("/dev/ttyUSB0")
        link.open()

        with pytest.raises(LinkUnavailable, match="Write to /dev/ttyUSB0 failed"):
            link.write(b"\x00")

    def test_read_timeout(self, mock_serial):
        """Per-call timeout overrides the default."""
        factory, port = mock_serial
        port.read.return_value = b"\x12"
        link = SerialLink("/dev/ttyUSB0", timeout=1.0)
        link.open()

        assert link.read(1, 0.25) == b"\x12"
        assert port.timeout == 0.25
        link.read(1)
        assert port.timeout == 1.0

    def test_read_keeps_unchanged_timeout(self, mock_serial):
        """The port timeout is only written when it changes."""
        factory, port = mock_serial
        port.read.return_value = b"\x12"
        link = SerialLink("/dev/ttyUSB0", timeout=1.0)
        link.open()
        timeout = PropertyMock(return_value=1.0)
        type(port).timeout = timeout

        link.read(1)
        link.read(1, 1.0)
        assert call(1.0) not in timeout.call_args_list

        link.read(1, 0.25)
        assert timeout.call_args_list[-1] == call(0.25)

    def test_read_available(self, mock_serial):
        """First byte, then whatever is buffered."""
        factory, port = mock_serial
        port.read.side_effect = [b"$", b"M>\x00"]
        port.in_waiting = 3
        link = SerialLink("/dev/ttyUSB0")
        link.open()

        assert link.read_available(0.1) == b"$M>\x00"

    def test_read_available_timeout(self, mock_serial):
        factory, port = mock_serial
        port.read.return_value = b""
        link = SerialLink("/dev/ttyUSB0")
        link.open()

        assert link.read_available(0.1) == b""

    def test_close_twice(self, mock_serial):
        """close() is idempotent."""
        factory, port = mock_serial
        link = SerialLink("/dev/ttyUSB0")
        link.open()
        link.close()
        link.close()

        port.close.assert_called_once()
        assert not link.is_open

    def test_context_manager(self, mock_serial):
        factory, port = mock_serial
        with SerialLink("socket://localhost:5760") as link:
            assert link.is_open
            assert link.port == "socket://localhost:5760"
        port.close.assert_called_once()
