# SPDX-License-Identifier: MIT
# Copyright (c) 2026 ADNT Sarl <info@adnt.io>

"""
Exception hierarchy shared by the bootloader, prober and MSP layers.
"""


class LinkError(Exception):
    """Base exception for all link and protocol errors."""
    pass


class LinkUnavailable(LinkError):
    """Link is not open, or was closed mid-operation."""
    pass


class CliModeActive(LinkUnavailable):
    """MSP exchange refused or cancelled because CLI mode owns the link."""
    pass


class ProtocolTimeout(LinkError):
    """No response, or an incomplete one, within the time budget."""
    pass


class ProtocolRejected(LinkError):
    """Device answered INVALID, FAILED or NACK."""
    pass


class ValidationFailed(LinkError):
    """Device and firmware are not compatible."""
    pass


class VerificationMismatch(LinkError):
    """Firmware was written but the device CRC does not match."""

    def __init__(self, expected: int, actual: int):
        super().__init__(
            f"CRC mismatch: device=0x{actual:08x}, expected=0x{expected:08x}"
        )
        self.expected = expected
        self.actual = actual


class MalformedFirmware(LinkError):
    """Firmware file could not be decoded."""
    pass


class Aborted(LinkError):
    """Operation cancelled by the user."""
    pass


class Unsupported(LinkError):
    """Capability not present on this board."""
    pass


class InvalidSessionState(LinkError):
    """Command issued in a session state that does not allow it."""
    pass
