# SPDX-License-Identifier: MIT
# Copyright (c) 2026 ADNT Sarl <info@adnt.io>

"""
fclink - flight controller link and firmware flashing library.

This package talks to ArduPilot, Betaflight and iNav flight controllers
over a serial port: it flashes firmware through the ArduPilot bootloader,
probes STM32 ROM bootloaders and runs MSP and CLI sessions.

Example usage:
    from fclink import flash_firmware, MspConnection, MspCommand

    # Flash firmware
    result = flash_firmware(
        "/dev/ttyACM0",
        "arducopter.apj",
        progress_callback=lambda e: print(f"{e.progress}% {e.message}"),
    )
    print(result.success, result.error)

    # Talk MSP
    with MspConnection("/dev/ttyACM0") as conn:
        api_version = conn.send_request(MspCommand.API_VERSION)
        print(conn.cli.dump())
"""

from .bootloader import (
    BootloaderSession,
    BootloaderTimeouts,
    Command,
    DeviceInfo,
    DeviceParam,
    Reply,
    SessionState,
    expected_crc,
    iter_chunks,
)
from .cli import CliSession, filter_msp_frames
from .connection import BoardIdentity, MspConnection, TelemetryPoller
from .crc32 import crc32, crc32_fill
from .errors import (
    Aborted,
    CliModeActive,
    InvalidSessionState,
    LinkError,
    LinkUnavailable,
    MalformedFirmware,
    ProtocolRejected,
    ProtocolTimeout,
    Unsupported,
    ValidationFailed,
    VerificationMismatch,
)
from .fallback import ConfigWriteResult, is_fallback_error, save_settings, write_setting
from .firmware import FirmwareImage, encode_apj, load_apj, load_binary, load_firmware
from .flasher import FlashOptions, FlashResult, FlashState, ProgressEvent, flash_firmware
from .guard import FlashLock, flash_lock
from .link import SerialLink
from .msp import (
    BoardInfo,
    MspCommand,
    MspPacket,
    MspParser,
    crc8_dvb_s2,
    decode_api_version,
    decode_board_info,
    decode_fc_variant,
    decode_fc_version,
    encode_request,
)
from .reboot import reboot_to_bootloader, reboot_via_mavlink, reboot_via_nsh
from .stm32 import STM32_CHIP_IDS, ChipInfo, Stm32ProbeResult, detect_chip, is_in_bootloader, query_chip_id
from .transport import MspTransport, TransportMode

__version__ = "0.1.0"

__all__ = [
    # CRC
    "crc32",
    "crc32_fill",
    # Firmware files
    "FirmwareImage",
    "load_apj",
    "load_binary",
    "load_firmware",
    "encode_apj",
    # ArduPilot bootloader
    "BootloaderSession",
    "BootloaderTimeouts",
    "Command",
    "Reply",
    "DeviceParam",
    "DeviceInfo",
    "SessionState",
    "expected_crc",
    "iter_chunks",
    # Flashing
    "flash_firmware",
    "FlashOptions",
    "FlashResult",
    "FlashState",
    "ProgressEvent",
    "FlashLock",
    "flash_lock",
    # Reboot
    "reboot_to_bootloader",
    "reboot_via_mavlink",
    "reboot_via_nsh",
    # STM32 ROM bootloader
    "STM32_CHIP_IDS",
    "ChipInfo",
    "Stm32ProbeResult",
    "query_chip_id",
    "detect_chip",
    "is_in_bootloader",
    # MSP
    "MspCommand",
    "MspPacket",
    "MspParser",
    "crc8_dvb_s2",
    "encode_request",
    "BoardInfo",
    "decode_api_version",
    "decode_fc_variant",
    "decode_fc_version",
    "decode_board_info",
    "MspTransport",
    "TransportMode",
    "MspConnection",
    "BoardIdentity",
    "TelemetryPoller",
    # CLI
    "CliSession",
    "filter_msp_frames",
    "ConfigWriteResult",
    "is_fallback_error",
    "write_setting",
    "save_settings",
    # Link
    "SerialLink",
    # Errors
    "LinkError",
    "LinkUnavailable",
    "CliModeActive",
    "ProtocolTimeout",
    "ProtocolRejected",
    "ValidationFailed",
    "VerificationMismatch",
    "MalformedFirmware",
    "Aborted",
    "Unsupported",
    "InvalidSessionState",
]
