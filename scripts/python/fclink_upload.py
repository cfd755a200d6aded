#!/usr/bin/env python3
# SPDX-License-Identifier: MIT
# Copyright (c) 2026 ADNT Sarl <info@adnt.io>

"""
Flight controller flashing and link tool.

Usage:
    python fclink_upload.py --port /dev/ttyACM0 flash arducopter.apj
    python fclink_upload.py --port /dev/ttyACM0 info
    python fclink_upload.py --port /dev/ttyUSB0 probe-stm32
    python fclink_upload.py --port /dev/ttyACM0 dump > config.txt

Requirements:
    pip install pyserial pymavlink
"""

import argparse
import logging
import sys
from pathlib import Path

try:
    import serial  # noqa: F401
except ImportError:
    print("Error: pyserial not installed. Run: pip install pyserial")
    sys.exit(1)

from fclink import (
    BootloaderSession,
    FlashOptions,
    LinkError,
    MspConnection,
    ProgressEvent,
    SerialLink,
    detect_chip,
    flash_firmware,
)


def cmd_flash(port: str, firmware_path: Path, baudrate: int, in_bootloader: bool, no_reboot: bool) -> bool:
    """Flash firmware through the ArduPilot bootloader."""
    print(f"Firmware: {firmware_path}")
    print(f"Port:     {port} @ {baudrate}")
    print()

    def progress(event: ProgressEvent):
        if event.total_bytes:
            print(f"\r{event.state}: {event.progress:3d}% {event.message}", end="", flush=True)
        else:
            print(f"\n{event.state}: {event.progress:3d}% {event.message}", end="", flush=True)

    options = FlashOptions(
        baudrate=baudrate,
        in_bootloader=in_bootloader,
        no_reboot_sequence=no_reboot,
    )
    result = flash_firmware(port, firmware_path, options=options, progress_callback=progress)
    print()
    print()

    if not result.success:
        print(f"FAILED: {result.error}")
        return False

    print(result.message)
    if result.verified:
        print("CRC verified.")
    else:
        print("Bootloader does not support CRC verification.")
    print(f"Duration: {result.duration / 1000:.1f}s")
    return True


def cmd_info(port: str, baudrate: int) -> bool:
    """Read board information from the ArduPilot bootloader."""
    with SerialLink(port, baudrate=baudrate) as link:
        session = BootloaderSession(link)
        print("Synchronizing... ", end="", flush=True)
        if not session.sync():
            print("FAILED (no bootloader response)")
            return False
        print("OK")
        info = session.read_device_info()

    print("Bootloader Info:")
    print(f"  Bootloader rev: {info.bl_rev}")
    print(f"  Board ID:       {info.board_id}")
    print(f"  Board rev:      {info.board_rev}")
    print(f"  Flash size:     {info.flash_size} bytes ({info.flash_size // 1024} KB)")
    print(f"  CRC verify:     {'yes' if info.supports_crc else 'no'}")
    return True


def cmd_probe_stm32(port: str) -> bool:
    """Detect an STM32 chip sitting in its ROM bootloader."""
    print("Probing STM32 bootloader... ", end="", flush=True)
    result = detect_chip(port)
    if result is None:
        print("no response")
        return False
    print("OK")
    print(f"  Chip ID: 0x{result.chip_id:04x}")
    if result.chip_info:
        print(f"  MCU:     {result.chip_info.mcu}")
        print(f"  Family:  {result.chip_info.family}")
        print(f"  Flash:   {result.chip_info.flash_kb} KB")
    else:
        print("  MCU:     unknown")
    return True


def cmd_dump(port: str, baudrate: int) -> bool:
    """Print the CLI ``dump`` of a Betaflight/iNav board."""
    with MspConnection(port, baudrate=baudrate) as conn:
        output = conn.cli.dump()
    print(output)
    return bool(output)


def main():
    parser = argparse.ArgumentParser(
        description="Flight controller flashing and link tool"
    )
    parser.add_argument(
        "--port", "-p",
        required=True,
        help="Serial port or pyserial URL (e.g., /dev/ttyACM0, socket://host:5760)"
    )
    parser.add_argument(
        "--baud", "-b",
        type=int,
        default=115200,
        help="Baud rate (default 115200)"
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # flash command
    flash_parser = subparsers.add_parser("flash", help="Flash firmware via the ArduPilot bootloader")
    flash_parser.add_argument("file", type=Path, help="Firmware file (.apj or .bin)")
    flash_parser.add_argument("--in-bootloader", action="store_true",
                              help="Board is already in bootloader mode")
    flash_parser.add_argument("--no-reboot", action="store_true",
                              help="Do not try to reboot the board into its bootloader")

    # info command
    subparsers.add_parser("info", help="Read ArduPilot bootloader board info")

    # probe-stm32 command
    subparsers.add_parser("probe-stm32", help="Detect an STM32 in its ROM bootloader")

    # dump command
    subparsers.add_parser("dump", help="Print the CLI dump of a Betaflight/iNav board")

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        if args.command == "flash":
            if not args.file.exists():
                print(f"Error: File not found: {args.file}")
                sys.exit(1)
            ok = cmd_flash(args.port, args.file, args.baud, args.in_bootloader, args.no_reboot)
        elif args.command == "info":
            ok = cmd_info(args.port, args.baud)
        elif args.command == "probe-stm32":
            ok = cmd_probe_stm32(args.port)
        else:
            ok = cmd_dump(args.port, args.baud)
    except LinkError as e:
        print(f"Error: {e}")
        sys.exit(1)

    sys.exit(0 if ok else 1)


if __name__ == "__main__":
    main()
