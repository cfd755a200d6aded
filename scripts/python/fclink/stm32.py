# SPDX-License-Identifier: MIT
# Copyright (c) 2026 ADNT Sarl <info@adnt.io>

"""
STM32 USART (system memory) bootloader chip detection.

Works through a USB-serial adapter wired to the flight controller's UART
while the MCU sits in its ROM bootloader (BOOT0 high at reset). The ROM
bootloader auto-detects the baud rate from the first 0x7F and runs 8E1.
"""

import logging
import time
from dataclasses import dataclass
from typing import Dict, Optional

import serial

from .errors import LinkError
from .link import SerialLink

logger = logging.getLogger(__name__)

SYNC = 0x7F
ACK = 0x79
NACK = 0x1F

CMD_GET = 0x00
CMD_GET_ID = 0x02

SYNC_ATTEMPTS = 3
SYNC_TIMEOUT = 0.5
CMD_TIMEOUT = 0.2
RETRY_DELAY = 0.1

DETECT_BAUDRATES = (115200, 57600, 38400, 19200, 9600)


@dataclass(frozen=True)
class ChipInfo:
    """Known STM32 part."""
    mcu: str
    family: str
    flash_kb: int


@dataclass
class Stm32ProbeResult:
    """Answer to GET_ID. ``chip_info`` is None for ids not in the table."""
    chip_id: int
    chip_info: Optional[ChipInfo]


STM32_CHIP_IDS: Dict[int, ChipInfo] = {
    # F4
    0x0413: ChipInfo("STM32F405/407", "F4", 1024),
    0x0419: ChipInfo("STM32F427/429", "F4", 2048),
    0x0423: ChipInfo("STM32F401xB/C", "F4", 256),
    0x0433: ChipInfo("STM32F401xD/E", "F4", 512),
    0x0431: ChipInfo("STM32F411", "F4", 512),
    0x0441: ChipInfo("STM32F412", "F4", 1024),
    0x0421: ChipInfo("STM32F446", "F4", 512),
    # F7
    0x0449: ChipInfo("STM32F745/746", "F7", 1024),
    0x0451: ChipInfo("STM32F765/767/769", "F7", 2048),
    0x0452: ChipInfo("STM32F72x/73x", "F7", 512),
    # H7
    0x0450: ChipInfo("STM32H742/743/750/753", "H7", 2048),
    0x0480: ChipInfo("STM32H7A3/7B3", "H7", 2048),
    0x0483: ChipInfo("STM32H723/725/730/733/735", "H7", 1024),
    # F3
    0x0432: ChipInfo("STM32F37x", "F3", 256),
    0x0438: ChipInfo("STM32F303x6/8", "F3", 64),
    0x0422: ChipInfo("STM32F30x/F302xB/C", "F3", 256),
    0x0439: ChipInfo("STM32F302x6/8", "F3", 64),
    0x0446: ChipInfo("STM32F303xD/E", "F3", 512),
    # G4
    0x0468: ChipInfo("STM32G431/441", "G4", 128),
    0x0469: ChipInfo("STM32G47x/48x", "G4", 512),
}


def lookup_chip(chip_id: int) -> Optional[ChipInfo]:
    """Return the table entry for ``chip_id``, or None."""
    return STM32_CHIP_IDS.get(chip_id)


def _read_byte(link, timeout: float) -> Optional[int]:
    data = link.read(1, timeout)
    return data[0] if data else None


def _send_command(link, cmd: int) -> bool:
    """Send ``cmd`` with its complement and wait for ACK."""
    link.write(bytes([cmd, cmd ^ 0xFF]))
    return _read_byte(link, CMD_TIMEOUT) == ACK


def _sync(link) -> bool:
    for attempt in range(SYNC_ATTEMPTS):
        link.discard_input()
        link.write(bytes([SYNC]))
        response = _read_byte(link, SYNC_TIMEOUT)

        if response == ACK:
            return True

        if response == NACK:
            # Already synced from an earlier 0x7F; confirm with GET
            if _send_command(link, CMD_GET):
                time.sleep(0.05)
                link.discard_input()
                return True

        logger.debug("STM32 sync attempt %d/%d failed", attempt + 1, SYNC_ATTEMPTS)
        time.sleep(RETRY_DELAY)

    return False


def _get_id(link) -> Optional[int]:
    if not _send_command(link, CMD_GET_ID):
        return None

    # [len][id_hi][id_lo][ACK]
    length = _read_byte(link, CMD_TIMEOUT)
    if length is None:
        return None
    id_high = _read_byte(link, CMD_TIMEOUT)
    id_low = _read_byte(link, CMD_TIMEOUT)
    if id_high is None or id_low is None:
        return None

    if _read_byte(link, CMD_TIMEOUT) != ACK:
        logger.debug("GET_ID without final ACK, continuing")
    return (id_high << 8) | id_low


def query_chip_id(
    port: str,
    baudrate: int = 115200,
    link_factory=SerialLink,
) -> Optional[Stm32ProbeResult]:
    """
    Query the chip id through the STM32 ROM bootloader.

    Args:
        port: Serial port or pyserial URL
        baudrate: Baud rate to try
        link_factory: Callable(port, baudrate=..., parity=..., dtr=..., rts=...)

    Returns:
        Stm32ProbeResult, or None if no bootloader answered
    """
    # DTR/RTS held inactive so the adapter does not reset the board
    link = link_factory(
        port,
        baudrate=baudrate,
        parity=serial.PARITY_EVEN,
        dtr=False,
        rts=False,
    )
    try:
        link.open()
        link.discard_input()

        if not _sync(link):
            return None

        chip_id = _get_id(link)
        if chip_id is None:
            return None
    except LinkError as e:
        logger.debug("STM32 bootloader query failed: %s", e)
        return None
    finally:
        link.close()

    chip_info = lookup_chip(chip_id)
    logger.info(
        "STM32 chip id 0x%04x (%s) at %d baud",
        chip_id, chip_info.mcu if chip_info else "unknown", baudrate,
    )
    return Stm32ProbeResult(chip_id=chip_id, chip_info=chip_info)


def detect_chip(port: str, link_factory=SerialLink) -> Optional[Stm32ProbeResult]:
    """Try the common bootloader baud rates until one answers."""
    for baudrate in DETECT_BAUDRATES:
        result = query_chip_id(port, baudrate, link_factory)
        if result:
            return result
    return None


def is_in_bootloader(port: str, link_factory=SerialLink) -> bool:
    """True if an STM32 ROM bootloader answers at 115200."""
    return query_chip_id(port, 115200, link_factory) is not None
