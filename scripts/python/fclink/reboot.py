# SPDX-License-Identifier: MIT
# Copyright (c) 2026 ADNT Sarl <info@adnt.io>

"""
Ways to coax a running flight controller into its bootloader.

- MAVLink: COMMAND_LONG(MAV_CMD_PREFLIGHT_REBOOT_SHUTDOWN, param1=3)
- NSH: a NuttX shell prompt followed by ``reboot -b``

``reboot_to_bootloader`` tries them in that order. None of these raise:
failures are logged and reported as False.
"""

import logging
import time

from pymavlink import mavutil

from .errors import LinkError
from .link import SerialLink

logger = logging.getLogger(__name__)

REBOOT_BAUDRATE = 115200

# MAV_CMD_PREFLIGHT_REBOOT_SHUTDOWN param1: reboot and stay in bootloader
REBOOT_KEEP_IN_BOOTLOADER = 3

NSH_INIT = b"\r\r\r"
NSH_REBOOT_BL = b"reboot -b\n"


def _await_mavlink_reply(link, mav, timeout: float) -> bool:
    """True once the board acknowledges the reboot or sends a heartbeat."""
    deadline = time.monotonic() + timeout
    while True:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return False
        data = link.read_available(remaining)
        if not data:
            continue
        try:
            messages = mav.parse_buffer(data) or []
        except mavutil.mavlink.MAVError as e:
            logger.debug("Ignoring undecodable MAVLink data: %s", e)
            continue
        for msg in messages:
            kind = msg.get_type()
            if kind == "COMMAND_ACK" and msg.command == mavutil.mavlink.MAV_CMD_PREFLIGHT_REBOOT_SHUTDOWN:
                logger.debug("Reboot COMMAND_ACK result=%d", msg.result)
                return msg.result == mavutil.mavlink.MAV_RESULT_ACCEPTED
            if kind == "HEARTBEAT":
                return True


def reboot_via_mavlink(
    port: str,
    link_factory=SerialLink,
    target_system: int = 1,
    target_component: int = 1,
    ack_timeout: float = 1.0,
) -> bool:
    """
    Ask the autopilot to reboot into its bootloader over MAVLink.

    Args:
        port: Serial port or pyserial URL
        link_factory: Callable(port, baudrate=...) returning a link
        target_system: MAVLink system id of the autopilot
        target_component: MAVLink component id of the autopilot
        ack_timeout: Seconds to wait for a MAVLink reply

    Returns:
        True if the board answered in MAVLink, False otherwise
    """
    link = link_factory(port, baudrate=REBOOT_BAUDRATE)
    try:
        link.open()
        mav = mavutil.mavlink.MAVLink(link, srcSystem=255, srcComponent=1)
        # Boot banners and NSH text share the port; report them as BAD_DATA
        mav.robust_parsing = True
        mav.command_long_send(
            target_system,
            target_component,
            mavutil.mavlink.MAV_CMD_PREFLIGHT_REBOOT_SHUTDOWN,
            0,  # confirmation
            REBOOT_KEEP_IN_BOOTLOADER,
            0, 0, 0, 0, 0, 0,
        )
        logger.info("Sent MAVLink reboot-to-bootloader command")
        return _await_mavlink_reply(link, mav, ack_timeout)
    except LinkError as e:
        logger.warning("MAVLink reboot failed: %s", e)
        return False
    finally:
        link.close()


def reboot_via_nsh(port: str, link_factory=SerialLink) -> bool:
    """
    Reboot into the bootloader through a NuttX shell.

    Returns:
        True if the command was written, False if the port failed
    """
    link = link_factory(port, baudrate=REBOOT_BAUDRATE)
    try:
        link.open()
        logger.info("NSH: sending prompt request...")
        link.write(NSH_INIT)
        time.sleep(0.5)

        logger.info("NSH: sending reboot -b...")
        link.write(NSH_REBOOT_BL)
        time.sleep(0.2)
        return True
    except LinkError as e:
        logger.warning("NSH reboot failed: %s", e)
        return False
    finally:
        link.close()


def reboot_to_bootloader(port: str, link_factory=SerialLink) -> bool:
    """
    Try every reboot strategy in order.

    Returns:
        True if one of them reports success
    """
    logger.info("Sending MAVLink reboot-to-bootloader command...")
    if reboot_via_mavlink(port, link_factory):
        return True

    logger.info("MAVLink reboot failed, trying NSH shell reboot...")
    return reboot_via_nsh(port, link_factory)
