# SPDX-License-Identifier: MIT
# Copyright (c) 2026 ADNT Sarl <info@adnt.io>

"""
Configuration writes with a CLI fallback.

Older firmware lacks some MSP write commands: it answers with an error
frame, or not at all. These helpers try the binary command first and
replay the change as CLI text when the board does not take it.
"""

import logging
import re
from dataclasses import dataclass
from typing import Iterable

from .errors import CliModeActive, LinkError, ProtocolTimeout, Unsupported
from .msp import MspCommand

logger = logging.getLogger(__name__)

CLI_PARSE_ERROR = "Parse error"


@dataclass
class ConfigWriteResult:
    """Outcome of a configuration write, whichever path carried it."""
    success: bool
    via_cli: bool
    message: str = ""


def is_fallback_error(exc: Exception, command: int) -> bool:
    """True if ``exc`` means the board does not take ``command`` over MSP."""
    if isinstance(exc, CliModeActive):
        return False
    if isinstance(exc, (Unsupported, ProtocolTimeout)):
        return True
    text = str(exc)
    return (
        "not supported" in text
        or "timed out" in text
        or "timeout" in text
        or re.search(rf"\b{command}\b", text) is not None
    )


def _run_cli(connection, commands: Iterable[str]) -> ConfigWriteResult:
    output = []
    try:
        for command in commands:
            logger.info("CLI: %s", command)
            output.append(connection.cli.send_command(command))
    except LinkError as e:
        logger.error("CLI fallback failed: %s", e)
        return ConfigWriteResult(False, True, str(e))
    text = "".join(output)
    if CLI_PARSE_ERROR in text:
        logger.error("CLI rejected configuration: %s", text.strip())
        return ConfigWriteResult(False, True, "CLI reported a parse error")
    return ConfigWriteResult(True, True, "Setting written via CLI")


def write_setting(
    connection,
    command: int,
    payload: bytes,
    cli_commands: Iterable[str],
    timeout: float = 1.0,
) -> ConfigWriteResult:
    """
    Write one setting over MSP, falling back to CLI text.

    Once the fallback has been used the link stays in CLI mode so that
    further writes and the final ``save_settings`` go the same way.

    Args:
        connection: Object with ``transport`` and ``cli`` (an ``MspConnection``)
        command: MSP write command id
        payload: MSP payload
        cli_commands: CLI lines that make the same change
        timeout: Seconds to wait for the MSP acknowledgement

    Returns:
        ConfigWriteResult
    """
    cli_commands = list(cli_commands)
    if connection.cli.active:
        return _run_cli(connection, cli_commands)

    with connection.transport.config_lock():
        try:
            connection.transport.send_request(command, payload, timeout)
            return ConfigWriteResult(True, False, "Setting written via MSP")
        except LinkError as e:
            if not is_fallback_error(e, command):
                logger.error("MSP command %d failed: %s", command, e)
                return ConfigWriteResult(False, False, str(e))
            logger.warning("MSP command %d not supported, trying CLI...", command)

    return _run_cli(connection, cli_commands)


def _save_via_cli(connection) -> ConfigWriteResult:
    logger.info("Saving via CLI (board will reboot)")
    try:
        if not connection.cli.active:
            connection.cli.enter()
        connection.cli.save()
    except LinkError as e:
        logger.error("CLI save failed: %s", e)
        return ConfigWriteResult(False, True, str(e))
    return ConfigWriteResult(True, True, "Settings saved via CLI, board is rebooting")


def save_settings(connection, timeout: float = 5.0) -> ConfigWriteResult:
    """
    Persist the configuration: ``EEPROM_WRITE``, or CLI ``save`` when the
    board does not support it or CLI mode is already active.
    """
    if connection.cli.active:
        return _save_via_cli(connection)

    with connection.transport.config_lock():
        try:
            connection.transport.send_request(MspCommand.EEPROM_WRITE, b"", timeout)
            logger.info("Settings saved to EEPROM")
            return ConfigWriteResult(True, False, "Settings saved to EEPROM")
        except LinkError as e:
            if not isinstance(e, Unsupported) and "not supported" not in str(e):
                logger.error("EEPROM save failed: %s", e)
                return ConfigWriteResult(False, False, str(e))
            logger.warning("MSP EEPROM_WRITE not supported, trying CLI...")

    return _save_via_cli(connection)
