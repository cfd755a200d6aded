# SPDX-License-Identifier: MIT
# Copyright (c) 2026 ADNT Sarl <info@adnt.io>

"""
Firmware image loading.

Two artifact formats are accepted:

- ``.apj``: ArduPilot JSON container. ``image`` holds the base64 text of
  a deflate-compressed binary, ``image_size`` its decompressed length and
  ``board_id`` the target board (optional).
- anything else: raw binary.

Either way the result is a ``FirmwareImage`` whose bytes are zero-padded
to a 4-byte boundary, as required by PROG_MULTI.
"""

import base64
import binascii
import json
import zlib
from dataclasses import dataclass
from pathlib import Path
from typing import Union

from .errors import MalformedFirmware


@dataclass(frozen=True)
class FirmwareImage:
    """Decoded firmware ready to be programmed."""
    image: bytes
    declared_size: int
    board_id: int = 0

    def __len__(self) -> int:
        return len(self.image)


def _align4(size: int) -> int:
    return (size + 3) & ~3


def _inflate(compressed: bytes) -> bytes:
    try:
        return zlib.decompress(compressed)
    except zlib.error:
        pass
    try:
        return zlib.decompress(compressed, -zlib.MAX_WBITS)
    except zlib.error as e:
        raise MalformedFirmware(f"APJ decompression failed: {e}") from e


def load_apj(data: Union[bytes, str]) -> FirmwareImage:
    """
    Decode an APJ document.

    Args:
        data: APJ file content (UTF-8 JSON)

    Returns:
        FirmwareImage padded to the aligned ``image_size``

    Raises:
        MalformedFirmware: If JSON, base64 or compression is invalid,
            or a required field is missing
    """
    try:
        doc = json.loads(data)
    except (ValueError, UnicodeDecodeError) as e:
        raise MalformedFirmware(f"Invalid APJ file: {e}") from e

    if not isinstance(doc, dict) or not doc.get("image") or doc.get("image_size") is None:
        raise MalformedFirmware("Invalid APJ file: missing image or image_size field")

    try:
        image_size = int(doc["image_size"])
        board_id = int(doc.get("board_id") or 0)
        compressed = base64.b64decode(doc["image"], validate=False)
    except (TypeError, ValueError, binascii.Error) as e:
        raise MalformedFirmware(f"Invalid APJ file: {e}") from e
    if image_size < 0:
        raise MalformedFirmware("Invalid APJ file: negative image_size")

    raw = _inflate(compressed)

    padded_size = _align4(image_size)
    image = raw[:padded_size].ljust(padded_size, b"\x00")

    return FirmwareImage(image=image, declared_size=image_size, board_id=board_id)


def load_binary(data: bytes) -> FirmwareImage:
    """Wrap a raw binary, zero-padded to 4-byte alignment."""
    return FirmwareImage(
        image=bytes(data).ljust(_align4(len(data)), b"\x00"),
        declared_size=len(data),
    )


def load_firmware(path: Union[str, Path]) -> FirmwareImage:
    """
    Load a firmware artifact from disk.

    Args:
        path: Path to a ``.apj`` container or a raw binary

    Returns:
        FirmwareImage

    Raises:
        MalformedFirmware: If an APJ file cannot be decoded
        FileNotFoundError: If the file does not exist
    """
    path = Path(path)
    if path.suffix.lower() == ".apj":
        return load_apj(path.read_bytes())
    return load_binary(path.read_bytes())


def encode_apj(image: bytes, board_id: int = 0) -> str:
    """
    Build an APJ document around a raw image.

    Args:
        image: Raw firmware bytes
        board_id: Target board id (0 for any)

    Returns:
        APJ JSON text
    """
    doc = {
        "board_id": board_id,
        "image_size": len(image),
        "image": base64.b64encode(zlib.compress(bytes(image), 9)).decode("ascii"),
    }
    return json.dumps(doc, indent=4)
