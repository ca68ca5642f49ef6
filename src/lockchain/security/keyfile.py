"""Key file parsing and persistence.

A key file holds either 32 raw bytes or 64 hex digits (whitespace ignored).
Hex files are normalised to raw bytes on first read: the file is rewritten
atomically and its mode set to 0400. Reading a raw file never writes.
"""
import logging
import os
import string
import tempfile
from pathlib import Path
from typing import Optional, Tuple

from lockchain.core.exceptions import ChecksumMismatch, InvalidKeyFormat, MissingKeySource
from lockchain.core.hashing import checksums_match

from .material import KEY_LENGTH, KeyMaterial, _zero

logger = logging.getLogger(__name__)

KEY_FILE_MODE = 0o400
_HEX_DIGITS = frozenset(string.hexdigits.encode("ascii"))
_WHITESPACE = frozenset(string.whitespace.encode("ascii"))


def decode_key_bytes(origin, data) -> Tuple[bytearray, bool]:
    """Decode *data* into a 32-byte buffer.

    Returns ``(raw, converted)`` where ``converted`` is True when the input
    was hex and had to be normalised.
    """
    if len(data) == KEY_LENGTH:
        return bytearray(data), False

    if not data:
        raise InvalidKeyFormat(f"failed to decode key at {origin}: file is empty")

    digits = bytearray()
    try:
        for byte in data:
            if byte in _WHITESPACE:
                continue
            if byte not in _HEX_DIGITS:
                raise InvalidKeyFormat(
                    f"failed to decode key at {origin}: found non-hex byte 0x{byte:02x}"
                )
            digits.append(byte)

        if len(digits) != KEY_LENGTH * 2:
            raise InvalidKeyFormat(
                f"failed to decode key at {origin}: hex key must contain exactly "
                f"{KEY_LENGTH * 2} hex digits (got {len(digits)})"
            )
        return bytearray.fromhex(digits.decode("ascii")), True
    finally:
        _zero(digits)


def read_key_file(path) -> Tuple[bytearray, bool]:
    path = Path(path)
    try:
        with open(path, "rb") as f:
            data = bytearray(f.read())
    except FileNotFoundError as e:
        raise MissingKeySource(f"key file {path} not found") from e
    except OSError as e:
        raise MissingKeySource(f"key file {path} unreadable: {e}") from e
    try:
        return decode_key_bytes(path, data)
    finally:
        _zero(data)


def write_raw_key_file(path, key) -> None:
    """Atomically write raw key bytes to *path* with owner-read-only mode."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
    try:
        os.fchmod(fd, 0o600)
        with os.fdopen(fd, "wb") as out:
            out.write(key)
            out.flush()
            os.fsync(out.fileno())
        os.chmod(tmp_name, KEY_FILE_MODE)
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


def verify_checksum(key: KeyMaterial, expected: Optional[str]) -> None:
    if expected is None:
        logger.warning("usb.expected_sha256 not configured; skipping checksum verification")
        return
    actual = key.fingerprint()
    if not checksums_match(expected, actual):
        raise ChecksumMismatch(
            f"usb.expected_sha256 mismatch: expected {expected.lower()}, got {actual}"
        )


def load_usb_key(path, expected_checksum: Optional[str] = None) -> KeyMaterial:
    """Read the key file at *path*, normalise it, and verify its checksum.

    On checksum mismatch the decoded bytes are wiped before raising and the
    file is left untouched.
    """
    raw, converted = read_key_file(path)
    key = KeyMaterial.adopt(raw)
    try:
        verify_checksum(key, expected_checksum)
        if converted:
            write_raw_key_file(path, key.view())
            logger.info("normalised hex key at %s to raw bytes (mode 0400)", path)
    except BaseException:
        key.wipe()
        raise
    return key


def key_file_mode(path) -> int:
    return os.stat(path).st_mode & 0o777
