"""Security helpers: key files, key material ownership and fallback derivation.

This package provides:
- 32-byte key material with explicit ownership and wiping
- USB key file normalisation (hex -> raw, 0400) and checksum verification
- PBKDF2-HMAC-SHA256 fallback derivation
- a single-checkout slot that serialises access to decrypted keys
"""

from .kdf import generate_salt, derive_fallback_key, build_fallback_material
from .keyfile import decode_key_bytes, read_key_file, write_raw_key_file, load_usb_key
from .material import KEY_LENGTH, KeyMaterial
from .session import KeySession
from .source import KeySource, ORIGIN_FALLBACK, ORIGIN_USB

__all__ = [
    "generate_salt",
    "derive_fallback_key",
    "build_fallback_material",
    "decode_key_bytes",
    "read_key_file",
    "write_raw_key_file",
    "load_usb_key",
    "KEY_LENGTH",
    "KeyMaterial",
    "KeySession",
    "KeySource",
    "ORIGIN_FALLBACK",
    "ORIGIN_USB",
]
