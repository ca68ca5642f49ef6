"""Emergency key derivation for lockchain."""
import os
from typing import Tuple

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from lockchain.core.exceptions import DerivationFailed

from .material import KEY_LENGTH, KeyMaterial, _zero


def generate_salt(length: int = 16) -> bytes:
    """Return a cryptographically secure random salt."""
    return os.urandom(length)


def _as_bytes(value, label: str) -> bytes:
    if isinstance(value, str):
        try:
            return bytes.fromhex(value.strip())
        except ValueError as e:
            raise DerivationFailed(f"invalid {label}: {e}") from e
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    raise DerivationFailed(f"invalid {label}: expected hex string or bytes")


def _pbkdf2(passphrase: bytes, salt: bytes, iterations: int) -> bytearray:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=salt,
        iterations=iterations,
    )
    return bytearray(kdf.derive(passphrase))


def derive_fallback_key(passphrase, salt, xor_blob, iterations: int) -> KeyMaterial:
    """
    Reconstruct the raw key from a passphrase.

    PBKDF2-HMAC-SHA256 over ``passphrase``/``salt`` yields a 32-byte stream
    that is XORed with ``xor_blob``. ``salt`` and ``xor_blob`` may be given
    as hex strings (as stored in config) or bytes.
    """
    if isinstance(passphrase, str):
        passphrase = passphrase.encode("utf-8")

    salt_bytes = _as_bytes(salt, "fallback.passphrase_salt")
    cipher = _as_bytes(xor_blob, "fallback.passphrase_xor")
    if not salt_bytes:
        raise DerivationFailed("fallback.passphrase_salt must not be empty")
    if len(cipher) != KEY_LENGTH:
        raise DerivationFailed(
            f"fallback.passphrase_xor length must be {KEY_LENGTH} bytes, got {len(cipher)}"
        )
    if iterations < 1:
        raise DerivationFailed("fallback.passphrase_iters must be at least 1")

    derived = _pbkdf2(bytes(passphrase), salt_bytes, iterations)
    try:
        raw = bytearray(c ^ d for c, d in zip(cipher, derived))
    finally:
        _zero(derived)
    return KeyMaterial.adopt(raw)


def build_fallback_material(key, passphrase, iterations: int, salt: bytes | None = None) -> Tuple[str, str]:
    """
    Produce ``(salt_hex, xor_hex)`` config values that let
    derive_fallback_key() reconstruct *key* from *passphrase*.
    """
    if isinstance(passphrase, str):
        passphrase = passphrase.encode("utf-8")
    if isinstance(key, KeyMaterial):
        key = key.view()
    if len(key) != KEY_LENGTH:
        raise DerivationFailed(f"key must be {KEY_LENGTH} bytes, got {len(key)}")
    if salt is None:
        salt = generate_salt()

    derived = _pbkdf2(bytes(passphrase), bytes(salt), iterations)
    try:
        xor = bytes(k ^ d for k, d in zip(key, derived))
    finally:
        _zero(derived)
    return bytes(salt).hex(), xor.hex()


def kdf_params_to_dict(salt: bytes, iterations: int) -> dict:
    return {
        "algo": "pbkdf2-hmac-sha256",
        "salt": salt.hex(),
        "iterations": iterations,
        "length": KEY_LENGTH,
    }
