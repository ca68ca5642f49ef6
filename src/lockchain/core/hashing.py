""" Utility for key fingerprinting. """

import hashlib


def calculate_sha256_bytes(data) -> str:
    # accepts bytes, bytearray or memoryview without copying to an immutable buffer
    return hashlib.sha256(data).hexdigest()


def checksums_match(expected: str, actual: str) -> bool:
    """Case-insensitive comparison of two hex digests."""
    return expected.strip().lower() == actual.strip().lower()
