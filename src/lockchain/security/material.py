"""Owned, wipeable container for 32-byte key material.

KeyMaterial keeps the secret in a mutable ``bytearray`` so it can be zeroed
in place. Ownership is explicit: ``take()`` moves the bytes into a new
object and leaves the original empty, so only one holder can wipe them.
The repr never shows the bytes.
"""
from __future__ import annotations

import hmac
from typing import Optional

from lockchain.core.hashing import calculate_sha256_bytes

KEY_LENGTH = 32


class KeyMaterial:
    __slots__ = ("_buf",)

    def __init__(self, data):
        buf = bytearray(data)
        if len(buf) != KEY_LENGTH:
            length = len(buf)
            _zero(buf)
            raise ValueError(f"key material must be {KEY_LENGTH} bytes (got {length})")
        self._buf: Optional[bytearray] = buf

    @classmethod
    def adopt(cls, buf: bytearray) -> "KeyMaterial":
        """Wrap *buf* without copying; the caller must not keep a reference."""
        if len(buf) != KEY_LENGTH:
            length = len(buf)
            _zero(buf)
            raise ValueError(f"key material must be {KEY_LENGTH} bytes (got {length})")
        obj = cls.__new__(cls)
        obj._buf = buf
        return obj

    @property
    def wiped(self) -> bool:
        return self._buf is None

    def view(self) -> memoryview:
        """Read-only view for handing the key to a provider call."""
        return memoryview(self._require()).toreadonly()

    def fingerprint(self) -> str:
        """SHA-256 of the key, safe to log."""
        return calculate_sha256_bytes(self._require())

    def take(self) -> "KeyMaterial":
        """Move ownership of the bytes into a new object."""
        buf = self._require()
        self._buf = None
        return KeyMaterial.adopt(buf)

    def wipe(self) -> None:
        if self._buf is not None:
            _zero(self._buf)
            self._buf = None

    def _require(self) -> bytearray:
        if self._buf is None:
            raise RuntimeError("key material has been wiped or moved")
        return self._buf

    def __len__(self) -> int:
        return 0 if self._buf is None else len(self._buf)

    def __eq__(self, other):
        if not isinstance(other, KeyMaterial):
            return NotImplemented
        if self._buf is None or other._buf is None:
            return False
        return hmac.compare_digest(self._buf, other._buf)

    __hash__ = None

    def __enter__(self) -> "KeyMaterial":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.wipe()

    def __repr__(self) -> str:
        state = "wiped" if self._buf is None else f"{KEY_LENGTH} bytes"
        return f"KeyMaterial(<redacted, {state}>)"

    def __del__(self):
        if getattr(self, "_buf", None) is not None:
            self.wipe()


def _zero(buf: bytearray) -> None:
    for i in range(len(buf)):
        buf[i] = 0
