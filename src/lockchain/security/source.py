"""Config-bound key source: removable media first, passphrase fallback second."""
from __future__ import annotations

import logging
import subprocess
from typing import Optional, Tuple

from lockchain.core.config import LockchainConfig
from lockchain.core.exceptions import DerivationFailed, FallbackDisabled, MissingKeySource

from .kdf import derive_fallback_key
from .keyfile import load_usb_key
from .material import KeyMaterial

logger = logging.getLogger(__name__)

ORIGIN_USB = "usb"
ORIGIN_FALLBACK = "fallback"


class KeySource:
    """Resolve key material according to the configured policy."""

    def __init__(self, config: LockchainConfig):
        self._config = config

    def load_usb(self) -> KeyMaterial:
        return load_usb_key(self._config.key_path, self._config.usb.expected_sha256)

    def derive_fallback(self, passphrase) -> KeyMaterial:
        fallback = self._config.fallback
        if not fallback.enabled:
            raise FallbackDisabled("fallback passphrase derivation is disabled by policy")
        if fallback.passphrase_salt is None:
            raise DerivationFailed("fallback.passphrase_salt missing")
        if fallback.passphrase_xor is None:
            raise DerivationFailed("fallback.passphrase_xor missing")
        return derive_fallback_key(
            passphrase,
            fallback.passphrase_salt,
            fallback.passphrase_xor,
            fallback.passphrase_iters,
        )

    def ask_passphrase(self, prompt: str = "Lockchain fallback passphrase:") -> str:
        """Prompt through the configured askpass helper (systemd-ask-password)."""
        fallback = self._config.fallback
        if not fallback.askpass or not fallback.askpass_path:
            raise MissingKeySource("fallback.askpass is not enabled")
        try:
            out = subprocess.run(
                [fallback.askpass_path, prompt],
                capture_output=True,
                check=True,
                timeout=self._config.usb.mount_timeout_secs * 6,
            )
        except (OSError, subprocess.SubprocessError) as e:
            raise MissingKeySource(f"askpass helper {fallback.askpass_path} failed: {e}") from e
        return out.stdout.decode("utf-8").rstrip("\r\n")

    def acquire(
        self,
        strict: bool = False,
        fallback_passphrase: Optional[str] = None,
        prompt: bool = False,
    ) -> Tuple[KeyMaterial, str]:
        """Return ``(material, origin)``.

        The USB key is tried first. Only a missing or unreadable key file
        allows the fallback path, and only when not ``strict``, fallback is
        enabled, and a passphrase was supplied (or ``prompt`` asks for one).
        Format and checksum errors always propagate.
        """
        try:
            return self.load_usb(), ORIGIN_USB
        except MissingKeySource as usb_error:
            if strict:
                logger.warning("strict mode: no fallback after usb failure (%s)", usb_error)
                raise
            if not self._config.fallback.enabled:
                raise
            if fallback_passphrase is None and prompt:
                fallback_passphrase = self.ask_passphrase()
            if fallback_passphrase is None:
                raise MissingKeySource(
                    f"{usb_error}; fallback enabled but no passphrase supplied"
                ) from usb_error
            logger.warning("usb key unavailable (%s); deriving fallback key", usb_error)
            return self.derive_fallback(fallback_passphrase), ORIGIN_FALLBACK
