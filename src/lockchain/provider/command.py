"""Run the real ``zfs``/``zpool`` binaries with a bounded timeout."""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from lockchain.core.exceptions import ProviderError

logger = logging.getLogger(__name__)


@dataclass
class Output:
    stdout: str
    stderr: str
    status: int

    @property
    def diagnostic(self) -> str:
        # stderr wins, stdout as a fallback
        return self.stderr.strip() or self.stdout.strip()


class CommandRunner:
    """A binary path plus the per-call timeout."""

    def __init__(self, path: Path, timeout: float):
        self.path = Path(path)
        self.timeout = timeout

    @property
    def binary(self) -> Path:
        return self.path

    def run(self, args: Sequence[str], input: Optional[bytes] = None) -> Output:
        """Execute the binary; a timeout or spawn failure raises ProviderError."""
        cmd = [str(self.path), *args]
        logger.debug("running %s", " ".join(cmd))
        try:
            proc = subprocess.run(
                cmd,
                input=None if input is None else bytes(input),
                capture_output=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise ProviderError(f"{self.path} timed out after {self.timeout}s") from e
        except OSError as e:
            raise ProviderError(f"failed to execute {self.path}: {e}") from e

        return Output(
            stdout=proc.stdout.decode("utf-8", errors="replace"),
            stderr=proc.stderr.decode("utf-8", errors="replace"),
            status=proc.returncode,
        )
