"""Convenience entry point to run the lockchain daemon.

Allows starting the daemon with `python main.py --config ...` from the project root.
"""

from __future__ import annotations

import sys
from pathlib import Path

# Ensure the src/ directory is on sys.path so `import lockchain` works
ROOT = Path(__file__).resolve().parent
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from lockchain.daemon.service import main


if __name__ == "__main__":
    sys.exit(main())
