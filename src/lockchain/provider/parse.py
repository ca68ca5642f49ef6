"""Helpers for turning ``zfs``/``zpool`` tabular output into Python values."""

from typing import List, Optional, Tuple

from lockchain.core.models import KeyState


def parse_tabular_pairs(output: str) -> List[Tuple[str, str]]:
    """Turn ``-H -o name,value`` style output into (name, value) pairs."""
    pairs = []
    for line in output.splitlines():
        pair = _parse_pair_line(line)
        if pair is not None:
            pairs.append(pair)
    return pairs


def _parse_pair_line(line: str) -> Optional[Tuple[str, str]]:
    trimmed = line.strip()
    if not trimmed:
        return None

    if "\t" in trimmed:
        left, right = trimmed.split("\t", 1)
        name = left.strip()
        if not name:
            return None
        return name, right.strip()

    parts = trimmed.split()
    if len(parts) < 2:
        return None
    # keep any extra columns stitched back into the value
    return parts[0], " ".join(parts[1:])


def pool_from_dataset(dataset: str) -> Optional[str]:
    """Peel the pool name off a dataset identifier."""
    candidate = dataset.split("/", 1)[0]
    return candidate or None


def parse_keystatus(value: str) -> KeyState:
    value = value.strip().lower()
    if value == "available":
        return KeyState.UNLOCKED
    if value in ("unavailable", "absent", "missing"):
        return KeyState.LOCKED
    return KeyState.UNAVAILABLE


def hierarchy_key(dataset: str) -> Tuple[str, ...]:
    # parent sorts before its children, siblings lexically
    return tuple(dataset.split("/"))
