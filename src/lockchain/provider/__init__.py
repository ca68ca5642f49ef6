"""Storage provider contract and adapters."""

from .base import StorageProvider
from .memory import InMemoryProvider
from .system import SystemZfsProvider

__all__ = ["StorageProvider", "InMemoryProvider", "SystemZfsProvider"]
