"""
Storage provider contract.

The workflow engine talks to the encrypted storage system only through this
interface. Concrete adapters (``SystemZfsProvider`` shelling out to the
``zfs``/``zpool`` binaries, ``InMemoryProvider`` for tests and dry runs)
must honour the ordering and error-kind rules documented on each method.
Every method raises ``ProviderError`` on an underlying-system failure.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List, Sequence

from lockchain.core.exceptions import ProviderError
from lockchain.core.models import KeyStatusSnapshot


class StorageProvider(ABC):

    @abstractmethod
    def encryption_root(self, dataset: str) -> str:
        """Return the dataset that owns the key for *dataset*.

        Raises DatasetNotFound if the storage system does not know it.
        """

    @abstractmethod
    def locked_descendants(self, root: str) -> List[str]:
        """Datasets under *root* (root included) sharing its key and still sealed.

        Order: parent before children, lexical among siblings.
        """

    @abstractmethod
    def load_key_tree(self, root: str, key) -> List[str]:
        """Load *key* into *root*, then each locked descendant sharing it.

        Returns the datasets confirmed unlocked, root first. A descendant that
        refuses the key is left out of the result rather than raising; failure
        on the root itself raises ProviderError.
        """

    @abstractmethod
    def describe_datasets(self, datasets: Sequence[str]) -> KeyStatusSnapshot:
        """One descriptor per input dataset, in input order, duplicates kept."""

    # ------------------------------------------------------------------
    # Scratch datasets for self-test (optional)
    # ------------------------------------------------------------------

    def create_scratch_dataset(self, key) -> str:
        raise ProviderError(f"{type(self).__name__} does not support scratch datasets")

    def unload_key(self, dataset: str) -> None:
        raise ProviderError(f"{type(self).__name__} does not support unload-key")

    def destroy_scratch_dataset(self, dataset: str) -> None:
        raise ProviderError(f"{type(self).__name__} does not support scratch datasets")
