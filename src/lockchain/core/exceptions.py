"""
Exceptions for the lockchain core
Every error carries a stable ``code`` so events and alerts can key off it.
"""


class LockchainError(Exception):
    # general container for errors
    code = "lockchain.error"

    def __init__(self, message: str = "", dataset: str | None = None):
        super().__init__(message)
        self.message = message
        self.dataset = dataset

    def __str__(self) -> str:
        if self.dataset and self.dataset not in self.message:
            return f"{self.message} (dataset {self.dataset})"
        return self.message


class ConfigError(LockchainError):
    # malformed or missing policy; fatal before any workflow runs
    code = "config.invalid"


class DatasetNotConfigured(LockchainError):
    # dataset requested but not declared in policy.datasets
    code = "config.dataset_not_configured"


class ConfirmationRequired(LockchainError):
    # recovery attempted without the confirmation sentinel
    code = "audit.confirmation_required"


class KeySourceError(LockchainError):
    # key material could not be produced; never retried
    code = "key.error"


class InvalidKeyFormat(KeySourceError):
    code = "key.invalid_format"


class ChecksumMismatch(KeySourceError):
    code = "key.checksum_mismatch"


class FallbackDisabled(KeySourceError):
    code = "key.fallback_disabled"


class DerivationFailed(KeySourceError):
    code = "key.derivation_failed"


class MissingKeySource(KeySourceError):
    # no usb key on disk and no usable fallback
    code = "key.missing"


class ProviderError(LockchainError):
    # underlying storage system failed; transient unless a subclass says otherwise
    code = "provider.error"

    def __init__(self, message: str = "", dataset: str | None = None, attempts: int = 0):
        super().__init__(message, dataset=dataset)
        self.attempts = attempts


class DatasetNotFound(ProviderError):
    # the storage system does not know the dataset; not transient
    code = "provider.dataset_not_found"


class DatasetNotEncrypted(ProviderError):
    # the dataset has no encryption root; retrying cannot help
    code = "provider.not_encrypted"


def is_transient(error: BaseException) -> bool:
    """Return True when *error* may succeed on a later attempt."""
    return isinstance(error, ProviderError) and not isinstance(error, (DatasetNotFound, DatasetNotEncrypted))
