"""
Token Vault exceptions.

Messages are categorical on purpose: they cross into request handlers and
operator output, so they never carry ciphertext, plaintext or key material.
The underlying cause is chained with ``raise ... from err`` and logged
server-side.
"""
from typing import Any


class VaultError(Exception):
    """Base class for every error raised by token_vault."""


class ConfigurationError(VaultError, RuntimeError):
    """Missing, weak or reused key material.

    Fatal at startup: the process must refuse to run.
    """


class EncryptionError(VaultError):
    """The cipher failed on well-formed input."""

    def __init__(self, message: str = "Failed to encrypt data"):
        super().__init__(message)


class DecryptionError(VaultError):
    """Tampered, malformed or foreign-key envelope."""

    def __init__(self, message: str = "Failed to decrypt data"):
        super().__init__(message)


class MigrationValidationError(VaultError):
    """An encrypted value did not decrypt back to its original plaintext."""


class MigrationAborted(VaultError):
    """A commit-mode migration was rolled back.

    Attributes:
        summary: the MigrationSummary at the moment of the abort.
    """

    def __init__(self, message: str, summary: Any = None):
        super().__init__(message)
        self.summary = summary
