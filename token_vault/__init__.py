"""Token Vault.

Encrypts OAuth credentials at rest and migrates legacy plaintext tokens.
"""
from .version import __version__
from .exceptions import (
    VaultError,
    ConfigurationError,
    EncryptionError,
    DecryptionError,
    MigrationValidationError,
    MigrationAborted,
)
from .vault import (
    VaultConfig,
    EncryptionService,
    MigrationOrchestrator,
    MigrationSummary,
)
from .data import EncryptedField, OAuthTokenRecord

__all__ = (
    "__version__",
    "VaultError",
    "ConfigurationError",
    "EncryptionError",
    "DecryptionError",
    "MigrationValidationError",
    "MigrationAborted",
    "VaultConfig",
    "EncryptionService",
    "MigrationOrchestrator",
    "MigrationSummary",
    "EncryptedField",
    "OAuthTokenRecord",
)
