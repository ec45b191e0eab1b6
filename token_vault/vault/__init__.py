"""Token Vault — At-rest encryption of OAuth credentials.

Security Note (Threat Model):
    The derived key lives in process memory for the process lifetime.
    A memory dump of the application process could expose it, and with it
    every stored token. This is an accepted limitation; mitigation requires
    HSM integration which is out of scope.

    Telling plaintext from ciphertext relies on the envelope shape (and on
    the record ``encrypted`` flag where the table has one). A plaintext
    value shaped exactly like an envelope is misclassified.
"""

from .config import VaultConfig, VaultKey, generate_passphrase
from .service import EncryptionService
from .migration import MigrationOrchestrator, MigrationState, MigrationSummary
from .stores import PostgresTokenStore, TokenStore

__all__ = [
    "VaultConfig",
    "VaultKey",
    "generate_passphrase",
    "EncryptionService",
    "MigrationOrchestrator",
    "MigrationState",
    "MigrationSummary",
    "PostgresTokenStore",
    "TokenStore",
]
