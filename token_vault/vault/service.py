"""
EncryptionService — Stateless facade over the derived vault key.

Provides the public API of the vault:
- ``encrypt(plaintext)`` — seal a token into a fresh envelope
- ``decrypt(envelope)`` — open an envelope, raising DecryptionError on failure
- ``decrypt_or_none(envelope)`` — persistence-boundary read, never raises
- ``is_encrypted(value)`` — structural envelope check, no decryption
- ``hash(value)`` / ``generate_random_token(length)`` — auxiliary helpers

The service only holds the immutable key, so one instance is shared by all
threads and requests without locking.

Security Note:
    Never log plaintext or ciphertext values. Only log categories,
    lengths and the key fingerprint.
"""
import logging
from typing import Optional

from cryptography.exceptions import InvalidTag

from ..exceptions import EncryptionError, DecryptionError
from .config import VaultConfig, VaultKey
from .crypto import (
    encrypt_value,
    decrypt_value,
    is_envelope,
    sha256_hex,
    random_token,
)

logger = logging.getLogger("token_vault")


class EncryptionService:
    """Authenticated encryption of OAuth credentials.

    Usage::

        service = EncryptionService.from_env()
        envelope = service.encrypt(access_token)
        assert service.decrypt(envelope) == access_token
    """

    def __init__(self, key: VaultKey):
        self._key = key

    def __repr__(self) -> str:
        return f"<EncryptionService key={self._key.fingerprint}>"

    @property
    def fingerprint(self) -> str:
        return self._key.fingerprint

    # ------------------------------------------------------------------
    # Factories
    # ------------------------------------------------------------------

    @classmethod
    def from_config(cls, config: VaultConfig) -> "EncryptionService":
        """Derive the key once from a validated configuration."""
        return cls(config.derive())

    @classmethod
    def from_env(cls) -> "EncryptionService":
        """Load configuration from the environment and derive the key.

        Raises:
            ConfigurationError: If the key material is missing or weak.
        """
        return cls.from_config(VaultConfig.from_env())

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def encrypt(self, plaintext: Optional[str]) -> Optional[str]:
        """Encrypt a token string into an envelope.

        A missing secret is not an encryption target: ``None`` and the
        empty string return ``None`` without touching the cipher.

        Args:
            plaintext: Token to encrypt.

        Returns:
            Envelope ``iv:tag:ciphertext`` or None.

        Raises:
            TypeError: If plaintext is not a string.
            EncryptionError: If the cipher fails.
        """
        if plaintext is None or plaintext == "":
            return None
        if not isinstance(plaintext, str):
            raise TypeError(
                f"Plaintext must be a string, got {type(plaintext).__name__}"
            )
        try:
            return encrypt_value(plaintext.encode("utf-8"), self._key.key)
        except Exception as err:
            logger.error("Encryption error: %s", type(err).__name__)
            raise EncryptionError() from err

    def decrypt(self, envelope: str) -> str:
        """Decrypt an envelope and verify its authentication tag.

        Args:
            envelope: Envelope string produced by ``encrypt``.

        Returns:
            The original plaintext.

        Raises:
            DecryptionError: On malformed input, tampering or wrong key.
        """
        if not envelope or not isinstance(envelope, str):
            raise DecryptionError()
        try:
            return decrypt_value(envelope, self._key.key).decode("utf-8")
        except InvalidTag as err:
            raise DecryptionError() from err
        except ValueError as err:
            # malformed envelope, or non UTF-8 payload
            raise DecryptionError() from err

    def decrypt_or_none(self, envelope: Optional[str]) -> Optional[str]:
        """Decrypt for the persistence boundary.

        A token that cannot be decrypted is unusable: log it server-side
        and return None so the user is asked to re-authenticate.
        """
        if not envelope:
            return None
        try:
            return self.decrypt(envelope)
        except DecryptionError as err:
            cause = err.__cause__
            logger.warning(
                "Decryption error (%s); treating token as absent",
                type(cause).__name__ if cause else "invalid input",
            )
            return None

    def is_encrypted(self, value: object) -> bool:
        """Return True if value has the envelope structure.

        Heuristic only: a plaintext shaped exactly like an envelope is
        misclassified. Records carrying an explicit ``encrypted`` flag
        should rely on the flag first.
        """
        return is_envelope(value)

    def hash(self, value: str) -> str:
        """SHA-256 hex digest for values compared but never recovered.

        Raises:
            ValueError: If value is empty or not a string.
        """
        if not value or not isinstance(value, str):
            raise ValueError("Value must be a non-empty string")
        return sha256_hex(value)

    def generate_random_token(self, length: int = 32, encoding: str = "hex") -> str:
        """Random token of ``length`` bytes, hex or urlsafe-base64 encoded."""
        return random_token(length, encoding)
