"""
Vault Configuration — Passphrase loading, validation and key derivation.

Reads key material from environment variables:
    ENCRYPTION_KEY = <passphrase, >= 32 characters in production>
    ENCRYPTION_SALT = <per-installation salt>
    ENCRYPTION_ITERATIONS = <PBKDF2 iterations, >= 100000>
    APP_ENV (or NODE_ENV) = production | development | ...
    JWT_SECRET = <session-signing secret, only compared, never kept>

Any weakness in the key material is a ConfigurationError: the process must
refuse to start rather than run with a weak or reused key.

Security Note:
    Never log key material. Only log the key fingerprint.
"""
import os
import secrets
import logging
from typing import Optional

from pydantic import (
    BaseModel,
    Field,
    SecretStr,
    ValidationError,
    model_validator,
)

from ..exceptions import ConfigurationError
from .crypto import PBKDF2_ITERATIONS, KEY_LENGTH, derive_key, key_fingerprint

logger = logging.getLogger("token_vault")

# Salt used by installations that never set ENCRYPTION_SALT; kept so their
# existing envelopes still decrypt.
DEFAULT_SALT = "orangeprivacy-default-salt-change-in-production"
MIN_PRODUCTION_PASSPHRASE = 32
_PLACEHOLDER_MARKERS = ("change_in_production", "changeme")
_PRODUCTION_NAMES = ("prod", "production")


def generate_passphrase() -> str:
    """Generate a random passphrase suitable for ENCRYPTION_KEY.

    This is a utility for operators to generate new keys.

    Returns:
        URL-safe random string (64 characters).
    """
    return secrets.token_urlsafe(48)


def get_environment() -> str:
    """Name of the running environment, from APP_ENV or NODE_ENV."""
    return (
        os.environ.get("APP_ENV")
        or os.environ.get("NODE_ENV")
        or "development"
    ).strip().lower()


class VaultKey(BaseModel):
    """Derived key material, immutable for the process lifetime."""

    key: bytes = Field(repr=False, min_length=KEY_LENGTH, max_length=KEY_LENGTH)
    fingerprint: str

    model_config = {"frozen": True}

    @classmethod
    def from_bytes(cls, key: bytes) -> "VaultKey":
        return cls(key=key, fingerprint=key_fingerprint(key))


class VaultConfig(BaseModel):
    """Validated vault configuration."""

    passphrase: SecretStr
    salt: str = Field(default=DEFAULT_SALT, min_length=1)
    iterations: int = Field(default=PBKDF2_ITERATIONS, ge=PBKDF2_ITERATIONS)
    environment: str = Field(default="development")
    signing_secret: Optional[SecretStr] = Field(default=None, repr=False)

    model_config = {"frozen": True}

    @property
    def is_production(self) -> bool:
        return self.environment.lower() in _PRODUCTION_NAMES

    @model_validator(mode="after")
    def validate_passphrase(self) -> "VaultConfig":
        """Reject absent, weak or reused passphrases."""
        passphrase = self.passphrase.get_secret_value()
        if not passphrase.strip():
            raise ConfigurationError(
                "ENCRYPTION_KEY environment variable is required "
                "for OAuth token encryption"
            )
        if (
            self.signing_secret is not None
            and passphrase == self.signing_secret.get_secret_value()
        ):
            raise ConfigurationError(
                "ENCRYPTION_KEY must differ from JWT_SECRET"
            )
        if self.is_production:
            if len(passphrase) < MIN_PRODUCTION_PASSPHRASE:
                raise ConfigurationError(
                    f"ENCRYPTION_KEY must be at least "
                    f"{MIN_PRODUCTION_PASSPHRASE} characters in production"
                )
            lowered = passphrase.lower()
            if any(marker in lowered for marker in _PLACEHOLDER_MARKERS):
                raise ConfigurationError(
                    "ENCRYPTION_KEY contains a default/example value"
                )
        return self

    def derive(self) -> VaultKey:
        """Run the KDF once and return the resulting key."""
        key = VaultKey.from_bytes(
            derive_key(
                self.passphrase.get_secret_value(),
                self.salt,
                self.iterations,
            )
        )
        logger.info(
            "Derived vault key %s (iterations=%d, env=%s)",
            key.fingerprint, self.iterations, self.environment,
        )
        return key

    @classmethod
    def from_env(cls) -> "VaultConfig":
        """Create VaultConfig by loading values from environment.

        Returns:
            Populated VaultConfig instance.

        Raises:
            ConfigurationError: If any value is missing or invalid.
        """
        passphrase = os.environ.get("ENCRYPTION_KEY")
        if passphrase is None:
            raise ConfigurationError(
                "ENCRYPTION_KEY environment variable is required "
                "for OAuth token encryption"
            )
        environment = get_environment()
        salt = os.environ.get("ENCRYPTION_SALT")
        if not salt:
            if environment in _PRODUCTION_NAMES:
                logger.warning(
                    "ENCRYPTION_SALT is not set; using the installation "
                    "default salt"
                )
            salt = DEFAULT_SALT
        raw_iterations = os.environ.get("ENCRYPTION_ITERATIONS")
        try:
            iterations = int(raw_iterations) if raw_iterations else PBKDF2_ITERATIONS
        except ValueError:
            raise ConfigurationError(
                "ENCRYPTION_ITERATIONS must be an integer"
            ) from None
        signing_secret = os.environ.get("JWT_SECRET") or None
        try:
            return cls(
                passphrase=passphrase,
                salt=salt,
                iterations=iterations,
                environment=environment,
                signing_secret=signing_secret,
            )
        except ValidationError as err:
            # error inputs may echo the passphrase, keep them out of the chain
            fields = ", ".join(
                ".".join(str(loc) for loc in error["loc"]) or "config"
                for error in err.errors()
            )
            raise ConfigurationError(
                f"Invalid vault configuration: {fields}"
            ) from None
