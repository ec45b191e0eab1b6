"""
Vault Crypto Core — Key derivation, envelope encryption and classification.

Envelope format (opaque text, stored as-is in a TEXT column):
    base64(iv 16B) ":" base64(auth_tag 16B) ":" base64(ciphertext)

- Key derivation: PBKDF2-HMAC-SHA256(passphrase, salt, 100000) → 32-byte key
- Encryption: AES-256-GCM, 128-bit random IV, no associated data

Envelopes are byte-compatible with the ones written by the previous
Node.js service, so existing rows keep decrypting after the switch.

Security Note:
    Never log plaintext, ciphertext or key material.
    IVs are random 128-bit; collision probability negligible under normal usage.
"""
import os
import re
import base64
import binascii
import hashlib
import secrets
import logging

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..exceptions import ConfigurationError

logger = logging.getLogger("token_vault")

IV_SIZE = 16  # 128-bit IV, as written by the legacy service
TAG_SIZE = 16  # GCM authentication tag
KEY_LENGTH = 32  # AES-256
PBKDF2_ITERATIONS = 100_000
ENVELOPE_SEPARATOR = ":"

_BASE64_SEGMENT = re.compile(r"^[A-Za-z0-9+/]+=*$")


# ---------------------------------------------------------------------------
# Key derivation
# ---------------------------------------------------------------------------

def derive_key(
    passphrase: str,
    salt: str,
    iterations: int = PBKDF2_ITERATIONS,
) -> bytes:
    """Derive a 32-byte encryption key using PBKDF2-HMAC-SHA256.

    Args:
        passphrase: Operator-supplied secret (ENCRYPTION_KEY).
        salt: Per-installation salt (ENCRYPTION_SALT).
        iterations: PBKDF2 work factor, never below 100000.

    Returns:
        32-byte derived key.

    Raises:
        ConfigurationError: If the passphrase is empty or the iteration
            count is below the minimum.
    """
    if not passphrase:
        raise ConfigurationError("Encryption passphrase is required")
    if iterations < PBKDF2_ITERATIONS:
        raise ConfigurationError(
            f"PBKDF2 iterations must be at least {PBKDF2_ITERATIONS}, "
            f"got {iterations}"
        )
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=salt.encode("utf-8"),
        iterations=iterations,
    )
    return kdf.derive(passphrase.encode("utf-8"))


def key_fingerprint(key: bytes) -> str:
    """Short, non-reversible identifier of a key, safe to log."""
    return hashlib.sha256(key).hexdigest()[:12]


# ---------------------------------------------------------------------------
# Envelope codec
# ---------------------------------------------------------------------------

def encode_envelope(iv: bytes, tag: bytes, ciphertext: bytes) -> str:
    """Join the three envelope parts into their text form."""
    return ENVELOPE_SEPARATOR.join(
        base64.b64encode(part).decode("ascii") for part in (iv, tag, ciphertext)
    )


def decode_envelope(envelope: str) -> tuple[bytes, bytes, bytes]:
    """Split an envelope back into (iv, tag, ciphertext).

    Raises:
        ValueError: If the envelope is not three valid base64 segments
            or the IV/tag have the wrong length.
    """
    parts = envelope.split(ENVELOPE_SEPARATOR)
    if len(parts) != 3:
        raise ValueError("Invalid encrypted data format")
    try:
        iv, tag, ciphertext = (
            base64.b64decode(part, validate=True) for part in parts
        )
    except (binascii.Error, ValueError) as err:
        raise ValueError("Invalid base64 segment in envelope") from err
    if len(iv) != IV_SIZE:
        raise ValueError("Invalid IV length")
    if len(tag) != TAG_SIZE:
        raise ValueError("Invalid auth tag length")
    return iv, tag, ciphertext


def looks_like_envelope(value: object) -> bool:
    """Loose shape check: three colon-separated base64-alphabet segments.

    This is what the legacy service used to decide a value was encrypted.
    """
    if not isinstance(value, str) or not value:
        return False
    parts = value.split(ENVELOPE_SEPARATOR)
    if len(parts) != 3:
        return False
    return all(_BASE64_SEGMENT.match(part) for part in parts)


def is_envelope(value: object) -> bool:
    """Strict structural check; never attempts decryption.

    A value is an envelope when it has the loose shape and its first two
    segments decode to a 16-byte IV and a 16-byte tag.
    """
    if not looks_like_envelope(value):
        return False
    try:
        decode_envelope(value)  # type: ignore[arg-type]
    except ValueError:
        return False
    return True


# ---------------------------------------------------------------------------
# AEAD
# ---------------------------------------------------------------------------

def encrypt_value(plaintext: bytes, key: bytes) -> str:
    """Encrypt plaintext into a text envelope with a fresh IV.

    Args:
        plaintext: Data to encrypt.
        key: Raw 32-byte key.

    Returns:
        Envelope string ``iv:tag:ciphertext``.
    """
    cipher = AESGCM(key)
    iv = os.urandom(IV_SIZE)
    sealed = cipher.encrypt(iv, plaintext, None)
    # cryptography appends the tag to the ciphertext
    ciphertext, tag = sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]
    return encode_envelope(iv, tag, ciphertext)


def decrypt_value(envelope: str, key: bytes) -> bytes:
    """Decrypt a text envelope, verifying its authentication tag.

    Args:
        envelope: Envelope string ``iv:tag:ciphertext``.
        key: Raw 32-byte key.

    Returns:
        Decrypted plaintext bytes.

    Raises:
        ValueError: If the envelope is malformed.
        cryptography.exceptions.InvalidTag: On tampering or wrong key.
    """
    iv, tag, ciphertext = decode_envelope(envelope)
    cipher = AESGCM(key)
    return cipher.decrypt(iv, ciphertext + tag, None)


# ---------------------------------------------------------------------------
# Hashing and random tokens
# ---------------------------------------------------------------------------

def sha256_hex(value: str) -> str:
    """One-way SHA-256 digest, hex encoded."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def random_token(length: int = 32, encoding: str = "hex") -> str:
    """Cryptographically secure random token.

    Args:
        length: Number of random bytes.
        encoding: ``hex`` (2 chars per byte) or ``base64`` (urlsafe, unpadded).
    """
    if length < 1:
        raise ValueError("Token length must be a positive number of bytes")
    if encoding == "hex":
        return secrets.token_hex(length)
    if encoding == "base64":
        return secrets.token_urlsafe(length)
    raise ValueError(f"Unsupported token encoding: {encoding}")
