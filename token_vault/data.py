"""
Persistence boundary for encrypted OAuth credentials.

The model layer never calls the cipher directly: designated columns go
through an ``EncryptedField`` codec on the way in (``to_storage``) and on
the way out (``from_storage``). Reads never raise into business logic; an
undecryptable token comes back as None and the user re-authenticates.
"""
from typing import Optional
from datetime import datetime

from pydantic import BaseModel, Field

from .vault.service import EncryptionService


class EncryptedField:
    """Codec for a single encrypted text column.

    Args:
        service: EncryptionService holding the process key.
        allow_plaintext: return legacy (not yet migrated) plaintext
            values as-is on read. Switch off once the migration ran.
    """

    def __init__(self, service: EncryptionService, allow_plaintext: bool = True):
        self._service = service
        self.allow_plaintext = allow_plaintext

    def to_storage(self, value: Optional[str]) -> Optional[str]:
        if not value:
            return None
        if self._service.is_encrypted(value):
            # never double-encrypt
            return value
        return self._service.encrypt(value)

    def from_storage(
        self,
        value: Optional[str],
        sealed: Optional[bool] = None,
    ) -> Optional[str]:
        """Readable value, or None.

        ``sealed`` is the record-level encrypted flag: when True a
        non-envelope value is corruption, not legacy plaintext.
        """
        if value is None:
            return None
        if self._service.is_encrypted(value):
            return self._service.decrypt_or_none(value)
        if sealed or not self.allow_plaintext:
            return None
        return value


class OAuthTokenRecord(BaseModel):
    """An ``oauth_tokens`` row.

    ``encrypted`` is the explicit marker for rows written through the
    codec; ``None`` means a legacy row whose state is only known by
    sniffing the stored values.
    """

    id: str
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_type: str = Field(default="Bearer")
    scope: Optional[str] = None
    expires_at: Optional[datetime] = None
    encrypted: Optional[bool] = None

    def seal(self, codec: EncryptedField) -> "OAuthTokenRecord":
        """Copy of this record ready to be written."""
        return self.model_copy(
            update={
                "access_token": codec.to_storage(self.access_token),
                "refresh_token": codec.to_storage(self.refresh_token),
                "encrypted": True,
            }
        )

    def unseal(self, codec: EncryptedField) -> "OAuthTokenRecord":
        """Copy of this record with readable tokens (None when unusable)."""
        return self.model_copy(
            update={
                "access_token": codec.from_storage(self.access_token, self.encrypted),
                "refresh_token": codec.from_storage(self.refresh_token, self.encrypted),
            }
        )

    @property
    def is_expired(self) -> bool:
        if self.expires_at is None:
            return False
        now = datetime.now(self.expires_at.tzinfo)
        return self.expires_at <= now
