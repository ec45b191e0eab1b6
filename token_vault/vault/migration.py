"""
Vault Token Migration — One-time encryption of legacy plaintext tokens.

Walks every stored token row inside a single transaction and encrypts the
plaintext access/refresh tokens it finds. Each new envelope is decrypted
again and compared with the original before it is staged.

- Dry run (default): everything is computed and validated, then rolled back.
- Commit: any record error rolls back the whole batch; only a clean pass
  commits.

The operation is idempotent: values already in envelope form are counted
and skipped. It must not run concurrently against the same store.

Security Note:
    Plaintext exists in memory only while its own row is processed.
    Never log plaintext or ciphertext values.
"""
import asyncio
import logging
from enum import Enum
from typing import Any, Optional
from collections.abc import Mapping, Sequence

import orjson
from pydantic import BaseModel, Field

from ..exceptions import (
    VaultError,
    MigrationAborted,
    MigrationValidationError,
)
from .crypto import looks_like_envelope
from .service import EncryptionService
from .stores import TokenStore

logger = logging.getLogger("token_vault.migration")

DEFAULT_FIELDS = ("access_token", "refresh_token")
COMMIT_DELAY = 5.0


class MigrationState(str, Enum):
    DRY_RUN = "dry_run"
    COMMIT = "commit"
    INSPECT = "inspect"
    ALREADY_ENCRYPTED = "already_encrypted"
    NEEDS_ENCRYPTION = "needs_encryption"
    MALFORMED = "malformed"
    ENCRYPT = "encrypt"
    VALIDATE = "validate"
    STAGE = "stage"
    SUMMARIZE = "summarize"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    ABORTED_ON_ERROR = "aborted_on_error"


class MigrationSummary(BaseModel):
    """Audit counters of a migration run.

    ``records_updated`` counts rows with newly encrypted tokens; in a dry run
    those are the rows that would have been written. A flag-only update is
    not counted.
    """

    state: MigrationState = MigrationState.DRY_RUN
    dry_run: bool = True
    total_records: int = 0
    records_updated: int = 0
    fields_encrypted: int = 0
    already_encrypted: int = 0
    malformed: int = 0
    errors: int = 0
    failures: list[tuple[str, str]] = Field(default_factory=list)
    skipped: list[tuple[str, str]] = Field(default_factory=list)

    @property
    def noop(self) -> bool:
        """Nothing was stored, so nothing was done."""
        return self.total_records == 0 and self.state == MigrationState.ROLLED_BACK

    @property
    def succeeded(self) -> bool:
        if self.noop:
            return True
        if self.dry_run:
            return self.state == MigrationState.ROLLED_BACK
        return self.state == MigrationState.COMMITTED

    def to_dict(self) -> dict:
        return self.model_dump(mode="json")

    def to_json(self) -> bytes:
        return orjson.dumps(self.to_dict(), option=orjson.OPT_INDENT_2)


class MigrationOrchestrator:
    """Encrypt every plaintext token of a TokenStore, all or nothing.

    Args:
        service: EncryptionService holding the process key.
        store: TokenStore with the rows to migrate.
        commit: persist the changes; without it the run is a dry run.
        verbose: log per-field details (lengths only, never values).
        fields: token fields to migrate on each row.
        delay: seconds to wait before a commit-mode transaction opens.
    """

    def __init__(
        self,
        service: EncryptionService,
        store: TokenStore,
        commit: bool = False,
        verbose: bool = False,
        fields: Sequence[str] = DEFAULT_FIELDS,
        delay: float = COMMIT_DELAY,
    ):
        self._service = service
        self._store = store
        self.dry_run = not commit
        self.verbose = verbose
        self.fields = tuple(fields)
        self.delay = delay
        self.state = MigrationState.DRY_RUN if self.dry_run else MigrationState.COMMIT

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------

    def classify(self, value: Any, flagged: Optional[bool] = None) -> MigrationState:
        """Decide what to do with one stored value.

        The record flag wins when present: a flagged row whose value is
        not an envelope is corrupt, never re-encrypted.
        """
        if not isinstance(value, str):
            return MigrationState.MALFORMED
        if self._service.is_encrypted(value):
            return MigrationState.ALREADY_ENCRYPTED
        if flagged or looks_like_envelope(value):
            return MigrationState.MALFORMED
        return MigrationState.NEEDS_ENCRYPTION

    def _encrypt_and_validate(self, value: str) -> str:
        self.state = MigrationState.ENCRYPT
        envelope = self._service.encrypt(value)
        self.state = MigrationState.VALIDATE
        try:
            decrypted = self._service.decrypt(envelope)
        except VaultError as err:
            raise MigrationValidationError(
                "Encryption validation failed: envelope does not decrypt"
            ) from err
        if decrypted != value:
            raise MigrationValidationError(
                "Encryption validation failed: decrypted value does not "
                "match original"
            )
        return envelope

    def _process_record(self, row: Mapping[str, Any], summary: MigrationSummary) -> dict:
        """Return the staged updates for one row.

        Counters are only added to the summary once the whole row passed.
        """
        self.state = MigrationState.INSPECT
        record_id = str(row["id"])
        flagged = row.get("encrypted")
        updates: dict[str, Any] = {}
        already = 0
        malformed: list[str] = []

        for field in self.fields:
            value = row.get(field)
            if value is None or value == "":
                continue
            action = self.classify(value, flagged)
            if action is MigrationState.ALREADY_ENCRYPTED:
                logger.debug("Token %s: %s already encrypted", record_id, field)
                already += 1
            elif action is MigrationState.MALFORMED:
                logger.warning(
                    "Token %s: %s has a malformed stored value, skipping",
                    record_id, field,
                )
                malformed.append(field)
            else:
                envelope = self._encrypt_and_validate(value)
                updates[field] = envelope
                if self.verbose:
                    logger.info(
                        "Token %s: %s encrypted (%d -> %d chars)",
                        record_id, field, len(value), len(envelope),
                    )

        summary.already_encrypted += already
        summary.malformed += len(malformed)
        summary.skipped.extend((record_id, field) for field in malformed)
        if updates:
            summary.fields_encrypted += len(updates)
            summary.records_updated += 1
        if (updates or already) and not malformed and flagged is not True:
            updates["encrypted"] = True
        return updates

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def _countdown(self) -> None:
        logger.warning(
            "COMMIT MODE - tokens will be encrypted! "
            "Press Ctrl+C within %s seconds to cancel...",
            self.delay,
        )
        if self.delay > 0:
            await asyncio.sleep(self.delay)

    async def _rollback(self, txn: Any) -> None:
        try:
            await txn.rollback()
        except Exception:
            logger.exception("Rollback failed, the original error is re-raised")

    def _finish(self, summary: MigrationSummary, state: MigrationState) -> MigrationSummary:
        self.state = state
        summary.state = state
        return summary

    async def run(self) -> MigrationSummary:
        """Execute the migration.

        Returns:
            MigrationSummary of a dry run, a committed run or a no-op.

        Raises:
            MigrationAborted: A commit-mode run hit a record error; nothing
                was persisted. The summary is attached to the exception.
        """
        summary = MigrationSummary(dry_run=self.dry_run, state=self.state)
        if self.dry_run:
            logger.info("DRY RUN MODE - no changes will be made")
        else:
            await self._countdown()

        async with self._store.transaction() as txn:
            try:
                rows = await txn.fetch_all()
                summary.total_records = len(rows)
                logger.info("Found %d OAuth token(s) in store", len(rows))
                if not rows:
                    logger.info("No tokens to encrypt")
                    await txn.rollback()
                    return self._finish(summary, MigrationState.ROLLED_BACK)

                for row in rows:
                    record_id = str(row["id"])
                    try:
                        updates = self._process_record(row, summary)
                    except VaultError as err:
                        summary.errors += 1
                        summary.failures.append((record_id, str(err)))
                        logger.error("Error processing token %s: %s", record_id, err)
                        if not self.dry_run:
                            raise MigrationAborted(
                                f"Migration aborted on token {record_id}",
                                summary,
                            ) from err
                        continue
                    if updates:
                        self.state = MigrationState.STAGE
                        if not self.dry_run:
                            await txn.update(row["id"], updates)
            except MigrationAborted:
                logger.error("MIGRATION FAILED - rolling back changes")
                await self._rollback(txn)
                self._finish(summary, MigrationState.ABORTED_ON_ERROR)
                raise
            except BaseException:
                logger.exception("Migration error - rolling back transaction")
                await self._rollback(txn)
                self._finish(summary, MigrationState.ABORTED_ON_ERROR)
                raise

            self.state = MigrationState.SUMMARIZE
            logger.info(
                "Migration summary: records=%d encrypted=%d already=%d "
                "malformed=%d errors=%d",
                summary.total_records, summary.fields_encrypted,
                summary.already_encrypted, summary.malformed, summary.errors,
            )
            if self.dry_run:
                await txn.rollback()
                logger.info("DRY RUN COMPLETE - no changes were made")
                return self._finish(summary, MigrationState.ROLLED_BACK)

            await txn.commit()
            logger.info("MIGRATION SUCCESSFUL - all tokens committed")
            return self._finish(summary, MigrationState.COMMITTED)
