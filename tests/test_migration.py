"""
Tests for MigrationOrchestrator.

Tests cover:
- Dry run purity (all-valid and all-invalid batches)
- Commit, idempotence and atomicity
- Malformed stored values (skipped deterministically)
- The record-level encrypted flag
- The commit countdown and its cancellation
"""
import asyncio

import orjson
import pytest

from token_vault.exceptions import MigrationAborted
from token_vault.vault.migration import (
    MigrationOrchestrator,
    MigrationState,
)
from token_vault.vault.service import EncryptionService

from .conftest import MemoryTokenStore


class PoisonedService(EncryptionService):
    """Round trip fails for the value 'poison'."""

    def decrypt(self, envelope):
        value = super().decrypt(envelope)
        return "tampered" if value == "poison" else value


@pytest.fixture(scope="module")
def poisoned_service(config):
    return PoisonedService.from_config(config)


def plaintext_rows(count: int) -> list[dict]:
    return [
        {
            "id": f"tok-{i}",
            "access_token": f"access-{i}",
            "refresh_token": f"refresh-{i}",
        }
        for i in range(1, count + 1)
    ]


def orchestrator(service, store, **kwargs):
    kwargs.setdefault("delay", 0)
    return MigrationOrchestrator(service, store, **kwargs)


# --- Dry Run ---

class TestDryRun:
    """Dry run never persists anything."""

    @pytest.mark.asyncio
    async def test_default_is_dry_run(self, service):
        """Test no commit flag means dry run."""
        migration = MigrationOrchestrator(service, MemoryTokenStore([]))
        assert migration.dry_run is True
        assert migration.state is MigrationState.DRY_RUN

    @pytest.mark.asyncio
    async def test_all_valid_batch(self, service):
        """Test a valid batch is counted and rolled back."""
        store = MemoryTokenStore(plaintext_rows(3))
        before = store.snapshot()

        summary = await orchestrator(service, store).run()

        assert summary.state is MigrationState.ROLLED_BACK
        assert summary.dry_run is True
        assert summary.total_records == 3
        assert summary.fields_encrypted == 6
        assert summary.records_updated == 3
        assert summary.succeeded is True
        assert store.snapshot() == before
        assert store.commits == 0
        assert store.updates == 0

    @pytest.mark.asyncio
    async def test_all_invalid_batch(self, poisoned_service):
        """Test errors are only reported and nothing is written."""
        rows = [
            {"id": f"bad-{i}", "access_token": "poison", "refresh_token": None}
            for i in range(3)
        ]
        store = MemoryTokenStore(rows)
        before = store.snapshot()

        summary = await orchestrator(poisoned_service, store).run()

        assert summary.state is MigrationState.ROLLED_BACK
        assert summary.errors == 3
        assert summary.fields_encrypted == 0
        assert [record_id for record_id, _ in summary.failures] == [
            "bad-0", "bad-1", "bad-2",
        ]
        assert store.snapshot() == before
        assert store.commits == 0


# --- Commit ---

class TestCommit:
    """Commit mode is all-or-nothing."""

    @pytest.mark.asyncio
    async def test_commit_encrypts_everything(self, service):
        """Test every plaintext token is replaced by a decryptable envelope."""
        store = MemoryTokenStore(plaintext_rows(3))

        summary = await orchestrator(service, store, commit=True).run()

        assert summary.state is MigrationState.COMMITTED
        assert summary.succeeded is True
        assert summary.fields_encrypted == 6
        assert store.commits == 1
        for i in range(1, 4):
            row = store.rows[f"tok-{i}"]
            assert service.decrypt(row["access_token"]) == f"access-{i}"
            assert service.decrypt(row["refresh_token"]) == f"refresh-{i}"
            assert row["encrypted"] is True

    @pytest.mark.asyncio
    async def test_idempotent(self, service):
        """Test a second commit run encrypts nothing new."""
        store = MemoryTokenStore(plaintext_rows(4))

        first = await orchestrator(service, store, commit=True).run()
        after_first = store.snapshot()
        second = await orchestrator(service, store, commit=True).run()

        assert first.fields_encrypted == 8
        assert second.fields_encrypted == 0
        assert second.already_encrypted == 8
        assert second.state is MigrationState.COMMITTED
        assert store.snapshot() == after_first

    @pytest.mark.asyncio
    @pytest.mark.parametrize("failing", [0, 2, 4])
    async def test_atomic_on_record_error(self, poisoned_service, failing):
        """Test a failure on record k rolls back all n records."""
        rows = plaintext_rows(5)
        rows[failing]["access_token"] = "poison"
        store = MemoryTokenStore(rows)
        before = store.snapshot()

        migration = orchestrator(poisoned_service, store, commit=True)
        with pytest.raises(MigrationAborted) as exc:
            await migration.run()

        assert store.snapshot() == before
        assert store.commits == 0
        assert migration.state is MigrationState.ABORTED_ON_ERROR
        summary = exc.value.summary
        assert summary.state is MigrationState.ABORTED_ON_ERROR
        assert summary.errors == 1
        assert summary.failures[0][0] == f"tok-{failing + 1}"
        assert summary.succeeded is False

    @pytest.mark.asyncio
    async def test_atomic_on_store_error(self, service):
        """Test a database failure mid-batch rolls back and propagates."""
        store = MemoryTokenStore(plaintext_rows(3))
        store.fail_on_update = "tok-2"
        before = store.snapshot()

        migration = orchestrator(service, store, commit=True)
        with pytest.raises(RuntimeError):
            await migration.run()

        assert store.snapshot() == before
        assert store.rollbacks == 1
        assert migration.state is MigrationState.ABORTED_ON_ERROR

    @pytest.mark.asyncio
    async def test_empty_store_is_noop(self, service):
        """Test nothing to migrate is a successful no-op."""
        store = MemoryTokenStore([])
        summary = await orchestrator(service, store, commit=True).run()
        assert summary.total_records == 0
        assert summary.state is MigrationState.ROLLED_BACK
        assert store.commits == 0
        assert summary.noop is True
        assert summary.succeeded is True

    @pytest.mark.asyncio
    async def test_rollback_failure_keeps_original_error(self, poisoned_service):
        """Test a failing rollback does not mask the record error."""
        rows = plaintext_rows(3)
        rows[1]["access_token"] = "poison"
        store = MemoryTokenStore(rows)
        store.fail_on_rollback = True
        before = store.snapshot()

        migration = orchestrator(poisoned_service, store, commit=True)
        with pytest.raises(MigrationAborted) as exc:
            await migration.run()

        assert exc.value.summary.failures[0][0] == "tok-2"
        assert store.rollbacks == 1
        assert store.snapshot() == before
        assert migration.state is MigrationState.ABORTED_ON_ERROR

    @pytest.mark.asyncio
    async def test_rollback_failure_keeps_store_error(self, service):
        """Test a failing rollback does not mask a database error."""
        store = MemoryTokenStore(plaintext_rows(2))
        store.fail_on_update = "tok-1"
        store.fail_on_rollback = True

        with pytest.raises(RuntimeError, match="simulated database failure"):
            await orchestrator(service, store, commit=True).run()
        assert store.commits == 0


# --- Classification during migration ---

class TestClassification:
    """Already-encrypted, malformed and flagged values."""

    def test_classify(self, service):
        """Test classification of stored values."""
        migration = orchestrator(service, MemoryTokenStore([]))
        envelope = service.encrypt("token")
        assert migration.classify("token") is MigrationState.NEEDS_ENCRYPTION
        assert migration.classify(envelope) is MigrationState.ALREADY_ENCRYPTED
        assert migration.classify(envelope, True) is MigrationState.ALREADY_ENCRYPTED
        assert migration.classify("AAAA:AAAA:AAAA") is MigrationState.MALFORMED
        assert migration.classify(b"\x00\x01") is MigrationState.MALFORMED
        assert migration.classify(12345) is MigrationState.MALFORMED
        assert migration.classify("token", True) is MigrationState.MALFORMED

    @pytest.mark.asyncio
    async def test_flagged_plaintext_left_alone(self, service):
        """Test a flagged row holding plaintext is skipped, not re-encrypted."""
        store = MemoryTokenStore([
            {"id": "x", "access_token": "plain", "refresh_token": None, "encrypted": True},
        ])
        summary = await orchestrator(service, store, commit=True).run()
        assert summary.malformed == 1
        assert summary.fields_encrypted == 0
        assert store.rows["x"]["access_token"] == "plain"

    @pytest.mark.asyncio
    async def test_partially_malformed_record(self, service):
        """Test good fields are encrypted while the flag stays unset."""
        store = MemoryTokenStore([
            {"id": "x", "access_token": "plain", "refresh_token": 404},
        ])
        summary = await orchestrator(service, store, commit=True).run()
        assert summary.fields_encrypted == 1
        assert summary.malformed == 1
        assert summary.skipped == [("x", "refresh_token")]
        row = store.rows["x"]
        assert service.decrypt(row["access_token"]) == "plain"
        assert row["refresh_token"] == 404
        assert row["encrypted"] is None

    @pytest.mark.asyncio
    async def test_already_encrypted_row_gets_flag(self, service):
        """Test a fully encrypted legacy row is flagged without rewriting tokens."""
        access = service.encrypt("access")
        refresh = service.encrypt("refresh")
        store = MemoryTokenStore([
            {"id": "x", "access_token": access, "refresh_token": refresh},
        ])

        summary = await orchestrator(service, store, commit=True).run()

        assert summary.fields_encrypted == 0
        assert summary.records_updated == 0
        assert summary.already_encrypted == 2
        row = store.rows["x"]
        assert row["encrypted"] is True
        assert row["access_token"] == access
        assert row["refresh_token"] == refresh

    @pytest.mark.asyncio
    async def test_flagged_row_not_rewritten(self, service):
        """Test rows already flagged stage no update."""
        store = MemoryTokenStore([
            {"id": "x", "access_token": service.encrypt("a"), "refresh_token": None,
             "encrypted": True},
        ])
        await orchestrator(service, store, commit=True).run()
        assert store.updates == 0


# --- End-to-end ---

class TestEndToEnd:
    """Five tokens, one pre-encrypted refresh token, one malformed record."""

    @pytest.fixture
    def rows(self, service):
        rows = plaintext_rows(5)
        rows[4]["refresh_token"] = service.encrypt("refresh-5")
        rows.append({
            "id": "tok-corrupt",
            "access_token": "AAAA:AAAA:AAAA",
            "refresh_token": None,
        })
        return rows

    @pytest.mark.asyncio
    async def test_commit_scenario(self, service, rows):
        """Test 5 access + 4 refresh tokens are encrypted, the rest skipped."""
        store = MemoryTokenStore(rows)
        pre_encrypted = rows[4]["refresh_token"]

        summary = await orchestrator(service, store, commit=True).run()

        assert summary.state is MigrationState.COMMITTED
        assert summary.total_records == 6
        assert summary.fields_encrypted == 9
        assert summary.already_encrypted == 1
        assert summary.malformed == 1
        assert summary.errors == 0
        assert summary.skipped == [("tok-corrupt", "access_token")]
        for i in range(1, 6):
            row = store.rows[f"tok-{i}"]
            assert service.decrypt(row["access_token"]) == f"access-{i}"
            assert service.decrypt(row["refresh_token"]) == f"refresh-{i}"
        assert store.rows["tok-5"]["refresh_token"] == pre_encrypted
        assert store.rows["tok-corrupt"]["access_token"] == "AAAA:AAAA:AAAA"

    @pytest.mark.asyncio
    async def test_dry_run_scenario(self, service, rows):
        """Test the dry run reports the same counts and writes nothing."""
        store = MemoryTokenStore(rows)
        before = store.snapshot()

        summary = await orchestrator(service, store).run()

        assert summary.fields_encrypted == 9
        assert summary.already_encrypted == 1
        assert summary.malformed == 1
        assert store.snapshot() == before


# --- Countdown ---

class TestCountdown:
    """The pre-commit cancellation window."""

    @pytest.mark.asyncio
    async def test_dry_run_does_not_wait(self, service):
        """Test a dry run starts immediately even with a long delay."""
        store = MemoryTokenStore(plaintext_rows(1))
        migration = MigrationOrchestrator(service, store, delay=3600)
        summary = await asyncio.wait_for(migration.run(), timeout=5)
        assert summary.state is MigrationState.ROLLED_BACK

    @pytest.mark.asyncio
    async def test_cancel_during_countdown(self, service):
        """Test cancelling before the window ends opens no transaction."""
        store = MemoryTokenStore(plaintext_rows(2))
        before = store.snapshot()
        migration = MigrationOrchestrator(service, store, commit=True, delay=3600)

        task = asyncio.ensure_future(migration.run())
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert store.transactions == 0
        assert store.snapshot() == before


# --- Summary ---

class TestSummary:
    """Summary serialization."""

    @pytest.mark.asyncio
    async def test_to_json(self, service):
        """Test the summary serializes with orjson."""
        store = MemoryTokenStore(plaintext_rows(2))
        summary = await orchestrator(service, store).run()
        data = orjson.loads(summary.to_json())
        assert data["state"] == "rolled_back"
        assert data["fields_encrypted"] == 4
        assert data["dry_run"] is True
