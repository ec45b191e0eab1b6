"""Shared fixtures: vault services and an in-memory transactional token store."""
import copy
from typing import Any
from contextlib import asynccontextmanager

import pytest

from token_vault.vault.config import VaultConfig
from token_vault.vault.service import EncryptionService

PASSPHRASE = "k3y-for-tests-0123456789-abcdefghijklmnop"
OTHER_PASSPHRASE = "another-k3y-for-tests-9876543210-zyxwvuts"
SALT = "tests-salt"


class MemoryTransaction:
    """Works on a private copy of the rows until commit."""

    def __init__(self, store: "MemoryTokenStore"):
        self._store = store
        self._rows = copy.deepcopy(store.rows)
        self.closed = False

    async def fetch_all(self) -> list[dict[str, Any]]:
        return [dict(row) for row in self._rows.values()]

    async def update(self, record_id, values) -> None:
        if record_id == self._store.fail_on_update:
            raise RuntimeError("simulated database failure")
        self._rows[record_id].update(values)
        self._store.updates += 1

    async def commit(self) -> None:
        self._store.rows = self._rows
        self._store.commits += 1
        self.closed = True

    async def rollback(self) -> None:
        self._store.rollbacks += 1
        self.closed = True
        if self._store.fail_on_rollback:
            raise RuntimeError("simulated rollback failure")


class MemoryTokenStore:
    """TokenStore fake with real all-or-nothing semantics."""

    def __init__(self, rows: list[dict[str, Any]]):
        self.rows = {
            row["id"]: {"encrypted": None, **row} for row in rows
        }
        self.commits = 0
        self.rollbacks = 0
        self.updates = 0
        self.transactions = 0
        self.fail_on_update = None
        self.fail_on_rollback = False

    @asynccontextmanager
    async def transaction(self):
        self.transactions += 1
        txn = MemoryTransaction(self)
        try:
            yield txn
        finally:
            if not txn.closed:
                await txn.rollback()

    def snapshot(self) -> dict:
        return copy.deepcopy(self.rows)


@pytest.fixture(scope="session")
def config():
    """A valid non-production configuration."""
    return VaultConfig(passphrase=PASSPHRASE, salt=SALT, environment="testing")


@pytest.fixture(scope="session")
def service(config):
    """EncryptionService with the test key (derived once per session)."""
    return EncryptionService.from_config(config)


@pytest.fixture(scope="session")
def other_service():
    """EncryptionService with an unrelated key."""
    return EncryptionService.from_config(
        VaultConfig(passphrase=OTHER_PASSPHRASE, salt=SALT, environment="testing")
    )


@pytest.fixture
def vault_env(monkeypatch):
    """Environment with valid key material and nothing else."""
    for name in (
        "ENCRYPTION_KEY", "ENCRYPTION_SALT", "ENCRYPTION_ITERATIONS",
        "APP_ENV", "NODE_ENV", "JWT_SECRET",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("ENCRYPTION_KEY", PASSPHRASE)
    monkeypatch.setenv("ENCRYPTION_SALT", SALT)
    return monkeypatch
