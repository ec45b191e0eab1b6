"""
aiohttp integration — derive the vault key once at application startup.

    app = web.Application()
    setup_vault(app)

A ConfigurationError raised during startup propagates, so an application
with missing or weak key material never starts serving.
"""
from typing import Optional
from aiohttp import web

from .vault.config import VaultConfig
from .vault.service import EncryptionService

VAULT_KEY = web.AppKey("token_vault", EncryptionService)


def setup_vault(app: web.Application, config: Optional[VaultConfig] = None) -> None:
    """Register the startup hook that builds the EncryptionService.

    Args:
        app: aiohttp application.
        config: explicit configuration; loaded from the environment
            at startup when omitted.
    """
    async def _on_startup(app: web.Application) -> None:
        cfg = config if config is not None else VaultConfig.from_env()
        app[VAULT_KEY] = EncryptionService.from_config(cfg)

    app.on_startup.append(_on_startup)


def get_vault(request: web.Request) -> EncryptionService:
    """Return the EncryptionService of the request's application."""
    return request.app[VAULT_KEY]
