"""
token-vault-migrate — Encrypt existing OAuth tokens in place.

Usage:
    token-vault-migrate              # dry run, nothing is written
    token-vault-migrate --commit     # encrypt and commit, all or nothing

Run it ONCE after deploying encryption, under operator supervision, never
concurrently with itself.

Exit codes:
    0  dry run finished, commit succeeded, or nothing to do
    1  commit-mode failure, every change was rolled back
    2  configuration error (missing/weak key material, no database)
    130  cancelled during the commit countdown
"""
import os
import sys
import asyncio
import logging
import argparse
from typing import Optional

import asyncpg

from ..exceptions import ConfigurationError, MigrationAborted
from .migration import COMMIT_DELAY, MigrationOrchestrator, MigrationSummary
from .service import EncryptionService
from .stores import PostgresTokenStore

logger = logging.getLogger("token_vault.cli")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="token-vault-migrate",
        description="Encrypt OAuth tokens currently stored in plaintext.",
    )
    parser.add_argument(
        "--commit",
        action="store_true",
        help="Actually encrypt and commit (default: dry run)",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Log per-token details (lengths only, never values)",
    )
    parser.add_argument(
        "--json",
        dest="as_json",
        action="store_true",
        help="Print the summary as JSON",
    )
    parser.add_argument(
        "--delay",
        type=float,
        default=COMMIT_DELAY,
        help=f"Seconds to wait before committing (default: {COMMIT_DELAY:g})",
    )
    parser.add_argument(
        "--dsn",
        default=None,
        help="PostgreSQL DSN (default: $DATABASE_URL)",
    )
    parser.add_argument(
        "--table",
        default="oauth_tokens",
        help="Token table name (default: oauth_tokens)",
    )
    parser.add_argument(
        "--flag-column",
        action="store_true",
        help="Table has a boolean 'encrypted' column to maintain",
    )
    return parser


def render_summary(summary: MigrationSummary) -> str:
    lines = [
        "MIGRATION SUMMARY:",
        f"   Total tokens processed: {summary.total_records}",
        f"   Tokens encrypted: {summary.fields_encrypted}",
        f"   Already encrypted: {summary.already_encrypted}",
        f"   Malformed (skipped): {summary.malformed}",
        f"   Errors: {summary.errors}",
        f"   Result: {summary.state.value}",
    ]
    for record_id, message in summary.failures:
        lines.append(f"   ! {record_id}: {message}")
    for record_id, field in summary.skipped:
        lines.append(f"   ? {record_id}: {field} left untouched")
    return "\n".join(lines)


async def migrate(args: argparse.Namespace) -> MigrationSummary:
    """Connect, run the orchestrator and close the pool."""
    dsn = args.dsn or os.environ.get("DATABASE_URL")
    if not dsn:
        raise ConfigurationError("No database DSN given (--dsn or DATABASE_URL)")
    service = EncryptionService.from_env()
    pool = await asyncpg.create_pool(dsn, min_size=1, max_size=1)
    try:
        store = PostgresTokenStore(pool, table=args.table, flag_column=args.flag_column)
        orchestrator = MigrationOrchestrator(
            service,
            store,
            commit=args.commit,
            verbose=args.verbose,
            delay=args.delay,
        )
        return await orchestrator.run()
    finally:
        await pool.close()


def report(summary: MigrationSummary, as_json: bool = False) -> None:
    if as_json:
        print(summary.to_json().decode("utf-8"))
    else:
        print(render_summary(summary))


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        summary = asyncio.run(migrate(args))
    except ConfigurationError as err:
        logger.error("Configuration error: %s", err)
        return 2
    except MigrationAborted as err:
        logger.error("%s; no changes were made", err)
        if err.summary is not None:
            report(err.summary, args.as_json)
        return 1
    except KeyboardInterrupt:
        logger.warning("Migration cancelled by operator")
        return 130
    except Exception:
        logger.exception("Migration failed")
        return 1
    report(summary, args.as_json)
    return 0 if summary.succeeded else 1


if __name__ == "__main__":
    sys.exit(main())
