#!/usr/bin/env python3
"""Hash legacy plaintext passwords in place.

Usage:
    # List affected users without changing anything:
    python scripts/migrate_passwords.py --dry-run

    # Encrypted, password-free backup first, then migrate:
    DATABASE_URL=postgresql://... JWT_SECRET=... python scripts/migrate_passwords.py

    # Supply your own backup key, or skip the backup entirely:
    python scripts/migrate_passwords.py --backup-key "$BACKUP_KEY"
    python scripts/migrate_passwords.py --no-backup

Environment Variables:
    DATABASE_URL: PostgreSQL connection string
    JWT_SECRET / PEPPER_SECRET: pepper used for the new digests (must match the server)
    BACKUP_DIR: where backups are written (default: current directory)

Exit status is non-zero if any user failed to migrate.
"""
from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Optional, Sequence

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from authcore.config import Settings, get_settings  # noqa: E402
from authcore.service.errors import BackupError  # noqa: E402
from authcore.service.migration import MigrationStore, migrate_passwords  # noqa: E402
from authcore.service.passwords import CredentialHasher  # noqa: E402
from authcore.storage.memory import MemoryStore  # noqa: E402
from authcore.storage.postgres import PostgresStore  # noqa: E402


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Migrate plaintext passwords to argon2id digests",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="List users that would be migrated without making changes",
    )
    parser.add_argument(
        "--no-backup",
        action="store_true",
        help="Skip the pre-migration backup (not recommended)",
    )
    parser.add_argument(
        "--no-encrypt",
        action="store_true",
        help="Write the backup as plain JSON",
    )
    parser.add_argument(
        "--include-passwords",
        action="store_true",
        help="Keep stored password values in the backup",
    )
    parser.add_argument(
        "--backup-key",
        default=None,
        help="Encryption key for the backup (generated and printed once if omitted)",
    )
    parser.add_argument(
        "--backup-dir",
        default=None,
        help="Directory for the backup file (default: BACKUP_DIR)",
    )
    return parser


def _open_store() -> MigrationStore:
    settings = get_settings()
    if settings.memory_store_enabled:
        print("Note: Using in-memory store (set DATABASE_URL to migrate a real database)")
        return MemoryStore()
    return PostgresStore(settings.database_url)


def run(
    argv: Optional[Sequence[str]] = None,
    *,
    store: Optional[MigrationStore] = None,
    hasher: Optional[CredentialHasher] = None,
) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    hasher = hasher or CredentialHasher.from_settings(settings)
    if store is not None:
        return _migrate(args, settings, store, hasher)

    opened = _open_store()
    try:
        return _migrate(args, settings, opened, hasher)
    finally:
        close = getattr(opened, "close", None)
        if close is not None:
            close()


def _migrate(
    args: argparse.Namespace,
    settings: Settings,
    store: MigrationStore,
    hasher: CredentialHasher,
) -> int:
    if args.include_passwords and args.no_encrypt and not args.no_backup:
        print("WARNING: the backup will contain passwords in plain text. Secure it immediately.")

    try:
        report = migrate_passwords(
            store,
            hasher,
            dry_run=args.dry_run,
            backup=not args.no_backup,
            backup_dir=args.backup_dir or settings.backup_dir,
            encrypt=not args.no_encrypt,
            backup_key=args.backup_key,
            include_secrets=args.include_passwords,
        )
    except BackupError as exc:
        print(f"Error: {exc.message}; no passwords were changed")
        return 1

    if args.dry_run:
        print(f"[DRY RUN] {len(report.candidates)} user(s) would be migrated")
        for user in report.candidates:
            print(f"  - {user.email}")
        return 0

    if not report.candidates:
        print("No users need migration.")
        return 0

    if report.backup:
        print(f"Backup written: {report.backup.path}")
        if report.backup.generated_key:
            print(f"Backup key: {report.backup.generated_key}")
            print("IMPORTANT: store this key securely. It is required to restore the backup")
            print("           and is not kept anywhere else.")

    print("\nMigration results:")
    print(f"  Migrated: {report.migrated}")
    print(f"  Failed:   {report.failed}")
    print(f"  Total:    {len(report.candidates)}")
    for failure in report.failures:
        print(f"  ! {failure.user_id}: {failure.reason}")
    return 0 if report.ok else 1


def main() -> None:
    sys.exit(run())


if __name__ == "__main__":
    main()
