from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Protocol, Union

from authcore.logging import get_logger, hash_identity
from authcore.service.backup import BackupHandle, create_backup, validate_backup
from authcore.service.errors import BackupError, WeakPasswordError
from authcore.service.passwords import CredentialHasher, DigestScheme, detect_scheme
from authcore.storage.models import User

logger = get_logger(__name__)

PAGE_SIZE = 500


class MigrationStore(Protocol):
    def list_users(self, limit: int = 100, offset: int = 0) -> List[User]:
        ...

    def update_password_hash(self, user_id: str, password_hash: str) -> bool:
        ...


@dataclass
class MigrationFailure:
    user_id: str
    reason: str


@dataclass
class MigrationReport:
    candidates: List[User] = field(default_factory=list)
    migrated: int = 0
    failures: List[MigrationFailure] = field(default_factory=list)
    dry_run: bool = False
    backup: Optional[BackupHandle] = None

    @property
    def failed(self) -> int:
        return len(self.failures)

    @property
    def ok(self) -> bool:
        return not self.failures


def iter_users(store: MigrationStore, page_size: int = PAGE_SIZE) -> Iterator[User]:
    offset = 0
    while True:
        page = store.list_users(limit=page_size, offset=offset)
        yield from page
        if len(page) < page_size:
            return
        offset += page_size


def is_plaintext_candidate(stored: str) -> bool:
    """Legacy rows hold the raw password: no scheme tag and no ``:`` separator."""
    return detect_scheme(stored) == DigestScheme.UNKNOWN


def find_plaintext_candidates(store: MigrationStore) -> List[User]:
    return [user for user in iter_users(store) if is_plaintext_candidate(user.password_hash)]


def user_snapshot(user: User) -> Dict[str, Any]:
    return {
        "id": user.id,
        "email": user.email,
        "password": user.password_hash,
        "name": user.name,
        "role": user.role,
        "created_at": user.created_at.isoformat(),
        "updated_at": user.updated_at.isoformat(),
    }


def backup_users(
    store: MigrationStore,
    *,
    backup_dir: Union[str, Path] = ".",
    encrypt: bool = True,
    key: Optional[str] = None,
    include_secrets: bool = False,
) -> BackupHandle:
    """Write a backup of every user and refuse to continue unless it validates."""
    handle = create_backup(
        [user_snapshot(user) for user in iter_users(store)],
        backup_dir=backup_dir,
        encrypt=encrypt,
        key=key,
        include_secrets=include_secrets,
    )
    check = validate_backup(handle.path, key or handle.generated_key)
    if not check.valid:
        raise BackupError(f"backup validation failed: {check.error}")
    return handle


def migrate_passwords(
    store: MigrationStore,
    hasher: CredentialHasher,
    *,
    dry_run: bool = False,
    backup: bool = True,
    backup_dir: Union[str, Path] = ".",
    encrypt: bool = True,
    backup_key: Optional[str] = None,
    include_secrets: bool = False,
) -> MigrationReport:
    candidates = find_plaintext_candidates(store)
    report = MigrationReport(candidates=candidates, dry_run=dry_run)
    logger.info("password_migration_candidates", count=len(candidates), dry_run=dry_run)
    if dry_run or not candidates:
        return report

    if backup:
        report.backup = backup_users(
            store,
            backup_dir=backup_dir,
            encrypt=encrypt,
            key=backup_key,
            include_secrets=include_secrets,
        )
    else:
        logger.warning("password_migration_without_backup")

    for user in candidates:
        try:
            digest = hasher.hash(user.password_hash)
        except WeakPasswordError as exc:
            report.failures.append(MigrationFailure(user.id, "; ".join(exc.errors)))
            logger.warning(
                "password_migration_user_failed",
                user_id=user.id,
                email_hash=hash_identity(user.email),
                reason="weak_password",
            )
            continue
        if not store.update_password_hash(user.id, digest):
            report.failures.append(MigrationFailure(user.id, "user no longer exists"))
            continue
        report.migrated += 1

    logger.info(
        "password_migration_complete",
        migrated=report.migrated,
        failed=report.failed,
        total=len(candidates),
    )
    return report
