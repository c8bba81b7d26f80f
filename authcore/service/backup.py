from __future__ import annotations

import base64
import binascii
import hashlib
import json
import os
import re
import secrets
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from authcore.logging import get_logger
from authcore.service.errors import (
    BackupError,
    DecryptionKeyRequiredError,
    IntegrityViolationError,
)

logger = get_logger(__name__)

SCHEMA_VERSION = "1.0"
ENCRYPTED_SUFFIX = ".enc"
PLAIN_SUFFIX = ".json"
NONCE_BYTES = 12
KEY_BYTES = 32
SECRET_FIELDS = frozenset({"password", "password_hash"})

# nonce_hex:base64(ciphertext)
_ENVELOPE_RE = re.compile(r"^[0-9a-fA-F]{%d}:[A-Za-z0-9+/]+=*$" % (NONCE_BYTES * 2))

PathLike = Union[str, Path]


@dataclass
class BackupMetadata:
    timestamp: str
    schema_version: str
    encrypted: bool
    includes_secrets: bool
    record_count: int

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "BackupMetadata":
        try:
            return cls(
                timestamp=str(data["timestamp"]),
                schema_version=str(data["schema_version"]),
                encrypted=bool(data["encrypted"]),
                includes_secrets=bool(data["includes_secrets"]),
                record_count=int(data["record_count"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise IntegrityViolationError(f"backup metadata is malformed: {exc}") from exc


@dataclass
class BackupHandle:
    path: Path
    metadata: BackupMetadata
    # Set only when this call generated the key; it is not stored anywhere else
    generated_key: Optional[str] = None


@dataclass
class BackupData:
    metadata: BackupMetadata
    records: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class BackupValidation:
    valid: bool
    metadata: Optional[BackupMetadata] = None
    error: Optional[str] = None


def generate_backup_key() -> str:
    return base64.b64encode(secrets.token_bytes(KEY_BYTES)).decode()


def _derive_key(key_material: str) -> bytes:
    """Use a base64 256-bit key as-is; stretch any other passphrase with SHA-256."""
    try:
        raw = base64.b64decode(key_material, validate=True)
    except (binascii.Error, ValueError):
        raw = b""
    if len(raw) == KEY_BYTES:
        return raw
    return hashlib.sha256(key_material.encode()).digest()


def encrypt_payload(plaintext: str, key_material: str) -> str:
    nonce = secrets.token_bytes(NONCE_BYTES)
    ciphertext = AESGCM(_derive_key(key_material)).encrypt(nonce, plaintext.encode(), None)
    return f"{nonce.hex()}:{base64.b64encode(ciphertext).decode()}"


def decrypt_payload(envelope: str, key_material: str) -> str:
    parts = envelope.strip().split(":")
    if len(parts) != 2:
        raise IntegrityViolationError("encrypted backup envelope is malformed")
    try:
        nonce = bytes.fromhex(parts[0])
        ciphertext = base64.b64decode(parts[1], validate=True)
    except (binascii.Error, ValueError) as exc:
        raise IntegrityViolationError("encrypted backup envelope is malformed") from exc
    try:
        plaintext = AESGCM(_derive_key(key_material)).decrypt(nonce, ciphertext, None)
    except InvalidTag as exc:
        raise IntegrityViolationError(
            "backup failed authentication; wrong key or tampered file"
        ) from exc
    return plaintext.decode()


def _sanitize(record: Mapping[str, Any], include_secrets: bool) -> Dict[str, Any]:
    sanitized = dict(record)
    if not include_secrets:
        for name in SECRET_FIELDS:
            sanitized.pop(name, None)
    return sanitized


def _write_private(path: Path, content: str) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(content)
    os.chmod(path, 0o600)


def _default_path(backup_dir: PathLike, encrypt: bool) -> Path:
    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%f")
    suffix = ENCRYPTED_SUFFIX if encrypt else PLAIN_SUFFIX
    return Path(backup_dir) / f"backup-users-{stamp}{suffix}"


def create_backup(
    records: Iterable[Mapping[str, Any]],
    *,
    path: Optional[PathLike] = None,
    backup_dir: PathLike = ".",
    encrypt: bool = True,
    key: Optional[str] = None,
    include_secrets: bool = False,
) -> BackupHandle:
    """Snapshot ``records`` to disk, stripping password fields unless told otherwise.

    When ``encrypt`` is set and no ``key`` is supplied a fresh key is generated
    and returned once on the handle; the caller must store it to restore.
    """
    sanitized = [_sanitize(record, include_secrets) for record in records]
    metadata = BackupMetadata(
        timestamp=datetime.now(timezone.utc).isoformat(),
        schema_version=SCHEMA_VERSION,
        encrypted=encrypt,
        includes_secrets=include_secrets,
        record_count=len(sanitized),
    )
    payload = json.dumps(
        {"metadata": asdict(metadata), "data": sanitized}, indent=2, default=str
    )
    target = Path(path) if path is not None else _default_path(backup_dir, encrypt)
    target.parent.mkdir(parents=True, exist_ok=True)

    generated_key: Optional[str] = None
    if encrypt:
        if not key:
            generated_key = key = generate_backup_key()
        _write_private(target, encrypt_payload(payload, key))
        if generated_key:
            logger.warning(
                "backup_key_generated",
                path=str(target),
                message="store the returned key securely; it is required for restore and is not retained",
            )
    else:
        _write_private(target, payload)
        if include_secrets:
            logger.warning("backup_unencrypted_with_secrets", path=str(target))

    logger.info(
        "backup_created",
        path=str(target),
        record_count=metadata.record_count,
        encrypted=encrypt,
        includes_secrets=include_secrets,
    )
    return BackupHandle(path=target, metadata=metadata, generated_key=generated_key)


def is_encrypted_payload(content: str) -> bool:
    return bool(_ENVELOPE_RE.match(content.strip()))


def restore_backup(
    source: Union[PathLike, BackupHandle], key: Optional[str] = None
) -> BackupData:
    """Read a backup back, decrypting it when needed and checking the record count.

    Encryption is detected from the file content, so a backup written to any
    path restores the same way. ``source`` may be a path or a ``BackupHandle``.
    """
    path = source.path if isinstance(source, BackupHandle) else Path(source)
    content = path.read_text(encoding="utf-8")
    if path.suffix == ENCRYPTED_SUFFIX or is_encrypted_payload(content):
        if not key:
            raise DecryptionKeyRequiredError("encrypted backup requires a decryption key")
        content = decrypt_payload(content, key)

    try:
        document = json.loads(content)
    except ValueError as exc:
        raise IntegrityViolationError("backup payload is not valid JSON") from exc
    if not isinstance(document, dict) or not isinstance(document.get("data"), list):
        raise IntegrityViolationError("backup structure is invalid")
    if not isinstance(document.get("metadata"), dict):
        raise IntegrityViolationError("backup metadata is missing")

    metadata = BackupMetadata.from_dict(document["metadata"])
    records = document["data"]
    if metadata.record_count != len(records):
        raise IntegrityViolationError(
            f"record count mismatch: expected {metadata.record_count}, got {len(records)}"
        )
    logger.info("backup_restored", path=str(path), record_count=len(records))
    return BackupData(metadata=metadata, records=records)


def validate_backup(
    path: Union[PathLike, BackupHandle], key: Optional[str] = None
) -> BackupValidation:
    try:
        data = restore_backup(path, key)
    except BackupError as exc:
        return BackupValidation(valid=False, error=exc.message)
    except OSError as exc:
        return BackupValidation(valid=False, error=f"backup unreadable: {exc.strerror or exc}")
    return BackupValidation(valid=True, metadata=data.metadata)


def delete_backup(path: PathLike) -> None:
    target = Path(path)
    try:
        target.unlink()
    except OSError as exc:
        logger.error("backup_delete_failed", path=str(target), error=str(exc))
        raise
    logger.info("backup_deleted", path=str(target))
