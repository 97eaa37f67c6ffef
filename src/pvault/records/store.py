"""RecordStore — validated, optionally encrypted, crash-safe record files.

One file per (scope, category, subcategory) tuple. Queries are a full scan of
the requested scope directories filtered in memory, which is fine at personal
scale (hundreds to low thousands of files) and does not try to be more.
"""

from __future__ import annotations

import logging
import shutil
from collections.abc import Iterable
from datetime import date, datetime, time, timezone
from pathlib import Path

from pvault.config import DEFAULT_MAX_FILE_SIZE
from pvault.errors import (
    DecryptionError,
    NotFoundError,
    SizeError,
    ValidationError,
    VaultError,
)
from pvault.fsutil import atomic_write_text
from pvault.records.models import Record, parse_timestamp, utcnow
from pvault.scopes import BUILT_IN_SCOPE_NAMES, validate_slug
from pvault.security.encryption import EncryptionEngine, KeyMaterial, is_encrypted

logger = logging.getLogger(__name__)

RECORD_SUFFIX = ".md"
BACKUP_SUFFIX = ".backup"


def _fs_timestamp(value: datetime | None = None) -> str:
    """``YYYY-MM-DDTHH-MM-SS`` in UTC, safe for every filesystem."""
    moment = (value or utcnow()).astimezone(timezone.utc)
    return moment.strftime("%Y-%m-%dT%H-%M-%S")


def _date_bound(value: str | date | datetime, end: bool) -> datetime:
    """One side of an inclusive date window. A bare date as ``end`` covers the whole day."""
    if isinstance(value, datetime):
        return parse_timestamp(value)
    if isinstance(value, date):
        return datetime.combine(value, time.max if end else time.min, tzinfo=timezone.utc)
    text = str(value).strip()
    try:
        if len(text) == 10:
            return _date_bound(date.fromisoformat(text), end)
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        return parse_timestamp(datetime.fromisoformat(text))
    except ValueError:
        raise ValidationError(f"Invalid date in range: {value!r}", operation="search") from None


class RecordStore:
    """Maps record keys to files under ``data_dir`` and performs the I/O."""

    def __init__(
        self,
        data_dir: Path,
        engine: EncryptionEngine,
        max_file_size: int = DEFAULT_MAX_FILE_SIZE,
        migrate_legacy: bool = True,
    ) -> None:
        self.data_dir = data_dir
        self.engine = engine
        self.max_file_size = max_file_size
        self.migrate_legacy = migrate_legacy

    # ── Paths ─────────────────────────────────────────────────

    def path(
        self,
        scope: str,
        category: str,
        subcategory: str | None = None,
        time_based: bool = False,
        timestamp: datetime | None = None,
    ) -> Path:
        """``<scope>/<category>[-<subcategory>][-<timestamp>].md``.

        Every component is slug-validated first, so no name can escape the
        scope directory.
        """
        validate_slug(scope, "scope")
        validate_slug(category, "category")
        stem = category
        if subcategory:
            validate_slug(subcategory, "subcategory")
            stem = f"{category}-{subcategory}"
        if time_based or timestamp is not None:
            stem = f"{stem}-{_fs_timestamp(timestamp)}"
        return self.data_dir / scope / f"{stem}{RECORD_SUFFIX}"

    def exists(self, path: Path) -> bool:
        return path.is_file()

    # ── Read / write ──────────────────────────────────────────

    def read(self, path: Path, key: KeyMaterial | None = None) -> Record:
        if not path.is_file():
            raise NotFoundError("Record not found", path=path, operation="read")
        size = path.stat().st_size
        if size > self.max_file_size:
            raise SizeError(
                f"File too large: {size} bytes (max {self.max_file_size})",
                path=path,
                operation="read",
            )
        try:
            text = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise VaultError(f"Failed to read record: {e}", path=path, operation="read") from None

        if is_encrypted(text):
            if key is None:
                raise DecryptionError(
                    "Record is encrypted but no key material is available",
                    path=path,
                    operation="read",
                )
            try:
                text, version = self.engine.decrypt_text(text, key)
            except DecryptionError as e:
                raise DecryptionError(e.message, path=path, operation="read") from None
            if version < 2 and self.migrate_legacy:
                self._write_text(path, self.engine.encrypt_text(text, key), "migrate")
                logger.info("Migrated legacy encrypted record to v2: %s", path)

        return Record.from_markdown(text, path=path)

    def write(self, path: Path, record: Record, key: KeyMaterial | None = None) -> Record:
        """Serialize, encrypt when ``key`` is given, check the cap, then replace atomically."""
        text = record.to_markdown()
        if key is not None:
            text = self.engine.encrypt_text(text, key)
        self._write_text(path, text, "write")
        record.path = path
        logger.info("Wrote record %s", path)
        return record

    def _write_text(self, path: Path, text: str, operation: str) -> None:
        size = len(text.encode("utf-8"))
        if size > self.max_file_size:
            raise SizeError(
                f"Content too large: {size} bytes (max {self.max_file_size})",
                path=path,
                operation=operation,
            )
        try:
            atomic_write_text(path, text)
        except OSError as e:
            raise VaultError(f"Failed to write record: {e}", path=path, operation=operation) from None

    # ── Queries ───────────────────────────────────────────────

    def _record_files(self, scopes: Iterable[str]) -> list[Path]:
        files: list[Path] = []
        for scope in scopes:
            scope_dir = self.data_dir / scope
            if not scope_dir.is_dir():
                continue
            for md_file in sorted(scope_dir.rglob(f"*{RECORD_SUFFIX}")):
                rel = md_file.relative_to(self.data_dir)
                if any(part.startswith(".") for part in rel.parts):
                    continue
                files.append(md_file)
        return files

    def list_records(self, scopes: Iterable[str], key: KeyMaterial | None = None) -> list[Record]:
        """Every readable record in ``scopes``. Unreadable files are skipped with a warning."""
        records: list[Record] = []
        for md_file in self._record_files(scopes):
            try:
                records.append(self.read(md_file, key))
            except VaultError as e:
                logger.warning("Skipping invalid file %s: %s", md_file, e)
        return records

    def find_by_category(
        self,
        scopes: Iterable[str],
        category: str,
        subcategory: str | None = None,
        key: KeyMaterial | None = None,
    ) -> list[Record]:
        return [
            r
            for r in self.list_records(scopes, key)
            if r.category == category and (not subcategory or r.subcategory == subcategory)
        ]

    def search(
        self,
        scopes: Iterable[str],
        query: str,
        tags: list[str] | None = None,
        date_range: tuple[str | date | datetime, str | date | datetime] | None = None,
        key: KeyMaterial | None = None,
    ) -> list[Record]:
        """Case-insensitive substring match on body, category and subcategory.

        ``tags`` requires every tag to be present. ``date_range`` filters on
        creation time, inclusive at both ends.
        """
        bounds = None
        if date_range is not None:
            start, end = date_range
            bounds = (_date_bound(start, end=False), _date_bound(end, end=True))

        needle = (query or "").lower()
        results: list[Record] = []
        for record in self.list_records(scopes, key):
            haystacks = [record.body, record.category, record.subcategory or ""]
            if needle and not any(needle in h.lower() for h in haystacks):
                continue
            if tags and not all(t in record.tags for t in tags):
                continue
            if bounds and not bounds[0] <= record.created <= bounds[1]:
                continue
            results.append(record)
        return results

    def categories(self, scopes: Iterable[str], key: KeyMaterial | None = None) -> list[str]:
        return sorted({r.category for r in self.list_records(scopes, key)})

    # ── Delete & backup ───────────────────────────────────────

    def delete(self, path: Path) -> None:
        """Remove a record, then its directory if that is now empty and not built-in."""
        if not path.is_file():
            raise NotFoundError("Record not found", path=path, operation="delete")
        try:
            path.unlink()
        except OSError as e:
            raise VaultError(f"Failed to delete record: {e}", path=path, operation="delete") from None
        logger.info("Deleted record %s", path)

        parent = path.parent
        if parent == self.data_dir or parent.name in BUILT_IN_SCOPE_NAMES:
            return
        try:
            if not any(parent.iterdir()):
                parent.rmdir()
                logger.info("Removed empty directory %s", parent)
        except OSError as e:
            logger.warning("Could not remove directory %s: %s", parent, e)

    def backup(self, path: Path, backup_dir: Path) -> Path | None:
        """Copy ``path`` to ``<backup_dir>/<name>.<timestamp>.backup``. Never raises."""
        if not path.is_file():
            return None
        stamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S-%f")
        target = backup_dir / f"{path.name}.{stamp}{BACKUP_SUFFIX}"
        try:
            backup_dir.mkdir(parents=True, exist_ok=True)
            shutil.copy2(path, target)
        except OSError as e:
            logger.warning("Failed to back up %s: %s", path, e)
            return None
        logger.debug("Backed up %s to %s", path, target)
        return target
