"""PersonalVault orchestrator — the one caller of every vault component.

Responsibilities:
1. Build components from VaultConfig (registry, access, store, OTP, gate)
2. Authorization — every record operation checks the scope allow-list
3. Gating — every record operation asks the session gate for key material
   before touching a file, listings and searches included
4. Best-effort backups before destructive writes
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, datetime
from pathlib import Path

from pvault.config import VaultConfig
from pvault.errors import (
    ConfigError,
    CorruptRecordError,
    DecryptionError,
    NotFoundError,
    ValidationError,
    VaultError,
)
from pvault.records.models import Record, utcnow
from pvault.records.store import RecordStore
from pvault.scopes import (
    AccessController,
    ScopeDefinition,
    ScopeRegistry,
    is_built_in_scope,
    resolve_scope_selector,
    validate_slug,
)
from pvault.security.encryption import EncryptionEngine, KeyMaterial
from pvault.security.otp import OTPEngine, SetupResult, VerificationResult
from pvault.security.session import AuthSessionGate

logger = logging.getLogger(__name__)


@dataclass
class SaveResult:
    record: Record
    action: str  # "created" | "updated"


@dataclass
class BatchItemResult:
    category: str
    subcategory: str | None = None
    success: bool = True
    action: str | None = None
    records: list[Record] | None = None
    error: str | None = None


def _describe(category: str, subcategory: str | None) -> str:
    return f"{category} ({subcategory})" if subcategory else category


class PersonalVault:
    """Access-controlled, optionally encrypted store of personal records."""

    def __init__(self, config: VaultConfig, clock: Callable[[], float] = time.time) -> None:
        config.validate()
        self.config = config
        data_dir = config.storage.data_dir
        data_dir.mkdir(parents=True, exist_ok=True)

        self.registry = ScopeRegistry(data_dir)
        try:
            allowed = resolve_scope_selector(config.scopes.allowed, self.registry)
        except ValidationError as e:
            raise ConfigError(f"Invalid scope selector: {e.message}") from None
        self.access = AccessController(self.registry, allowed)

        enc = config.encryption
        self.engine = EncryptionEngine(iterations=enc.iterations, key_size=enc.key_size)
        self.store = RecordStore(
            data_dir,
            self.engine,
            max_file_size=config.storage.max_file_size,
            migrate_legacy=enc.migrate_legacy,
        )
        self.otp = OTPEngine(data_dir, clock=clock)
        self.gate = AuthSessionGate(self.otp, enc.enabled, enc.key, clock=clock)

        logger.info(
            "Vault ready at %s (scopes=%s, encryption=%s)",
            data_dir,
            ",".join(allowed),
            "on" if enc.enabled else "off",
        )

    # ── Internal helpers ──────────────────────────────────────

    def _scopes(self, scope: str | None, operation: str) -> list[str]:
        """Scopes an operation may touch: one checked scope, or the whole allow-list."""
        if scope:
            self.access.check(scope, operation)
            return [scope]
        return self.access.allowed_scopes

    def _key(self, operation: str) -> KeyMaterial | None:
        return self.gate.key_material(operation)

    def _backup(self, path: Path) -> None:
        if self.config.storage.backup_enabled:
            self.store.backup(path, self.config.storage.backup_dir)

    # ── Records ───────────────────────────────────────────────

    def save(
        self,
        scope: str,
        category: str,
        content: str,
        subcategory: str | None = None,
        tags: list[str] | None = None,
        time_based: bool = False,
    ) -> SaveResult:
        """Create or overwrite the record for (scope, category, subcategory).

        An overwrite keeps the original creation time and, when no tags are
        given, the original tags. A file that can no longer be read is backed
        up and replaced as a new record.
        """
        if not content:
            raise ValidationError("Content is required", operation="save")
        path = self.store.path(scope, category, subcategory, time_based=time_based)
        self.access.check(scope, "save")
        key = self._key("save")

        created = utcnow()
        action = "created"
        existing_tags: list[str] = []
        if self.store.exists(path):
            action = "updated"
            self._backup(path)
            try:
                existing = self.store.read(path, key)
            except (DecryptionError, CorruptRecordError) as e:
                logger.warning("Replacing unreadable record %s: %s", path, e)
            else:
                created = existing.created
                existing_tags = existing.tags

        record = Record(
            scope=scope,
            category=category,
            subcategory=subcategory,
            body=content,
            tags=list(tags) if tags is not None else list(existing_tags),
            created=created,
            updated=utcnow(),
        )
        self.store.write(path, record, key)
        return SaveResult(record=record, action=action)

    def get(
        self,
        category: str,
        subcategory: str | None = None,
        scope: str | None = None,
    ) -> list[Record]:
        validate_slug(category, "category")
        scopes = self._scopes(scope, "get")
        key = self._key("get")
        records = self.store.find_by_category(scopes, category, subcategory, key)
        if not records:
            raise NotFoundError(f"No {_describe(category, subcategory)} information found")
        return records

    def update(
        self,
        category: str,
        subcategory: str | None = None,
        content: str | None = None,
        tags: list[str] | None = None,
        new_scope: str | None = None,
        scope: str | None = None,
    ) -> Record:
        """Change the first matching record's content, tags and/or scope."""
        if content is None and tags is None and new_scope is None:
            raise ValidationError(
                "At least one of content, tags or new_scope must be given", operation="update"
            )
        validate_slug(category, "category")
        if new_scope:
            validate_slug(new_scope, "scope")
            self.access.check(new_scope, "update")
        scopes = self._scopes(scope, "update")
        key = self._key("update")

        matches = self.store.find_by_category(scopes, category, subcategory, key)
        if not matches:
            raise NotFoundError(f"No {_describe(category, subcategory)} information found")
        existing = matches[0]
        old_path = existing.path
        if old_path is None:
            raise NotFoundError(f"No {_describe(category, subcategory)} information found")
        self._backup(old_path)

        record = Record(
            scope=new_scope or existing.scope,
            category=existing.category,
            subcategory=existing.subcategory,
            body=content if content is not None else existing.body,
            tags=list(tags) if tags is not None else list(existing.tags),
            created=existing.created,
            updated=utcnow(),
        )
        if new_scope and new_scope != existing.scope:
            target = self.store.data_dir / new_scope / old_path.name
            if self.store.exists(target):
                raise ValidationError(
                    f"Cannot move {_describe(category, subcategory)} to '{new_scope}': "
                    "a record already exists there",
                    path=target,
                    operation="update",
                )
            self.store.write(target, record, key)
            self.store.delete(old_path)
            logger.info("Moved %s from %s to %s", category, existing.scope, new_scope)
        else:
            self.store.write(old_path, record, key)
        return record

    def delete(self, category: str, subcategory: str | None = None, scope: str | None = None) -> int:
        """Delete every matching record in the allowed scopes. Returns the count."""
        validate_slug(category, "category")
        scopes = self._scopes(scope, "delete")
        key = self._key("delete")
        paths = [
            r.path
            for r in self.store.find_by_category(scopes, category, subcategory, key)
            if r.path is not None and self.access.is_access_allowed(r.scope)
        ]
        # Files that can no longer be decrypted or parsed never show up in a
        # scan; reach them through their own filename instead.
        for s in scopes:
            path = self.store.path(s, category, subcategory)
            if path not in paths and self.store.exists(path):
                try:
                    self.store.read(path, key)
                except (DecryptionError, CorruptRecordError) as e:
                    logger.warning("Deleting unreadable record %s: %s", path, e)
                    paths.append(path)
        if not paths:
            raise NotFoundError(f"No {_describe(category, subcategory)} information found to delete")

        for path in paths:
            self._backup(path)
            self.store.delete(path)
        return len(paths)

    def list_records(self, category_filter: str | None = None, scope: str | None = None) -> list[Record]:
        scopes = self._scopes(scope, "list")
        key = self._key("list")
        records = self.store.list_records(scopes, key)
        if category_filter:
            wanted = {c.strip() for c in category_filter.split(",") if c.strip()}
            records = [r for r in records if r.category in wanted]
        return records

    def categories(self, scope: str | None = None) -> list[str]:
        scopes = self._scopes(scope, "categories")
        return self.store.categories(scopes, self._key("categories"))

    def search(
        self,
        query: str,
        tags: list[str] | None = None,
        date_range: tuple[str | date | datetime, str | date | datetime] | None = None,
        scope: str | None = None,
    ) -> list[Record]:
        if not query or not query.strip():
            raise ValidationError("Query is required", operation="search")
        scopes = self._scopes(scope, "search")
        key = self._key("search")
        return self.store.search(scopes, query.strip(), tags, date_range, key)

    def batch_get(self, requests: list[dict]) -> list[BatchItemResult]:
        """Look up several categories. A missing or failing item never aborts the rest."""
        self._key("batch_get")
        results: list[BatchItemResult] = []
        for req in requests:
            category = req.get("category", "")
            subcategory = req.get("subcategory")
            try:
                records = self.get(category, subcategory, req.get("scope"))
                results.append(
                    BatchItemResult(category, subcategory, success=True, records=records)
                )
            except VaultError as e:
                results.append(
                    BatchItemResult(category, subcategory, success=False, error=e.message)
                )
        return results

    def batch_save(self, items: list[dict], scope: str | None = None) -> list[BatchItemResult]:
        """Save several records; ``scope`` is the default for items without one."""
        self._key("batch_save")
        results: list[BatchItemResult] = []
        for item in items:
            category = item.get("category", "")
            subcategory = item.get("subcategory")
            try:
                item_scope = item.get("scope") or scope
                if not item_scope:
                    raise ValidationError("Scope is required", operation="batch_save")
                saved = self.save(
                    item_scope,
                    category,
                    item.get("content", ""),
                    subcategory=subcategory,
                    tags=item.get("tags"),
                    time_based=bool(item.get("time_based", False)),
                )
                results.append(
                    BatchItemResult(
                        category, subcategory, success=True, action=saved.action,
                        records=[saved.record],
                    )
                )
            except VaultError as e:
                logger.warning("Batch save failed for %s: %s", category, e)
                results.append(
                    BatchItemResult(category, subcategory, success=False, error=e.message)
                )
        return results

    # ── Scopes ────────────────────────────────────────────────

    def create_scope(
        self,
        name: str,
        description: str,
        sensitivity_level: int = 5,
        parent_scope: str | None = None,
    ) -> ScopeDefinition:
        return self.registry.create_custom_scope(name, description, sensitivity_level, parent_scope)

    def delete_scope(self, name: str) -> None:
        self.registry.delete_custom_scope(name)

    def list_scopes(self, custom_only: bool = False) -> list[dict]:
        """Every known scope with its level and whether this session may use it."""
        names = list(self.registry.custom_scopes()) if custom_only else self.registry.all_scope_names()
        scopes = []
        for name in names:
            scope = self.registry.get(name)
            scopes.append(
                {
                    "name": name,
                    "description": scope.description,
                    "sensitivity_level": scope.sensitivity_level,
                    "parent_scope": scope.parent_scope,
                    "built_in": is_built_in_scope(name),
                    "allowed": self.access.is_access_allowed(name),
                    "example_data": scope.example_data,
                }
            )
        return scopes

    def scope_hierarchy(self) -> dict[str, dict]:
        return self.registry.get_hierarchy()

    # ── OTP & session ─────────────────────────────────────────

    def setup_otp(self, **options) -> SetupResult:
        return self.gate.setup(**options)

    def verify_otp(
        self, token: str, use_backup_code: bool = False, user_id: str | None = None
    ) -> VerificationResult:
        return self.gate.verify(token, use_backup_code=use_backup_code, user_id=user_id)

    def lock(self) -> bool:
        return self.gate.lock()

    def disable_otp(self) -> None:
        self.gate.disable()

    def enable_otp(self) -> None:
        self.gate.enable()

    def regenerate_backup_codes(self) -> list[str]:
        return self.otp.regenerate_backup_codes()

    def otp_status(self) -> dict:
        status = self.otp.status()
        status["encryption_enabled"] = self.config.encryption.enabled
        status["state"] = self.gate.state.value
        status["session"] = self.gate.session_info()
        return status

    def otp_debug(self) -> dict:
        return self.otp.debug_info()
