"""Scope registry and access control.

A scope is a named authorization domain with a sensitivity level. Six scopes
are built in; custom scopes live in ``<data_dir>/.scopes/custom-scopes.json``
as a name -> definition map and each owns a ``<data_dir>/<name>/`` directory.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from pvault.errors import AccessDeniedError, NotFoundError, ValidationError
from pvault.fsutil import atomic_write_text

logger = logging.getLogger(__name__)

SCOPES_DIRNAME = ".scopes"
CUSTOM_SCOPES_FILENAME = "custom-scopes.json"

WILDCARD_SELECTORS = ("all", "*")

# kind -> (pattern, min length, max length)
_SLUG_RULES: dict[str, tuple[re.Pattern[str], int, int]] = {
    "scope": (re.compile(r"^[a-z][a-z0-9_-]*$"), 2, 50),
    "category": (re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]*$"), 1, 64),
    "subcategory": (re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]*$"), 1, 64),
}


def validate_slug(value: str, kind: str = "scope") -> str:
    """Validate a scope/category/subcategory name. Returns it unchanged."""
    pattern, min_len, max_len = _SLUG_RULES[kind]
    if not isinstance(value, str) or not value:
        raise ValidationError(f"{kind.capitalize()} name is required")
    if not min_len <= len(value) <= max_len:
        raise ValidationError(
            f"{kind.capitalize()} name '{value}' must be {min_len}-{max_len} characters"
        )
    if not pattern.match(value):
        if kind == "scope":
            raise ValidationError(
                f"Scope name '{value}' must start with a lowercase letter and contain only "
                "lowercase letters, digits, underscores and hyphens"
            )
        raise ValidationError(
            f"{kind.capitalize()} name '{value}' may contain only letters, digits, "
            "underscores and hyphens"
        )
    return value


@dataclass
class ScopeDefinition:
    """A built-in or custom scope."""

    name: str
    description: str
    sensitivity_level: int
    parent_scope: str | None = None
    created: str | None = None
    built_in: bool = False
    example_data: str = ""

    def to_dict(self) -> dict:
        """Persisted form of a custom scope."""
        data: dict = {
            "description": self.description,
            "sensitivity_level": self.sensitivity_level,
        }
        if self.parent_scope:
            data["parent_scope"] = self.parent_scope
        data["created"] = self.created
        return data

    @classmethod
    def from_dict(cls, name: str, data: dict) -> ScopeDefinition:
        if not isinstance(data, dict):
            raise ValidationError(f"Custom scope '{name}' is not an object")
        description = data.get("description")
        level = data.get("sensitivity_level")
        if not isinstance(description, str) or not description:
            raise ValidationError(f"Custom scope '{name}' has no description")
        if isinstance(level, bool) or not isinstance(level, int) or not 1 <= level <= 10:
            raise ValidationError(f"Custom scope '{name}' has invalid sensitivity level")
        return cls(
            name=name,
            description=description,
            sensitivity_level=level,
            parent_scope=data.get("parent_scope") or None,
            created=data.get("created"),
        )


BUILT_IN_SCOPES: tuple[ScopeDefinition, ...] = (
    ScopeDefinition("public", "Publicly shareable information", 1,
                    built_in=True, example_data="Name, avatar, bio"),
    ScopeDefinition("contact", "Contact information", 3,
                    built_in=True, example_data="Email, phone, social media"),
    ScopeDefinition("location", "Location-based data", 5,
                    built_in=True, example_data="Address, current location, places"),
    ScopeDefinition("personal", "Personal details", 6,
                    built_in=True, example_data="Age, hobbies, preferences"),
    ScopeDefinition("memories", "Personal memories and experiences", 7,
                    built_in=True, example_data="Trips, events, relationships"),
    ScopeDefinition("sensitive", "Sensitive information", 9,
                    built_in=True, example_data="Health data, financial info"),
)

BUILT_IN_SCOPE_NAMES = frozenset(s.name for s in BUILT_IN_SCOPES)


def is_built_in_scope(name: str) -> bool:
    return name in BUILT_IN_SCOPE_NAMES


class ScopeRegistry:
    """Built-in scopes plus the persisted custom-scope document."""

    def __init__(self, data_dir: Path) -> None:
        self.data_dir = data_dir
        self.path = data_dir / SCOPES_DIRNAME / CUSTOM_SCOPES_FILENAME
        self._custom: dict[str, ScopeDefinition] = {}
        self.load()

    # ── Loading & persistence ─────────────────────────────────

    def load(self) -> None:
        """(Re)load custom scopes. Invalid entries are skipped, not fatal."""
        self._custom = {}
        if not self.path.exists():
            atomic_write_text(self.path, "{}\n")
            logger.info("Created empty custom scopes file: %s", self.path)
            return

        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Failed to load custom scopes from %s: %s", self.path, e)
            return
        if not isinstance(raw, dict):
            logger.warning("Custom scopes file %s is not a JSON object; ignoring", self.path)
            return

        for name, data in raw.items():
            try:
                validate_slug(name, "scope")
                if is_built_in_scope(name):
                    raise ValidationError(f"'{name}' shadows a built-in scope")
                self._custom[name] = ScopeDefinition.from_dict(name, data)
            except ValidationError as e:
                logger.warning("Invalid custom scope '%s': %s", name, e)
        logger.info("Loaded %d custom scopes", len(self._custom))

    def _save(self, custom: dict[str, ScopeDefinition]) -> None:
        doc = {name: scope.to_dict() for name, scope in custom.items()}
        atomic_write_text(self.path, json.dumps(doc, indent=2, ensure_ascii=False) + "\n")

    # ── Queries ───────────────────────────────────────────────

    def is_valid_scope(self, name: str) -> bool:
        return is_built_in_scope(name) or name in self._custom

    def get(self, name: str) -> ScopeDefinition:
        for scope in BUILT_IN_SCOPES:
            if scope.name == name:
                return scope
        if name in self._custom:
            return self._custom[name]
        raise NotFoundError(f"Unknown scope: {name}")

    def sensitivity_level(self, name: str) -> int:
        return self.get(name).sensitivity_level

    def all_scope_names(self) -> list[str]:
        return [s.name for s in BUILT_IN_SCOPES] + list(self._custom)

    def custom_scopes(self) -> dict[str, ScopeDefinition]:
        return dict(self._custom)

    def get_hierarchy(self) -> dict[str, dict]:
        """Parent -> children map for display. Chained-parent cycles are not checked."""
        hierarchy: dict[str, dict] = {
            s.name: {"children": [], "parent": None, "sensitivity": s.sensitivity_level}
            for s in BUILT_IN_SCOPES
        }
        for name, scope in self._custom.items():
            hierarchy[name] = {
                "children": [],
                "parent": scope.parent_scope,
                "sensitivity": scope.sensitivity_level,
            }
        for name, scope in self._custom.items():
            parent = scope.parent_scope
            if parent and parent in hierarchy:
                hierarchy[parent]["children"].append(name)
        return hierarchy

    # ── Mutations ─────────────────────────────────────────────

    def create_custom_scope(
        self,
        name: str,
        description: str,
        sensitivity_level: int = 5,
        parent_scope: str | None = None,
    ) -> ScopeDefinition:
        validate_slug(name, "scope")
        if is_built_in_scope(name):
            raise ValidationError(
                f"Cannot create custom scope '{name}': conflicts with built-in scope"
            )
        if name in self._custom:
            raise ValidationError(f"Custom scope '{name}' already exists")
        if not description or len(description.strip()) < 5:
            raise ValidationError("Scope description must be at least 5 characters")
        if (
            isinstance(sensitivity_level, bool)
            or not isinstance(sensitivity_level, int)
            or not 1 <= sensitivity_level <= 10
        ):
            raise ValidationError("Sensitivity level must be an integer between 1 and 10")
        if parent_scope and not self.is_valid_scope(parent_scope):
            raise ValidationError(f"Invalid parent scope: {parent_scope}")

        scope = ScopeDefinition(
            name=name,
            description=description.strip(),
            sensitivity_level=sensitivity_level,
            parent_scope=parent_scope or None,
            created=datetime.now(timezone.utc).isoformat(timespec="seconds"),
        )
        updated = {**self._custom, name: scope}
        self._save(updated)
        self._custom = updated

        scope_dir = self.data_dir / name
        try:
            scope_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.warning("Created scope '%s' but could not create %s: %s", name, scope_dir, e)

        logger.info(
            "Created custom scope '%s' with sensitivity level %d", name, sensitivity_level
        )
        return scope

    def delete_custom_scope(self, name: str) -> None:
        if is_built_in_scope(name):
            raise ValidationError(f"Cannot delete built-in scope '{name}'")
        if name not in self._custom:
            raise NotFoundError(f"Custom scope '{name}' does not exist")

        dependents = [n for n, s in self._custom.items() if s.parent_scope == name]
        if dependents:
            raise ValidationError(
                f"Cannot delete scope '{name}': it is referenced by: {', '.join(dependents)}"
            )

        scope_dir = self.data_dir / name
        if scope_dir.is_dir():
            entries = list(scope_dir.iterdir())
            if entries:
                raise ValidationError(
                    f"Cannot delete scope '{name}': directory contains {len(entries)} "
                    "entries. Delete them first.",
                    path=scope_dir,
                    operation="delete_scope",
                )

        updated = {n: s for n, s in self._custom.items() if n != name}
        self._save(updated)
        self._custom = updated

        if scope_dir.is_dir():
            try:
                scope_dir.rmdir()
            except OSError as e:
                logger.warning("Deleted scope '%s' but could not remove %s: %s", name, scope_dir, e)
        logger.info("Deleted custom scope '%s'", name)


def resolve_scope_selector(selector: str, registry: ScopeRegistry) -> list[str]:
    """Expand a selector (``all``/``*`` or a comma list) into scope names.

    The wildcard expands to every scope known at call time; scopes created
    later are not added.
    """
    value = (selector or "").strip()
    if value in WILDCARD_SELECTORS:
        return registry.all_scope_names()

    names: list[str] = []
    for part in value.split(","):
        part = part.strip()
        if part and part not in names:
            names.append(part)
    if not names:
        raise ValidationError("At least one scope must be specified")

    unknown = [n for n in names if not registry.is_valid_scope(n)]
    if unknown:
        raise ValidationError(
            f"Invalid scopes: {', '.join(unknown)}. "
            f"Available scopes: {', '.join(registry.all_scope_names())}"
        )
    return names


class AccessController:
    """Authorization against the allow-list fixed at startup."""

    def __init__(self, registry: ScopeRegistry, allowed_scopes: list[str]) -> None:
        self.registry = registry
        self._allowed = list(allowed_scopes)

    @property
    def allowed_scopes(self) -> list[str]:
        return list(self._allowed)

    def is_access_allowed(self, scope: str) -> bool:
        return scope in self._allowed

    def check(self, scope: str, operation: str | None = None) -> None:
        """Raise AccessDeniedError unless ``scope`` is known and allowed.

        Unknown and disallowed scopes produce the same message so callers
        cannot probe which scopes exist.
        """
        if self.registry.is_valid_scope(scope) and self.is_access_allowed(scope):
            return
        reason = "unknown" if not self.registry.is_valid_scope(scope) else "not allowed"
        logger.warning("Access denied to scope '%s' (%s, op=%s)", scope, reason, operation)
        raise AccessDeniedError(
            f"Access denied to scope '{scope}'. Allowed scopes: {', '.join(self._allowed)}",
            operation=operation,
        )

    def filter_scopes(self, scopes: list[str], additional_filter: str | None = None) -> list[str]:
        filtered = [s for s in scopes if self.is_access_allowed(s)]
        if additional_filter:
            wanted = {s.strip() for s in additional_filter.split(",") if s.strip()}
            filtered = [s for s in filtered if s in wanted]
        return filtered

    def has_access_to_sensitivity_level(self, level: int) -> bool:
        for scope in self._allowed:
            try:
                if self.registry.sensitivity_level(scope) >= level:
                    return True
            except NotFoundError:
                continue
        return False
