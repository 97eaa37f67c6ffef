"""Error taxonomy shared by every vault component.

Core components raise these; only the tool layer turns them into text.
"""

from __future__ import annotations

from pathlib import Path


class VaultError(Exception):
    """Base error. Carries the path and operation that failed, when known."""

    def __init__(
        self,
        message: str,
        *,
        path: Path | str | None = None,
        operation: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.path = str(path) if path is not None else None
        self.operation = operation

    def __str__(self) -> str:
        parts = [self.message]
        if self.operation:
            parts.append(f"operation={self.operation}")
        if self.path:
            parts.append(f"path={self.path}")
        if len(parts) == 1:
            return self.message
        return f"{self.message} ({', '.join(parts[1:])})"


class ValidationError(VaultError):
    """Bad scope/category name or malformed input. Raised before any I/O."""


class NotFoundError(VaultError):
    """Missing record or scope."""


class AccessDeniedError(VaultError):
    """Scope unknown or outside the session allow-list."""


class SizeError(VaultError):
    """Content exceeds the configured size cap."""


class DecryptionError(VaultError):
    """Wrong key, corrupted payload, or expired legacy token window."""


class AuthRequiredError(VaultError):
    """OTP not set up or no live session. Resolved by setup/verify, then retry."""


class CorruptRecordError(VaultError):
    """Record file exists but its frontmatter cannot be parsed."""


class ConfigError(VaultError):
    """Invalid or inconsistent configuration."""
