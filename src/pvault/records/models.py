"""Record model and its markdown-with-frontmatter form."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from pathlib import Path

import frontmatter
import yaml

from pvault.errors import CorruptRecordError

logger = logging.getLogger(__name__)

UNKNOWN_CATEGORY = "unknown"


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


def format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="seconds")


def parse_timestamp(value: object, default: datetime | None = None) -> datetime:
    """Coerce a frontmatter timestamp to an aware UTC datetime.

    Accepts ISO-8601 strings (``Z`` suffix included), datetimes that YAML has
    already parsed, and bare dates. Naive values are taken as UTC. Anything
    missing or unreadable falls back to ``default`` (now).
    """
    fallback = default or utcnow()
    if value is None or value == "":
        return fallback
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime.combine(value, time.min)
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            logger.debug("Unreadable timestamp %r, using fallback", value)
            return fallback
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


@dataclass
class Record:
    """One stored item: frontmatter metadata plus a free-form body."""

    scope: str
    category: str
    body: str = ""
    subcategory: str | None = None
    tags: list[str] = field(default_factory=list)
    created: datetime = field(default_factory=utcnow)
    updated: datetime = field(default_factory=utcnow)
    path: Path | None = None

    def to_markdown(self) -> str:
        metadata: dict = {"scope": self.scope, "category": self.category}
        if self.subcategory:
            metadata["subcategory"] = self.subcategory
        metadata["created"] = format_timestamp(self.created)
        metadata["updated"] = format_timestamp(self.updated)
        metadata["tags"] = list(self.tags)
        post = frontmatter.Post(self.body.strip(), **metadata)
        return frontmatter.dumps(post, sort_keys=False).rstrip() + "\n"

    @classmethod
    def from_markdown(cls, text: str, path: Path | None = None) -> Record:
        """Parse a record, defaulting missing fields so hand-edited files still load."""
        try:
            post = frontmatter.loads(text)
        except (yaml.YAMLError, ValueError, TypeError) as e:
            raise CorruptRecordError(
                f"Invalid frontmatter: {e}", path=path, operation="read"
            ) from None

        meta = dict(post.metadata)
        now = utcnow()
        scope = meta.get("scope") or (path.parent.name if path is not None else "")
        subcategory = meta.get("subcategory")
        tags = meta.get("tags") or []
        if isinstance(tags, str):
            tags = [t.strip() for t in tags.split(",") if t.strip()]
        elif not isinstance(tags, list):
            tags = [tags]
        return cls(
            scope=str(scope),
            category=str(meta.get("category") or UNKNOWN_CATEGORY),
            subcategory=str(subcategory) if subcategory else None,
            body=post.content.strip(),
            tags=[str(t) for t in tags],
            created=parse_timestamp(meta.get("created"), now),
            updated=parse_timestamp(meta.get("updated"), now),
            path=path,
        )
