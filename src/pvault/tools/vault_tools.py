"""Vault tools for an external agent transport.

Each tool takes plain arguments and returns display text. Vault errors are
rendered here and nowhere else.
"""

from __future__ import annotations

import functools
import logging
from collections.abc import Callable
from typing import TYPE_CHECKING

from pvault.errors import AuthRequiredError, NotFoundError, VaultError
from pvault.records.models import Record, format_timestamp
from pvault.security.session import SESSION_TTL

if TYPE_CHECKING:
    from pvault.core import PersonalVault

logger = logging.getLogger(__name__)


def _tool(name: str, fn: Callable[..., str]) -> Callable[..., str]:
    @functools.wraps(fn)
    def wrapper(*args, **kwargs) -> str:
        try:
            return fn(*args, **kwargs)
        except NotFoundError as e:
            return f"{e.message}."
        except AuthRequiredError as e:
            return f"🔒 {e.message}"
        except VaultError as e:
            logger.info("Tool %s failed: %s", name, e)
            return f"❌ Error in {name}: {e.message}"

    return wrapper


def _format_record(record: Record) -> str:
    title = record.category
    if record.subcategory:
        title += f" ({record.subcategory})"
    lines = [f"### {title}", f"**Scope:** {record.scope}"]
    if record.tags:
        lines.append(f"**Tags:** {', '.join(record.tags)}")
    lines.append(f"**Updated:** {format_timestamp(record.updated)}")
    lines.append("")
    lines.append(record.body)
    return "\n".join(lines) + "\n\n"


def _format_records(title: str, records: list[Record]) -> str:
    return f"## {title}\n\n" + "".join(_format_record(r) for r in records)


def get_vault_tools(vault: PersonalVault) -> dict[str, Callable[..., str]]:
    """Return a dict of tool_name -> callable for vault operations."""

    # ── Records ───────────────────────────────────────────────

    def save_personal_info(
        category: str,
        content: str,
        scope: str,
        subcategory: str | None = None,
        tags: list[str] | None = None,
        time_based: bool = False,
    ) -> str:
        result = vault.save(scope, category, content, subcategory, tags, time_based)
        return f"✅ Successfully {result.action} {category} in scope '{scope}'."

    def get_personal_info(category: str, subcategory: str | None = None) -> str:
        records = vault.get(category, subcategory)
        return _format_records(f"{category.capitalize()} Information", records)

    def update_personal_info(
        category: str,
        subcategory: str | None = None,
        content: str | None = None,
        tags: list[str] | None = None,
        new_scope: str | None = None,
    ) -> str:
        record = vault.update(category, subcategory, content, tags, new_scope)
        return f"✅ Successfully updated {category} (scope '{record.scope}')."

    def delete_personal_info(category: str, subcategory: str | None = None) -> str:
        count = vault.delete(category, subcategory)
        return f"✅ Successfully deleted {count} {category} file(s)."

    def list_available_personal_info(category_filter: str | None = None) -> str:
        records = vault.list_records(category_filter)
        if not records:
            return "No personal information found."
        by_category: dict[str, list[Record]] = {}
        for record in records:
            by_category.setdefault(record.category, []).append(record)
        lines = ["## Available Personal Information", ""]
        for category in sorted(by_category):
            entries = by_category[category]
            subs = sorted({r.subcategory for r in entries if r.subcategory})
            line = f"- **{category}** ({len(entries)} file(s), scope: {entries[0].scope})"
            if subs:
                line += f"; subcategories: {', '.join(subs)}"
            lines.append(line)
        return "\n".join(lines) + "\n"

    def search_personal_info(
        query: str,
        tags: list[str] | None = None,
        start_date: str | None = None,
        end_date: str | None = None,
    ) -> str:
        date_range = (start_date, end_date) if start_date and end_date else None
        records = vault.search(query, tags, date_range)
        if not records:
            return f"No results found for '{query}'."
        return _format_records(f"Search Results for '{query}' ({len(records)})", records)

    def search_memories(
        query: str,
        tags: list[str] | None = None,
        start_date: str | None = None,
        end_date: str | None = None,
    ) -> str:
        date_range = (start_date, end_date) if start_date and end_date else None
        records = vault.search(query, tags, date_range, scope="memories")
        if not records:
            return f"No memories found for '{query}'."
        return _format_records(f"Memories matching '{query}' ({len(records)})", records)

    def batch_get_personal_info(requests: list[dict]) -> str:
        parts = []
        for item in vault.batch_get(requests):
            if item.success and item.records:
                parts.append(_format_records(f"{item.category.capitalize()} Information", item.records))
            else:
                parts.append(f"## {item.category}\n\n{item.error}.\n\n")
        return "".join(parts)

    def batch_save_personal_info(items: list[dict], scope: str | None = None) -> str:
        results = vault.batch_save(items, scope)
        ok = sum(1 for r in results if r.success)
        lines = [f"Batch save: {ok}/{len(results)} succeeded", ""]
        for r in results:
            label = r.category + (f" ({r.subcategory})" if r.subcategory else "")
            if r.success:
                lines.append(f"✅ {label}: {r.action}")
            else:
                lines.append(f"❌ {label}: {r.error}")
        return "\n".join(lines) + "\n"

    # ── Scopes ────────────────────────────────────────────────

    def create_personal_scope(
        name: str,
        description: str,
        sensitivity_level: int = 5,
        parent_scope: str | None = None,
    ) -> str:
        scope = vault.create_scope(name, description, sensitivity_level, parent_scope)
        return (
            f"✅ Successfully created scope '{scope.name}' "
            f"(sensitivity level {scope.sensitivity_level})."
        )

    def delete_personal_scope(name: str) -> str:
        vault.delete_scope(name)
        return f"✅ Successfully deleted scope '{name}'."

    def list_personal_scopes(custom_only: bool = False) -> str:
        scopes = vault.list_scopes(custom_only)
        if not scopes:
            return "No custom scopes defined."
        lines = ["## Scopes", ""]
        for s in scopes:
            marker = "✅" if s["allowed"] else "🚫"
            kind = "built-in" if s["built_in"] else "custom"
            line = f"{marker} **{s['name']}** ({kind}, level {s['sensitivity_level']}): {s['description']}"
            if s["parent_scope"]:
                line += f" [parent: {s['parent_scope']}]"
            lines.append(line)
        return "\n".join(lines) + "\n"

    def scope_hierarchy() -> str:
        tree = vault.scope_hierarchy()
        lines = ["## Scope Hierarchy", ""]

        def walk(name: str, depth: int) -> None:
            node = tree[name]
            lines.append(f"{'  ' * depth}- {name} (level {node['sensitivity']})")
            for child in sorted(node["children"]):
                walk(child, depth + 1)

        for name, node in tree.items():
            if not node["parent"] or node["parent"] not in tree:
                walk(name, 0)
        return "\n".join(lines) + "\n"

    # ── OTP ───────────────────────────────────────────────────

    def setup_otp(
        issuer: str | None = None,
        label: str | None = None,
        digits: int | None = None,
        period: int | None = None,
    ) -> str:
        result = vault.setup_otp(issuer=issuer, label=label, digits=digits, period=period)
        lines = [
            "# OTP Setup Complete 🔐",
            "",
            f"**Secret Key (manual entry):** `{result.secret}`",
            f"**Provisioning URI:** {result.provisioning_uri}",
            "",
            "## Backup Codes (each works once)",
            "",
        ]
        lines.extend(f"{i}. `{code}`" for i, code in enumerate(result.backup_codes, 1))
        lines.append("")
        lines.append("Use `verify_otp` with a token from your authenticator app to unlock data.")
        return "\n".join(lines) + "\n"

    def verify_otp(token: str, use_backup_code: bool = False, user_id: str | None = None) -> str:
        result = vault.verify_otp(token, use_backup_code=use_backup_code, user_id=user_id)
        if not result.valid:
            return "❌ Invalid OTP token. Please check your authenticator app and try again."
        lines = ["✅ OTP verified. Encrypted data is unlocked.", ""]
        if result.time_remaining:
            lines.append(f"⏰ Token expires in: {result.time_remaining} seconds")
        lines.append(f"🔑 Session valid for: {SESSION_TTL // 60} minutes")
        if result.used_backup_code:
            lines.append("⚠️ Backup code used: it cannot be used again.")
        return "\n".join(lines) + "\n"

    def lock_otp() -> str:
        if vault.lock():
            return "🔒 Session locked. Verify an OTP token to access encrypted data again."
        return "No active OTP session."

    def disable_otp() -> str:
        vault.disable_otp()
        return "✅ OTP disabled. Secret and backup codes are kept; run enable_otp to re-enable."

    def enable_otp() -> str:
        vault.enable_otp()
        return "✅ OTP re-enabled. Verify a token to unlock encrypted data."

    def otp_status() -> str:
        status = vault.otp_status()
        lines = [
            "## OTP Status",
            "",
            f"- **Encryption:** {'enabled' if status['encryption_enabled'] else 'disabled'}",
            f"- **OTP configured:** {status['configured']}",
            f"- **OTP enabled:** {status['enabled']}",
            f"- **Backup codes remaining:** {status['backup_codes_remaining']}",
            f"- **State:** {status['state']}",
        ]
        session = status["session"]
        if session["active"]:
            lines.append(f"- **Session:** active ({session['seconds_remaining']}s remaining)")
        else:
            lines.append("- **Session:** none")
        return "\n".join(lines) + "\n"

    def otp_debug() -> str:
        info = vault.otp_debug()
        if not info["enabled"]:
            return "OTP is not enabled."
        return (
            "## OTP Debug\n\n"
            f"- **Current token:** {info['current_token']}\n"
            f"- **Next token:** {info['next_token']}\n"
            f"- **Time remaining:** {info['time_remaining']}s\n"
            f"- **Secret:** {info['secret_preview']}\n"
        )

    def regenerate_backup_codes() -> str:
        codes = vault.regenerate_backup_codes()
        lines = ["✅ New backup codes generated. Previous codes no longer work.", ""]
        lines.extend(f"{i}. `{code}`" for i, code in enumerate(codes, 1))
        return "\n".join(lines) + "\n"

    tools = {
        "save_personal_info": save_personal_info,
        "get_personal_info": get_personal_info,
        "update_personal_info": update_personal_info,
        "delete_personal_info": delete_personal_info,
        "list_available_personal_info": list_available_personal_info,
        "search_personal_info": search_personal_info,
        "search_memories": search_memories,
        "batch_get_personal_info": batch_get_personal_info,
        "batch_save_personal_info": batch_save_personal_info,
        "create_personal_scope": create_personal_scope,
        "delete_personal_scope": delete_personal_scope,
        "list_personal_scopes": list_personal_scopes,
        "scope_hierarchy": scope_hierarchy,
        "setup_otp": setup_otp,
        "verify_otp": verify_otp,
        "lock_otp": lock_otp,
        "disable_otp": disable_otp,
        "enable_otp": enable_otp,
        "otp_status": otp_status,
        "otp_debug": otp_debug,
        "regenerate_backup_codes": regenerate_backup_codes,
    }
    return {name: _tool(name, fn) for name, fn in tools.items()}
