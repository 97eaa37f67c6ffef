"""Tests for the text tool layer."""

import pytest
from pathlib import Path

from pvault.config import EncryptionConfig, ScopeConfig, StorageConfig, VaultConfig
from pvault.core import PersonalVault
from pvault.tools.vault_tools import get_vault_tools


def _vault(tmp_path: Path, scopes: str = "all", encrypted: bool = False) -> PersonalVault:
    return PersonalVault(
        VaultConfig(
            storage=StorageConfig(data_dir=tmp_path / "data", backup_dir=tmp_path / "backups"),
            encryption=EncryptionConfig(
                enabled=encrypted, key="k" if encrypted else None, iterations=1000
            ),
            scopes=ScopeConfig(allowed=scopes),
        )
    )


@pytest.fixture
def tools(tmp_path: Path) -> dict:
    return get_vault_tools(_vault(tmp_path))


class TestToolRegistry:
    def test_all_tools_present(self, tools: dict):
        expected = {
            "save_personal_info", "get_personal_info", "update_personal_info",
            "delete_personal_info", "list_available_personal_info", "search_personal_info",
            "search_memories", "batch_get_personal_info", "batch_save_personal_info",
            "create_personal_scope", "delete_personal_scope", "list_personal_scopes",
            "scope_hierarchy", "setup_otp", "verify_otp", "lock_otp", "disable_otp",
            "enable_otp", "otp_status", "otp_debug",
            "regenerate_backup_codes",
        }
        assert set(tools) == expected
        assert all(callable(fn) for fn in tools.values())


class TestRecordTools:
    def test_save_and_get(self, tools: dict):
        out = tools["save_personal_info"](category="phone", content="555-1234", scope="contact")
        assert out.startswith("✅")
        out = tools["get_personal_info"](category="phone")
        assert "## Phone Information" in out
        assert "555-1234" in out

    def test_not_found_is_plain_text(self, tools: dict):
        assert tools["get_personal_info"](category="phone") == "No phone information found."

    def test_validation_error_rendered(self, tools: dict):
        out = tools["save_personal_info"](category="../x", content="y", scope="contact")
        assert out.startswith("❌ Error in save_personal_info:")

    def test_list_available(self, tools: dict):
        assert tools["list_available_personal_info"]() == "No personal information found."
        tools["save_personal_info"](category="phone", content="555", scope="contact", subcategory="work")
        out = tools["list_available_personal_info"]()
        assert "**phone**" in out
        assert "work" in out

    def test_search_memories_only_looks_in_memories(self, tools: dict):
        tools["save_personal_info"](category="note", content="Lisbon", scope="personal")
        assert tools["search_memories"](query="lisbon").startswith("No memories found")
        tools["save_personal_info"](category="trip", content="Lisbon", scope="memories")
        assert "trip" in tools["search_memories"](query="lisbon")

    def test_batch_save_summary(self, tools: dict):
        out = tools["batch_save_personal_info"](
            items=[{"category": "phone", "content": "1"}, {"category": "email", "content": "2"}],
            scope="contact",
        )
        assert out.startswith("Batch save: 2/2 succeeded")


class TestAccessTools:
    def test_denied_is_rendered(self, tmp_path: Path):
        tools = get_vault_tools(_vault(tmp_path, scopes="public"))
        out = tools["save_personal_info"](category="ssn", content="x", scope="sensitive")
        assert out.startswith("❌ Error in save_personal_info: Access denied")

    def test_scope_tools(self, tools: dict):
        assert tools["create_personal_scope"](name="work", description="Work stuff").startswith("✅")
        assert "❌" in tools["create_personal_scope"](name="public", description="Shadowing")
        assert "**work**" in tools["list_personal_scopes"](custom_only=True)
        assert tools["delete_personal_scope"](name="work").startswith("✅")
        assert tools["delete_personal_scope"](name="work") == "Custom scope 'work' does not exist."

    def test_hierarchy(self, tools: dict):
        tools["create_personal_scope"](name="work", description="Work stuff", parent_scope="personal")
        out = tools["scope_hierarchy"]()
        assert "- personal (level 6)\n  - work (level 5)" in out


class TestOTPTools:
    def test_auth_required_rendered(self, tmp_path: Path):
        tools = get_vault_tools(_vault(tmp_path, encrypted=True))
        out = tools["get_personal_info"](category="phone")
        assert out.startswith("🔒 Encryption is enabled but OTP is not set up")

    def test_setup_and_status(self, tmp_path: Path):
        tools = get_vault_tools(_vault(tmp_path, encrypted=True))
        out = tools["setup_otp"]()
        assert "Secret Key" in out
        assert "otpauth://" in out
        status = tools["otp_status"]()
        assert "**OTP enabled:** True" in status
        assert "**Backup codes remaining:** 10" in status
        assert tools["verify_otp"](token="000000x").startswith("❌ Invalid OTP token")
        assert tools["lock_otp"]() == "No active OTP session."
        assert "Current token" in tools["otp_debug"]()

        assert tools["disable_otp"]().startswith("✅")
        assert tools["otp_debug"]() == "OTP is not enabled."
        assert tools["enable_otp"]().startswith("✅")
        assert "**OTP enabled:** True" in tools["otp_status"]()
