"""Entry point: python -m pvault [status|setup-otp|scopes]

- No args / "status": Show configuration, OTP and session state
- "setup-otp":        Configure OTP and print the secret + backup codes
- "scopes":           List scopes and whether this session may use them
"""

from __future__ import annotations

import logging
import sys

from pvault.config import load_config
from pvault.errors import VaultError


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _build_tools():
    config = load_config()
    _setup_logging(config.log_level)

    from pvault.core import PersonalVault
    from pvault.tools.vault_tools import get_vault_tools

    return get_vault_tools(PersonalVault(config))


def main() -> None:
    cmd = sys.argv[1] if len(sys.argv) > 1 else "status"
    commands = {
        "status": "otp_status",
        "setup-otp": "setup_otp",
        "scopes": "list_personal_scopes",
    }
    if cmd not in commands:
        print("Usage: python -m pvault [status|setup-otp|scopes]")
        print("  status     — Configuration, OTP and session state (default)")
        print("  setup-otp  — Configure OTP, print secret and backup codes")
        print("  scopes     — List scopes and access")
        sys.exit(1)

    try:
        tools = _build_tools()
    except VaultError as e:
        print(f"❌ {e}", file=sys.stderr)
        sys.exit(2)
    print(tools[commands[cmd]]())


if __name__ == "__main__":
    main()
