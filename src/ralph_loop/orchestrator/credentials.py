"""API key lookup: environment first, then the macOS keychain."""

from __future__ import annotations

import logging
import os
import subprocess
import sys

logger = logging.getLogger(__name__)

API_KEY_ENV = "ANTHROPIC_API_KEY"
KEYCHAIN_SERVICE = "ralph-cli"
KEYCHAIN_ACCOUNT = "anthropic-api-key"
_SECURITY_TIMEOUT_SECONDS = 10


class ApiKeyStore:
    """Credential collaborator for the preflight credential check."""

    def __init__(self, *, env_var: str = API_KEY_ENV, use_keychain: bool | None = None) -> None:
        self.env_var = env_var
        self.use_keychain = sys.platform == "darwin" if use_keychain is None else use_keychain

    def has_api_key(self) -> bool:
        """Whether a key is available; a keychain hit is exported into the environment."""

        if os.environ.get(self.env_var):
            return True
        if not self.use_keychain:
            return False
        key = self._read_keychain()
        if key is None:
            return False
        os.environ[self.env_var] = key
        return True

    def set_api_key(self, api_key: str, *, persist: bool = True) -> bool:
        """Export the key for this process and optionally store it in the keychain.

        Returns ``False`` only when persisting was requested and failed.
        """

        os.environ[self.env_var] = api_key
        if not persist or not self.use_keychain:
            return True
        return self._write_keychain(api_key)

    def _read_keychain(self) -> str | None:
        completed = self._security(
            "find-generic-password",
            "-a",
            KEYCHAIN_ACCOUNT,
            "-s",
            KEYCHAIN_SERVICE,
            "-w",
        )
        if completed is None or completed.returncode != 0:
            return None
        return completed.stdout.strip() or None

    def _write_keychain(self, api_key: str) -> bool:
        self._security("delete-generic-password", "-a", KEYCHAIN_ACCOUNT, "-s", KEYCHAIN_SERVICE)
        completed = self._security(
            "add-generic-password",
            "-a",
            KEYCHAIN_ACCOUNT,
            "-s",
            KEYCHAIN_SERVICE,
            "-w",
            api_key,
        )
        if completed is None or completed.returncode != 0:
            logger.warning(
                "Could not save API key to keychain; export %s manually instead",
                self.env_var,
            )
            return False
        return True

    def _security(self, *args: str) -> subprocess.CompletedProcess[str] | None:
        try:
            return subprocess.run(  # noqa: S603
                ["security", *args],  # noqa: S607
                check=False,
                capture_output=True,
                text=True,
                timeout=_SECURITY_TIMEOUT_SECONDS,
            )
        except (OSError, subprocess.TimeoutExpired) as error:
            logger.debug("security %s failed: %s", args[0], error)
            return None
