"""Bridge to the credential files consumed by the Claude completion engine.

The engine reads its OAuth credential from ``~/.claude/.credentials.json``
and expects a companion ``~/.claude.json`` configuration document.  Both
files belong to the engine and may be rewritten by other processes at any
time, so every read here treats a missing, half-written or malformed file as
"no active credential" instead of an error.
"""

from __future__ import annotations

import getpass
import hashlib
import time
from pathlib import Path
from typing import Any, Dict, Optional

import structlog

from keygate.errors import ExternalStoreError
from keygate.storage import read_json, write_json_atomic
from keygate.time_utils import isoformat_z

logger = structlog.get_logger(__name__)

OAUTH_SECTION = "claudeAiOauth"
TOKEN_SUFFIX_LENGTH = 4

_CREDENTIAL_DEFAULTS: Dict[str, Any] = {
    "expiresAt": "2099-12-31T23:59:59.999Z",
    "scopes": ["read", "write"],
    "subscriptionType": "pro",
}


def _default_engine_config() -> Dict[str, Any]:
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = "user"
    user_id = hashlib.sha256(f"{user}{int(time.time() * 1000)}".encode("utf-8")).hexdigest()
    return {
        "numStartups": 1,
        "installMethod": "api",
        "autoUpdates": True,
        "firstStartTime": isoformat_z(),
        "userID": user_id,
        "projects": {
            "/app": {
                "allowedTools": [],
                "history": [],
                "mcpContextUris": [],
                "mcpServers": {},
                "enabledMcpjsonServers": [],
                "disabledMcpjsonServers": [],
                "hasTrustDialogAccepted": True,
                "projectOnboardingSeenCount": 1,
                "hasClaudeMdExternalIncludesApproved": False,
                "hasClaudeMdExternalIncludesWarningShown": False,
            }
        },
        "oauthAccount": {
            "accountUuid": "00000000-0000-0000-0000-000000000001",
            "emailAddress": "api@keygate.local",
            "organizationUuid": "00000000-0000-0000-0000-000000000002",
            "organizationRole": "admin",
            "workspaceRole": None,
            "organizationName": "KeyGate",
        },
        "hasCompletedOnboarding": True,
        "lastOnboardingVersion": "1.0.53",
        "subscriptionNoticeCount": 0,
        "hasAvailableSubscription": True,
    }


class ClaudeAuthStore:
    """Reads and writes the engine's active OAuth credential."""

    def __init__(self, home: Optional[Path] = None) -> None:
        base = Path(home) if home is not None else Path.home()
        self.claude_dir = base / ".claude"
        self.credentials_path = self.claude_dir / ".credentials.json"
        self.config_path = base / ".claude.json"

    def _read_credentials(self) -> Optional[Dict[str, Any]]:
        try:
            document = read_json(self.credentials_path)
        except FileNotFoundError:
            return None
        except (OSError, ValueError, UnicodeDecodeError) as exc:
            logger.info("claude_auth.credentials_unreadable", error=str(exc))
            return None
        if not isinstance(document, dict):
            return None
        return document

    def get_active_token(self) -> Optional[str]:
        """Return the full access token currently configured, if any."""

        document = self._read_credentials()
        if not document:
            return None
        section = document.get(OAUTH_SECTION)
        if not isinstance(section, dict):
            return None
        token = section.get("accessToken")
        if isinstance(token, str) and token:
            return token
        return None

    def get_active_token_suffix(self) -> Optional[str]:
        """Return the last four characters of the active access token."""

        token = self.get_active_token()
        if token is None:
            return None
        return token[-TOKEN_SUFFIX_LENGTH:]

    def is_token_active(self, token: str) -> bool:
        suffix = self.get_active_token_suffix()
        if not suffix:
            return False
        return token.endswith(suffix)

    def activate_token(self, oauth_token: str) -> bool:
        """Write *oauth_token* as the engine credential.

        The first active credential wins: when a token is already configured
        this is a no-op and ``False`` is returned.  Returns ``True`` when the
        token was written.
        """

        if self.get_active_token_suffix():
            logger.info("claude_auth.activate_skipped", reason="token_already_active")
            return False

        existing = self._read_credentials() or {}
        section = dict(_CREDENTIAL_DEFAULTS)
        section["accessToken"] = oauth_token
        section["refreshToken"] = oauth_token
        existing[OAUTH_SECTION] = section
        try:
            self.claude_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
            write_json_atomic(self.credentials_path, existing)
            self._ensure_engine_config()
        except OSError as exc:
            logger.error("claude_auth.activate_failed", error=str(exc))
            raise ExternalStoreError("Failed to activate OAuth token in Claude configuration") from exc

        logger.info("claude_auth.token_activated", token_suffix=oauth_token[-TOKEN_SUFFIX_LENGTH:])
        return True

    def clear_active_token(self) -> bool:
        """Remove the active credential; returns ``False`` if none was set."""

        document = self._read_credentials()
        if not document or OAUTH_SECTION not in document:
            if self.credentials_path.exists() and document is None:
                # Unparseable leftovers would otherwise keep shadowing new tokens.
                try:
                    self.credentials_path.unlink()
                except OSError as exc:
                    raise ExternalStoreError("Failed to clear active OAuth token") from exc
                logger.info("claude_auth.token_cleared", removed_corrupt=True)
                return True
            return False

        document.pop(OAUTH_SECTION, None)
        try:
            if document:
                write_json_atomic(self.credentials_path, document)
            else:
                self.credentials_path.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.error("claude_auth.clear_failed", error=str(exc))
            raise ExternalStoreError("Failed to clear active OAuth token") from exc

        logger.info("claude_auth.token_cleared")
        return True

    def _ensure_engine_config(self) -> None:
        if self.config_path.exists():
            logger.debug("claude_auth.config_preserved", path=str(self.config_path))
            return
        write_json_atomic(self.config_path, _default_engine_config())
        logger.info("claude_auth.config_created", path=str(self.config_path))


def describe_files(store: ClaudeAuthStore) -> Dict[str, Any]:
    """Return a diagnostic summary of the engine credential files."""

    return {
        "credentialsPath": str(store.credentials_path),
        "credentialsExists": store.credentials_path.exists(),
        "configPath": str(store.config_path),
        "configExists": store.config_path.exists(),
        "activeTokenSuffix": store.get_active_token_suffix(),
    }


__all__ = ["ClaudeAuthStore", "OAUTH_SECTION", "describe_files"]
