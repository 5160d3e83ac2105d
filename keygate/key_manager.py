"""Registry of issued API keys and the OAuth tokens they are bound to.

Records live in ``<data_dir>/keys.json`` as a JSON object keyed by API key.
At most one record is active at a time; only the active record keeps its
OAuth token in plaintext, every other token is sealed with a key derived
from the admin password hash (see :mod:`keygate.encryption`).

The registry also keeps the engine credential file managed by
:class:`keygate.claude_auth.ClaudeAuthStore` in step with its own view of
the active record when it starts up.
"""

from __future__ import annotations

import hashlib
import secrets
import threading
from contextlib import contextmanager
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Union

import structlog
from prometheus_client import Counter

from keygate.claude_auth import ClaudeAuthStore
from keygate.encryption import EncryptedSecret, PlainSecret, Secret, seal, secret_from_json, secret_to_json, unseal
from keygate.errors import ConfigurationError, ExternalStoreError, PersistenceError
from keygate.storage import read_json, write_json_atomic
from keygate.time_utils import isoformat_z

logger = structlog.get_logger(__name__)

KEYS_FILENAME = "keys.json"
API_KEY_MARKER = "T3BlbkFJ"
API_KEY_SEGMENT_LENGTH = 20
IMPORTED_KEY_NAME = "imported"
DEFAULT_KEY_NAME = "default"
LEGACY_TOKEN_DISPLAY = "sk-ant-oat01-...****"

REGISTRY_MUTATIONS = Counter(
    "keygate_registry_mutations_total",
    "Key registry mutations persisted to disk",
    ("operation",),
)

EXTERNAL_SYNC_FAILURES = Counter(
    "keygate_external_sync_failures_total",
    "Failures synchronising the engine credential file",
    ("operation",),
)


def generate_api_key() -> str:
    """Return a new OpenAI-style API key."""

    # 15 random bytes encode to exactly 20 URL-safe characters.
    prefix = secrets.token_urlsafe(15)[:API_KEY_SEGMENT_LENGTH]
    suffix = secrets.token_urlsafe(15)[:API_KEY_SEGMENT_LENGTH]
    return f"sk-{prefix}{API_KEY_MARKER}{suffix}"


def display_api_key(api_key: str) -> str:
    return f"{api_key[:20]}...{api_key[-4:]}"


def display_oauth_token(token: str) -> str:
    return f"{token[:12]}...{token[-4:]}"


def key_id_for(api_key: str) -> str:
    """Stable opaque identifier for *api_key*, safe to expose in URLs."""

    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()[:16]


@dataclass
class ApiKeyRecord:
    api_key: str
    api_key_display: str
    oauth_token: Secret
    oauth_token_display: str
    key_name: str
    is_active: bool
    created_at: str
    last_used: Optional[str] = None

    @property
    def key_id(self) -> str:
        return key_id_for(self.api_key)

    def to_json(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "apiKey": self.api_key,
            "apiKeyDisplay": self.api_key_display,
            "oauthToken": secret_to_json(self.oauth_token),
            "oauthTokenDisplay": self.oauth_token_display,
            "keyName": self.key_name,
            "isActive": self.is_active,
            "createdAt": self.created_at,
        }
        if self.last_used:
            data["lastUsed"] = self.last_used
        return data

    def to_display(self) -> Dict[str, Any]:
        return {
            "keyId": self.key_id,
            "apiKeyDisplay": self.api_key_display,
            "oauthTokenDisplay": self.oauth_token_display,
            "keyName": self.key_name,
            "isActive": self.is_active,
            "createdAt": self.created_at,
            "lastUsed": self.last_used,
        }


@dataclass(frozen=True)
class KeyContext:
    """Credentials resolved for an authenticated API request."""

    oauth_token: str
    key_name: str
    api_key: str


def _record_from_json(api_key: str, value: Any) -> tuple:
    """Parse one persisted entry; returns ``(record, needs_migration)``."""

    if not isinstance(value, dict):
        raise PersistenceError(f"Key registry entry for {display_api_key(api_key)} is not an object")
    try:
        token = secret_from_json(value.get("oauthToken"))
    except ValueError as exc:
        raise PersistenceError(
            f"Key registry entry for {display_api_key(api_key)} has an invalid oauthToken"
        ) from exc

    legacy = "apiKeyDisplay" not in value or "isActive" not in value
    token_display = value.get("oauthTokenDisplay")
    if not token_display:
        token_display = (
            display_oauth_token(token.value) if isinstance(token, PlainSecret) else LEGACY_TOKEN_DISPLAY
        )
        legacy = True

    record = ApiKeyRecord(
        api_key=api_key,
        api_key_display=value.get("apiKeyDisplay") or display_api_key(api_key),
        oauth_token=token,
        oauth_token_display=token_display,
        key_name=value.get("keyName") or DEFAULT_KEY_NAME,
        is_active=bool(value.get("isActive", False)),
        created_at=value.get("createdAt") or isoformat_z(),
        last_used=value.get("lastUsed"),
    )
    return record, legacy


class KeyRegistry:
    """File-backed store of API key records.

    All public methods are safe to call from multiple threads; mutations are
    serialised through an instance lock and persisted before they return.
    """

    def __init__(
        self,
        data_dir: Union[str, Path],
        credential_store: ClaudeAuthStore,
        password_hash: Optional[str] = None,
    ) -> None:
        self.data_dir = Path(data_dir)
        self.keys_path = self.data_dir / KEYS_FILENAME
        self.credential_store = credential_store
        self._password_hash = password_hash or None
        self._records: Dict[str, ApiKeyRecord] = {}
        self._lock = threading.RLock()

    @property
    def is_configured(self) -> bool:
        """Whether an admin password hash is available for sealing tokens."""

        return self._password_hash is not None

    # ------------------------------------------------------------------
    # Sealing helpers
    # ------------------------------------------------------------------
    def _require_hash(self, action: str) -> str:
        if self._password_hash is None:
            raise ConfigurationError(f"Admin password hash is required to {action}")
        return self._password_hash

    def _seal(self, secret: Secret) -> EncryptedSecret:
        if isinstance(secret, EncryptedSecret):
            return secret
        return seal(secret, self._require_hash("encrypt OAuth tokens"))

    def _unseal(self, secret: Secret) -> PlainSecret:
        if isinstance(secret, PlainSecret):
            return secret
        return unseal(secret, self._require_hash("decrypt OAuth tokens"))

    def _deactivate_others(self, keep: Optional[str] = None) -> None:
        for api_key, record in self._records.items():
            if api_key == keep or not record.is_active:
                continue
            record.oauth_token = self._seal(record.oauth_token)
            record.is_active = False

    def _active_record(self) -> Optional[ApiKeyRecord]:
        for record in self._records.values():
            if record.is_active:
                return record
        return None

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------
    def _snapshot(self) -> Dict[str, ApiKeyRecord]:
        return {api_key: replace(record) for api_key, record in self._records.items()}

    def _save(self) -> None:
        payload = {api_key: record.to_json() for api_key, record in self._records.items()}
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
            write_json_atomic(self.keys_path, payload)
        except OSError as exc:
            logger.error("key_registry.persist_failed", path=str(self.keys_path), error=str(exc))
            raise PersistenceError("Failed to persist key registry") from exc

    @contextmanager
    def _mutation(self, operation: str) -> Iterator[None]:
        """Apply a mutation atomically: persist on success, roll back on error."""

        with self._lock:
            snapshot = self._snapshot()
            try:
                yield
                self._save()
            except BaseException:
                self._records = snapshot
                raise
        REGISTRY_MUTATIONS.labels(operation=operation).inc()

    def _load(self) -> bool:
        if not self.keys_path.exists():
            self._records = {}
            return False
        try:
            raw = read_json(self.keys_path)
        except (OSError, ValueError, UnicodeDecodeError) as exc:
            logger.error("key_registry.load_failed", path=str(self.keys_path), error=str(exc))
            raise PersistenceError("Key registry file is unreadable") from exc
        if not isinstance(raw, dict):
            raise PersistenceError("Key registry file must contain a JSON object")

        records: Dict[str, ApiKeyRecord] = {}
        needs_migration = False
        for api_key, value in raw.items():
            record, legacy = _record_from_json(api_key, value)
            records[api_key] = record
            needs_migration = needs_migration or legacy
        self._records = records
        return needs_migration

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------
    def initialize(self) -> None:
        """Load the registry, migrate legacy entries and reconcile."""

        with self._lock:
            self.data_dir.mkdir(parents=True, exist_ok=True)
            existed = self.keys_path.exists()
            needs_migration = self._load()
            if not existed:
                self._save()
            elif needs_migration:
                with self._mutation("migrate"):
                    self._migrate_legacy()
            elif sum(1 for record in self._records.values() if record.is_active) > 1:
                with self._mutation("repair"):
                    first = self._active_record()
                    self._deactivate_others(keep=first.api_key if first else None)
                logger.warning("key_registry.multiple_active_repaired")
            self._reconcile()
        logger.info("key_registry.initialized", keys=len(self._records), path=str(self.keys_path))

    def _migrate_legacy(self) -> None:
        external_suffix = self.credential_store.get_active_token_suffix()
        active_assigned = False
        migrated = 0
        for record in self._records.values():
            matches = bool(external_suffix) and record.oauth_token_display.endswith(external_suffix)
            if matches and not active_assigned:
                record.oauth_token = self._unseal(record.oauth_token)
                record.is_active = True
                active_assigned = True
            else:
                record.oauth_token = self._seal(record.oauth_token)
                record.is_active = False
            migrated += 1
        logger.info("key_registry.legacy_migrated", records=migrated, active_found=active_assigned)

    def _reconcile(self) -> None:
        external_suffix = self.credential_store.get_active_token_suffix()
        active = self._active_record()

        if active is not None and external_suffix is None:
            token = self._unseal(active.oauth_token).value
            try:
                self.credential_store.activate_token(token)
            except ExternalStoreError as exc:
                EXTERNAL_SYNC_FAILURES.labels(operation="reconcile_push").inc()
                logger.warning("key_registry.reconcile_push_failed", error=str(exc))
                return
            logger.info("key_registry.reconcile_pushed", key=active.api_key_display)
            return

        if external_suffix is None:
            return
        if any(record.oauth_token_display.endswith(external_suffix) for record in self._records.values()):
            return

        token = self.credential_store.get_active_token()
        if not token:
            return
        try:
            with self._mutation("import"):
                self._deactivate_others()
                api_key = generate_api_key()
                self._records[api_key] = ApiKeyRecord(
                    api_key=api_key,
                    api_key_display=display_api_key(api_key),
                    oauth_token=PlainSecret(token),
                    oauth_token_display=display_oauth_token(token),
                    key_name=IMPORTED_KEY_NAME,
                    is_active=True,
                    created_at=isoformat_z(),
                )
        except ConfigurationError as exc:
            EXTERNAL_SYNC_FAILURES.labels(operation="reconcile_import").inc()
            logger.warning("key_registry.reconcile_import_skipped", error=str(exc))
            return
        logger.info("key_registry.reconcile_imported", token=display_oauth_token(token))

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------
    def create_key(self, oauth_token: str, key_name: str = DEFAULT_KEY_NAME, make_active: bool = True) -> str:
        """Issue a new API key bound to *oauth_token* and return it."""

        if not oauth_token:
            raise ValueError("oauth_token must not be empty")
        api_key = generate_api_key()
        with self._mutation("create"):
            if make_active:
                self._deactivate_others()
                secret: Secret = PlainSecret(oauth_token)
            else:
                secret = self._seal(PlainSecret(oauth_token))
            self._records[api_key] = ApiKeyRecord(
                api_key=api_key,
                api_key_display=display_api_key(api_key),
                oauth_token=secret,
                oauth_token_display=display_oauth_token(oauth_token),
                key_name=key_name or DEFAULT_KEY_NAME,
                is_active=make_active,
                created_at=isoformat_z(),
            )
        logger.info(
            "key_registry.key_created",
            key=display_api_key(api_key),
            key_name=key_name,
            active=make_active,
        )
        return api_key

    def validate_key(self, api_key: str) -> Optional[KeyContext]:
        """Return the credentials for an active *api_key*, or ``None``."""

        with self._lock:
            record = self._records.get(api_key)
            if record is None or not record.is_active:
                return None
            token = self._unseal(record.oauth_token).value
            return KeyContext(oauth_token=token, key_name=record.key_name, api_key=api_key)

    def update_last_used(self, api_key: str) -> None:
        with self._lock:
            if api_key not in self._records:
                return
            with self._mutation("last_used"):
                self._records[api_key].last_used = isoformat_z()

    def activate_key(self, api_key: str) -> bool:
        """Make *api_key* the single active record; ``False`` if unknown."""

        with self._lock:
            if api_key not in self._records:
                return False
            with self._mutation("activate"):
                self._deactivate_others(keep=api_key)
                record = self._records[api_key]
                record.oauth_token = self._unseal(record.oauth_token)
                record.is_active = True
        logger.info("key_registry.key_activated", key=display_api_key(api_key))
        return True

    def deactivate_all_keys(self) -> int:
        """Seal every active token; returns the number of records changed."""

        self._require_hash("deactivate keys")
        with self._lock:
            changed = sum(1 for record in self._records.values() if record.is_active)
            with self._mutation("deactivate_all"):
                self._deactivate_others()
        logger.info("key_registry.keys_deactivated", count=changed)
        return changed

    def delete_key(self, api_key: str) -> bool:
        with self._lock:
            if api_key not in self._records:
                return False
            with self._mutation("delete"):
                del self._records[api_key]
        logger.info("key_registry.key_deleted", key=display_api_key(api_key))
        return True

    def list_keys(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [record.to_display() for record in self._records.values()]

    def get_active_record(self) -> Optional[ApiKeyRecord]:
        with self._lock:
            record = self._active_record()
            return replace(record) if record is not None else None

    def get_active_token(self) -> Optional[str]:
        """Return the plaintext token of the active record, if any."""

        with self._lock:
            record = self._active_record()
            if record is None:
                return None
            return self._unseal(record.oauth_token).value

    def find_key_by_id(self, key_id: str) -> Optional[str]:
        """Resolve an opaque ``keyId`` (or a raw API key) to the API key."""

        with self._lock:
            if key_id in self._records:
                return key_id
            for api_key in self._records:
                if key_id_for(api_key) == key_id:
                    return api_key
        return None

    def has_keys(self) -> bool:
        with self._lock:
            return bool(self._records)

    def knows_token_suffix(self, suffix: Optional[str]) -> bool:
        if not suffix:
            return False
        with self._lock:
            return any(record.oauth_token_display.endswith(suffix) for record in self._records.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


__all__ = [
    "ApiKeyRecord",
    "KeyContext",
    "KeyRegistry",
    "display_api_key",
    "display_oauth_token",
    "generate_api_key",
    "key_id_for",
]
