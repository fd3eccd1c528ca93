"""
Application Configuration.

Pydantic Settings model for the AccountDirectory service.
All configuration is loaded from environment variables and .env files.
Inject an AppConfig instance via dependency injection where needed.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Optional

from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings


class AppConfig(BaseSettings):
    """Central configuration loaded from environment variables and defaults."""

    # --- LDAP directory (primary store) ---
    LDAP_URL: str = "ldap://localhost:389"
    LDAP_BIND_DN: str = "cn=admin,dc=example,dc=com"
    LDAP_BIND_PASSWORD: SecretStr = SecretStr("")
    LDAP_USERS_OU: str = "ou=users,dc=example,dc=com"
    LDAP_TIMEOUT_S: float = 10.0

    # Extra objectClass carried by privileged entries, keyed by role value.
    # Empty mapping disables role-marker classes entirely.
    LDAP_ROLE_MARKER_CLASSES: dict[str, str] = Field(default_factory=lambda: {
        "admin": "admin",
        "moderator": "moderador",
    })
    LDAP_DEFAULT_UID_NUMBER: int = 1000
    LDAP_DEFAULT_GID_NUMBER: int = 100
    LDAP_LOGIN_SHELL: str = "/bin/bash"

    # --- Record codec ---
    DESCRIPTION_BUDGET: int = 200

    # --- Supabase (secondary store) ---
    SUPABASE_URL: str = ""
    SUPABASE_SERVICE_ROLE_KEY: SecretStr = SecretStr("")
    SUPABASE_USERS_TABLE: str = "usuarios"
    SQLITE_PATH: str = "accountdir_cache.db"

    # --- Kafka ingestion ---
    KAFKA_BOOTSTRAP_SERVERS: str = "localhost:9092"
    KAFKA_CLIENT_ID: str = "accountdir"
    KAFKA_GROUP_ID: str = "accountdir-user-provisioning"
    KAFKA_TOPICS: list[str] = Field(default_factory=lambda: ["users.events", "core.ingress"])
    KAFKA_CONFIRMATION_TOPIC: str = "users.events"
    EVENT_NAMESPACE: str = "users"
    INGESTION_ID_ATTEMPTS: int = 10
    CONSUMER_POLL_TIMEOUT_MS: int = 1000

    # --- Logging ---
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = "accountdir.log"
    LOG_MAX_BYTES: int = 5_242_880  # 5 MB
    LOG_BACKUP_COUNT: int = 3

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    @model_validator(mode="after")
    def _warn_missing_env(self) -> "AppConfig":
        """Emit a startup warning when critical configuration is empty.

        Pydantic silently falls back to defaults when ``.env`` is missing.
        This validator logs a warning so operators know the service is
        running with placeholder values.
        """
        _log = logging.getLogger("accountdir.config")

        if not Path(".env").exists():
            _log.warning(
                "No .env file found; all configuration loaded from "
                "environment variables or defaults."
            )

        if not self.LDAP_BIND_PASSWORD.get_secret_value():
            _log.warning(
                "LDAP_BIND_PASSWORD is empty; directory binds will fail "
                "and every operation will be served by the relational store."
            )

        if not self.SUPABASE_URL:
            _log.warning(
                "SUPABASE_URL is empty; the relational store will answer "
                "reads from the local cache only."
            )

        return self

    @property
    def confirmation_event_type(self) -> str:
        """Event type published after an ingested account is persisted."""
        return f"{self.EVENT_NAMESPACE}.user.provisioned"

    @property
    def created_event_type(self) -> str:
        """The only event type the ingestion consumer acts on."""
        return f"{self.EVENT_NAMESPACE}.user.created"


# ---------------------------------------------------------------------------
# Module-level singleton factory
# ---------------------------------------------------------------------------

_config_instance: Optional[AppConfig] = None
_config_lock: threading.Lock = threading.Lock()


def get_config() -> AppConfig:
    """Return a cached ``AppConfig`` singleton.

    Uses a check-lock-check pattern to avoid the lock overhead on the
    fast path while remaining thread-safe during first initialisation.
    Prefer constructor injection of ``AppConfig`` in new code.
    """
    global _config_instance
    if _config_instance is None:
        with _config_lock:
            if _config_instance is None:
                _config_instance = AppConfig()
    return _config_instance
