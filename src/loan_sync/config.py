"""
Configuration for loan-sync.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

PLUGIN_NAME = "datasette-loan-sync"


def _resolve_secret(value: str | None, env_name: str | None) -> str | None:
    """Return an inline secret, falling back to the named environment variable."""
    if value:
        return value
    if env_name:
        return os.environ.get(env_name)
    return None


@dataclass
class LibraryConfig:
    """Library circulation API configuration."""

    api_base: str = "https://lib.knue.ac.kr/pyxis-api"
    login_id: str | None = None
    login_id_env: str | None = "LIBRARY_USER_ID"
    password: str | None = None
    password_env: str | None = "LIBRARY_PASSWORD"
    timeout_seconds: float = 5.0
    max_retries: int = 2
    backoff_base_seconds: float = 0.2
    page_size: int = 20

    def get_login_id(self) -> str | None:
        """Get login id from config or environment."""
        return _resolve_secret(self.login_id, self.login_id_env)

    def get_password(self) -> str | None:
        """Get password from config or environment."""
        return _resolve_secret(self.password, self.password_env)


@dataclass
class MetadataConfig:
    """Book metadata (Aladin ItemLookUp) configuration."""

    enabled: bool = True
    api_base: str = "https://www.aladin.co.kr/ttb/api"
    ttb_key: str | None = None
    ttb_key_env: str | None = "ALADIN_API_KEY"
    timeout_seconds: float = 3.0
    cache_ttl_seconds: float = 3600.0  # 1 hour

    def get_ttb_key(self) -> str | None:
        """Get API key from config or environment."""
        return _resolve_secret(self.ttb_key, self.ttb_key_env)


@dataclass
class RenewalConfig:
    """Automatic renewal configuration."""

    enabled: bool = False
    max_renew_count: int = 0
    days_before_due: int = 2
    utc_offset_minutes: int = 9 * 60  # KST


@dataclass
class AlertConfig:
    """Telegram alert channel for scheduled failures."""

    api_base: str = "https://api.telegram.org"
    bot_token: str | None = None
    bot_token_env: str | None = "TELEGRAM_BOT_TOKEN"
    chat_id: str | None = None
    chat_id_env: str | None = "TELEGRAM_CHAT_ID"
    timeout_seconds: float = 5.0

    def get_bot_token(self) -> str | None:
        return _resolve_secret(self.bot_token, self.bot_token_env)

    def get_chat_id(self) -> str | None:
        return _resolve_secret(self.chat_id, self.chat_id_env)


@dataclass
class SyncConfig:
    """Complete loan-sync configuration."""

    db_path: Path = field(default_factory=lambda: Path("loan_sync.db"))
    schedule: str = "*/60 * * * *"  # Hourly
    concurrency: int = 10

    library: LibraryConfig = field(default_factory=LibraryConfig)
    metadata: MetadataConfig = field(default_factory=MetadataConfig)
    renewal: RenewalConfig = field(default_factory=RenewalConfig)
    alerts: AlertConfig = field(default_factory=AlertConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SyncConfig":
        """Create config from a dictionary (e.g., from YAML)."""
        config = cls()

        if "db_path" in data:
            config.db_path = Path(data["db_path"])
        if "schedule" in data:
            config.schedule = data["schedule"]
        if "concurrency" in data:
            config.concurrency = max(1, int(data["concurrency"]))

        if "library" in data:
            lib = data["library"]
            defaults = LibraryConfig()
            config.library = LibraryConfig(
                api_base=lib.get("api_base", defaults.api_base),
                login_id=lib.get("login_id"),
                login_id_env=lib.get("login_id_env", defaults.login_id_env),
                password=lib.get("password"),
                password_env=lib.get("password_env", defaults.password_env),
                timeout_seconds=lib.get("timeout_seconds", defaults.timeout_seconds),
                max_retries=lib.get("max_retries", defaults.max_retries),
                backoff_base_seconds=lib.get(
                    "backoff_base_seconds", defaults.backoff_base_seconds
                ),
                page_size=lib.get("page_size", defaults.page_size),
            )

        if "metadata" in data:
            md = data["metadata"]
            defaults = MetadataConfig()
            config.metadata = MetadataConfig(
                enabled=md.get("enabled", True),
                api_base=md.get("api_base", defaults.api_base),
                ttb_key=md.get("ttb_key"),
                ttb_key_env=md.get("ttb_key_env", defaults.ttb_key_env),
                timeout_seconds=md.get("timeout_seconds", defaults.timeout_seconds),
                cache_ttl_seconds=md.get("cache_ttl_seconds", defaults.cache_ttl_seconds),
            )

        if "renewal" in data:
            rn = data["renewal"]
            defaults = RenewalConfig()
            config.renewal = RenewalConfig(
                enabled=rn.get("enabled", False),
                max_renew_count=rn.get("max_renew_count", defaults.max_renew_count),
                days_before_due=rn.get("days_before_due", defaults.days_before_due),
                utc_offset_minutes=rn.get("utc_offset_minutes", defaults.utc_offset_minutes),
            )

        if "alerts" in data:
            al = data["alerts"]
            defaults = AlertConfig()
            config.alerts = AlertConfig(
                api_base=al.get("api_base", defaults.api_base),
                bot_token=al.get("bot_token"),
                bot_token_env=al.get("bot_token_env", defaults.bot_token_env),
                chat_id=al.get("chat_id"),
                chat_id_env=al.get("chat_id_env", defaults.chat_id_env),
                timeout_seconds=al.get("timeout_seconds", defaults.timeout_seconds),
            )

        return config

    @classmethod
    def from_yaml(cls, path: Path) -> "SyncConfig":
        """Load config from a YAML file (datasette.yaml format)."""
        if not path.exists():
            return cls()

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        # Config lives under plugins.datasette-loan-sync
        plugin_config = data.get("plugins", {}).get(PLUGIN_NAME, {}) or {}
        return cls.from_dict(plugin_config)

    def to_dict(self) -> dict[str, Any]:
        """Convert config to dictionary for JSON serialization (no secrets)."""
        return {
            "db_path": str(self.db_path),
            "schedule": self.schedule,
            "concurrency": self.concurrency,
            "library": {
                "api_base": self.library.api_base,
                "timeout_seconds": self.library.timeout_seconds,
                "max_retries": self.library.max_retries,
                "backoff_base_seconds": self.library.backoff_base_seconds,
                "page_size": self.library.page_size,
            },
            "metadata": {
                "enabled": self.metadata.enabled,
                "api_base": self.metadata.api_base,
                "timeout_seconds": self.metadata.timeout_seconds,
                "cache_ttl_seconds": self.metadata.cache_ttl_seconds,
            },
            "renewal": {
                "enabled": self.renewal.enabled,
                "max_renew_count": self.renewal.max_renew_count,
                "days_before_due": self.renewal.days_before_due,
            },
        }
