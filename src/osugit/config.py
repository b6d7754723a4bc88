"""
Settings for the osugit engine.

Resolution order for every value:
    1. Explicit overrides passed to load_settings (CLI flags)
    2. OSUGIT_* environment variables (after loading .env with python-dotenv)
    3. For the OAuth client id/secret only: the OS keychain (service "osugit")
    4. The defaults below

Settings are frozen once loaded; the engine treats them as immutable.
"""

import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

import keyring
from dotenv import load_dotenv
from keyring.errors import KeyringError
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from osugit.core.version_store import VersionStore
from osugit.errors import ConfigError
from osugit.ingestion.base import RankStatus
from osugit.utils.log import get_logger
from osugit.utils.paths import get_data_path

log = get_logger(__name__)

# Keychain coordinates
KEYCHAIN_SERVICE = "osugit"
KEYCHAIN_CLIENT_ID = "oauth_client_id"
KEYCHAIN_CLIENT_SECRET = "oauth_client_secret"

ENV_PREFIX = "OSUGIT_"


class Settings(BaseModel):
    model_config = ConfigDict(frozen=True)

    api_base_url: str = "https://osu.ppy.sh/api/v2"
    token_endpoint: str = "https://osu.ppy.sh/oauth/token"
    download_url: str = "https://osu.ppy.sh/osu/{file_id}"
    client_id: str
    client_secret: str
    storage_root_path: Path
    poll_interval: float = 30.0
    rank_status: RankStatus = RankStatus.PENDING
    max_concurrent_downloads: int = 16
    request_timeout: float = 30.0
    credential_skew_seconds: float = 0.0
    initial_watermark: Optional[datetime] = None
    log_level: str = "INFO"

    @field_validator("client_id", "client_secret")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be empty")
        return value

    @field_validator("poll_interval", "request_timeout")
    @classmethod
    def _positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("initial_watermark")
    @classmethod
    def _assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @field_validator("max_concurrent_downloads")
    @classmethod
    def _at_least_one(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value


def _from_keychain(account: str) -> Optional[str]:
    try:
        return keyring.get_password(KEYCHAIN_SERVICE, account)
    except KeyringError as e:
        log.warning("keychain_unavailable", account=account, error=str(e))
        return None


def load_settings(env_path: Optional[Path] = None, **overrides: Any) -> Settings:
    """
    Loads settings from .env, the environment and the keychain.

    Args:
        env_path: .env file to load. Defaults to ./.env if it exists.
        **overrides: Explicit values (e.g. from the CLI) that win over everything else.

    Raises:
        ConfigError: credentials are missing or a value does not validate
    """
    env_path = Path(env_path) if env_path else Path(os.getcwd()) / ".env"
    if env_path.exists():
        log.debug("dotenv_loaded", path=str(env_path))
        load_dotenv(dotenv_path=env_path, override=False)

    values: Dict[str, Any] = {}
    for name in Settings.model_fields:
        raw = os.getenv(ENV_PREFIX + name.upper())
        if raw is not None and raw.strip() != "":
            values[name] = raw.strip()

    values.update({k: v for k, v in overrides.items() if v is not None})

    if "client_id" not in values:
        values["client_id"] = _from_keychain(KEYCHAIN_CLIENT_ID) or ""
    if "client_secret" not in values:
        values["client_secret"] = _from_keychain(KEYCHAIN_CLIENT_SECRET) or ""
    if "storage_root_path" not in values:
        values["storage_root_path"] = get_data_path("repos")

    try:
        return Settings(**values)
    except ValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
        raise ConfigError(f"Invalid settings ({fields}): {e}") from e


def check_setup(settings: Settings) -> Dict[str, Any]:
    """Setup status as a JSON-serializable dict."""
    root = Path(settings.storage_root_path)
    histories = len(VersionStore(root).record_ids()) if root.exists() else 0

    return {
        "credentials": bool(settings.client_id and settings.client_secret),
        "storage_root": str(root),
        "storage_initialized": root.exists(),
        "histories": histories,
        "api_base_url": settings.api_base_url,
        "poll_interval": settings.poll_interval,
    }
