"""Configuration module for the Passkey Service.

This module loads the service configuration and exposes the relying-party
settings the WebAuthn ceremonies depend on.

Config discovery:
-----------------
The config file is discovered in the following order: (1) via the
`PASSKEY_SERVICE_CONFIG_PATH` environment variable, (2) `.env` in the project
root, (3) fallback to environment variables only. This allows the service to
run with just environment variables in containerized deployments and CI.

Passkey support:
----------------
Passkeys are only enabled when `WEBAUTHN_RP_ID` is set and
`WEBAUTHN_ALLOWED_ORIGINS` holds at least one origin. Without both, every
ceremony call fails with a `ConfigurationError`.

How to extend/maintain:
-----------------------
- Add new config fields to the `Settings` class, and document them.
- If you change the config discovery logic, update this docstring.
"""

import os
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from passkey_service.models.passkey_models import PasskeyConfig

# --- Constants ---
DEFAULT_ENV_FILENAME: str = ".env"
CONFIG_ENV_VAR: str = "PASSKEY_SERVICE_CONFIG_PATH"
PROJECT_ROOT: Path = Path(__file__).resolve().parent.parent.parent


# --- Config file discovery (no logging) ---
def get_config_path() -> Optional[str]:
    """Determine the config file path to use, in order of precedence:
    1. Environment variable PASSKEY_SERVICE_CONFIG_PATH
    2. .env in project root
    3. None (fallback to environment variables only)

    Returns:
        Optional[str]: Path to config file, or None if not found.
    """
    env_path: Optional[str] = os.environ.get(CONFIG_ENV_VAR)
    if env_path and os.path.exists(env_path):
        return env_path
    env_path_file: Path = PROJECT_ROOT / DEFAULT_ENV_FILENAME
    if env_path_file.exists():
        return str(env_path_file)
    return None


CONFIG_PATH: Optional[str] = get_config_path()
if CONFIG_PATH:
    load_dotenv(dotenv_path=CONFIG_PATH, override=True)


class Settings(BaseSettings):
    """Service settings with environment variable support.
    All fields are loaded from the environment or the .env file.
    """

    model_config = SettingsConfigDict(
        env_file=CONFIG_PATH if CONFIG_PATH else None,
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="allow",
    )

    # Application / logging
    APP_NAME: str = "Passkey_Service"
    ENV: str = "dev"
    LOG_LEVEL: str = "INFO"
    LOG_FILE: Optional[str] = None

    # MongoDB configuration
    MONGODB_URL: str = "mongodb://localhost:27017/?replicaSet=rs0"
    MONGODB_DATABASE: str = "passkey_service"
    MONGODB_CONNECTION_TIMEOUT: int = 10000
    MONGODB_SERVER_SELECTION_TIMEOUT: int = 5000
    MONGODB_USERNAME: Optional[str] = None
    MONGODB_PASSWORD: Optional[SecretStr] = None

    # Collections
    WEBAUTHN_CHALLENGES_COLLECTION: str = "webauthn_challenges"
    WEBAUTHN_CREDENTIALS_COLLECTION: str = "webauthn_credentials"
    USERS_COLLECTION: str = "users"
    DOMAIN_EVENTS_COLLECTION: str = "domain_events"

    # WebAuthn relying party
    WEBAUTHN_RP_ID: Optional[str] = None
    WEBAUTHN_RP_NAME: str = "Passkey Service"
    WEBAUTHN_ALLOWED_ORIGINS: str = ""  # Comma-separated list
    WEBAUTHN_CHALLENGE_TTL_SECONDS: int = 300  # 5 minutes
    WEBAUTHN_USER_VERIFICATION: str = "preferred"
    WEBAUTHN_RESIDENT_KEY: str = "preferred"

    @field_validator("MONGODB_URL", mode="before")
    @classmethod
    def no_empty_urls(cls, v, info):
        if not v or not str(v).strip():
            raise ValueError(f"{info.field_name} must be set via environment or .env and not empty!")
        return v

    @field_validator("WEBAUTHN_CHALLENGE_TTL_SECONDS", mode="before")
    @classmethod
    def validate_challenge_ttl(cls, v, info):
        """Validate the challenge lifetime is a sane number of seconds."""
        ttl = int(v)
        if ttl < 1 or ttl > 86400:
            raise ValueError(f"{info.field_name} must be between 1 and 86400 seconds")
        return ttl

    @field_validator("WEBAUTHN_RP_ID", mode="before")
    @classmethod
    def blank_rp_id_is_unset(cls, v):
        if v is None or not str(v).strip():
            return None
        return str(v).strip()

    @field_validator("WEBAUTHN_USER_VERIFICATION", "WEBAUTHN_RESIDENT_KEY", mode="before")
    @classmethod
    def validate_requirement(cls, v, info):
        value = str(v).strip().lower()
        if value not in ("required", "preferred", "discouraged"):
            raise ValueError(f"{info.field_name} must be one of: required, preferred, discouraged")
        return value

    @property
    def webauthn_allowed_origins_list(self) -> List[str]:
        """Get list of origins allowed to complete WebAuthn ceremonies."""
        if not self.WEBAUTHN_ALLOWED_ORIGINS:
            return []
        return [origin.strip() for origin in self.WEBAUTHN_ALLOWED_ORIGINS.split(",") if origin.strip()]

    @property
    def passkey_config(self) -> PasskeyConfig:
        """Relying-party configuration handed to the passkey orchestrator."""
        return PasskeyConfig(
            rp_id=self.WEBAUTHN_RP_ID,
            rp_name=self.WEBAUTHN_RP_NAME,
            allowed_origins=self.webauthn_allowed_origins_list,
            challenge_ttl_seconds=self.WEBAUTHN_CHALLENGE_TTL_SECONDS,
            user_verification=self.WEBAUTHN_USER_VERIFICATION,
            resident_key=self.WEBAUTHN_RESIDENT_KEY,
        )


# Global settings instance
settings: Settings = Settings()
