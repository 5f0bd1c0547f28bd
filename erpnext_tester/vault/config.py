"""
Vault Configuration — Master key loading and validated settings.

Reads settings from environment variables:
    ENCRYPTION_KEY_BASE64 = <base64-encoded 32-byte key>   (required)
    DATABASE_URL = <postgres DSN>                          (required)
    APP_ENV = development | production | test
    ERPNEXT_REQUEST_TIMEOUT = <seconds>
    VAULT_ROTATION_BATCH_SIZE = <rows per batch>

The configuration is built once at startup and passed explicitly to the
components that need it. Any invalid value is a fatal ``ConfigurationError``.

Security Note:
    Never log key material. Only log variable names and key fingerprints.
"""
import os
import logging
from typing import Literal, Optional
from collections.abc import Mapping

from pydantic import BaseModel, Field, ValidationError, field_validator

from .crypto import decode_master_key, key_fingerprint
from .exceptions import ConfigurationError

logger = logging.getLogger("erpnext_tester.vault")

# Environment variable -> VaultConfig field
_ENV_FIELDS = {
    "ENCRYPTION_KEY_BASE64": "master_key",
    "DATABASE_URL": "database_url",
    "APP_ENV": "environment",
    "ERPNEXT_REQUEST_TIMEOUT": "request_timeout",
    "VAULT_ROTATION_BATCH_SIZE": "rotation_batch_size",
}
_FIELD_ENV = {field: name for name, field in _ENV_FIELDS.items()}


def load_master_key(environ: Optional[Mapping[str, str]] = None) -> bytes:
    """Load the master key from ENCRYPTION_KEY_BASE64.

    Returns:
        Raw 32-byte key.

    Raises:
        ConfigurationError: If the variable is missing or does not decode
            to exactly 32 bytes.
    """
    env = os.environ if environ is None else environ
    value = env.get("ENCRYPTION_KEY_BASE64")
    if not value:
        raise ConfigurationError(
            "ENCRYPTION_KEY_BASE64 is required. "
            "Set ENCRYPTION_KEY_BASE64=<base64-encoded-32-byte-key>"
        )
    try:
        return decode_master_key(value)
    except ConfigurationError:
        raise ConfigurationError(
            "ENCRYPTION_KEY_BASE64 must decode to exactly 32 bytes"
        ) from None


class VaultConfig(BaseModel):
    """Validated process configuration."""

    master_key: bytes = Field(repr=False)
    database_url: str = Field(repr=False)
    environment: Literal["development", "production", "test"] = "development"
    request_timeout: float = Field(default=30.0, gt=0)
    rotation_batch_size: int = Field(default=100, ge=1, le=10000)

    model_config = {"frozen": True}

    @field_validator("master_key")
    @classmethod
    def validate_master_key_length(cls, v: bytes) -> bytes:
        """Ensure the master key is exactly 32 raw bytes."""
        if len(v) != 32:
            raise ValueError("master key must be exactly 32 bytes")
        return v

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("database url is required")
        return v

    @property
    def key_fingerprint(self) -> str:
        return key_fingerprint(self.master_key)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "VaultConfig":
        """Create VaultConfig by loading values from environment.

        Every variable is checked before failing, so one error names all
        of the missing or invalid ones.

        Raises:
            ConfigurationError: Naming every invalid variable, never its value.
        """
        env = os.environ if environ is None else environ
        failed: set[str] = set()
        values: dict = {}
        try:
            values["master_key"] = load_master_key(env)
        except ConfigurationError:
            failed.add("ENCRYPTION_KEY_BASE64")
        for name, field in _ENV_FIELDS.items():
            if field == "master_key":
                continue
            raw = env.get(name)
            if raw is not None and raw != "":
                values[field] = raw
        if "database_url" not in values:
            failed.add("DATABASE_URL")
        try:
            config = cls(**values)
        except ValidationError as err:
            failed.update(
                _FIELD_ENV.get(str(e["loc"][0]), str(e["loc"][0]))
                for e in err.errors()
            )
            config = None
        if failed:
            raise ConfigurationError(
                f"Missing or invalid configuration: {', '.join(sorted(failed))}"
            )
        return config


def load_config(environ: Optional[Mapping[str, str]] = None) -> VaultConfig:
    """Validate configuration once at startup, failing fast.

    Raises:
        ConfigurationError: On any missing or invalid setting.
    """
    try:
        config = VaultConfig.from_env(environ)
    except ConfigurationError as err:
        logger.error("Configuration validation failed: %s", err)
        raise
    logger.info(
        "Configuration validated (env=%s, master key %s)",
        config.environment, config.key_fingerprint,
    )
    return config
