"""
Vault Models — Connection records and credential pairs.

Security Note:
    ``ConnectionRecord`` is the only shape returned to callers for listing
    and lookup; it never carries sealed or plaintext secrets. Plaintext
    credentials only exist inside ``CredentialPair`` as ``SecretStr``.
"""
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field, SecretStr, field_validator
from yarl import URL

from .crypto import SealedSecret

NAME_MAX_LENGTH = 100


def normalize_name(value: str) -> str:
    """Trim a connection name and enforce 1..100 characters."""
    name = (value or "").strip()
    if not name:
        raise ValueError("Connection name is required")
    if len(name) > NAME_MAX_LENGTH:
        raise ValueError(
            f"Connection name cannot exceed {NAME_MAX_LENGTH} characters"
        )
    return name


def normalize_base_url(value: str) -> str:
    """Validate an absolute http(s) URL and strip the trailing slash."""
    raw = (value or "").strip()
    try:
        url = URL(raw)
    except (TypeError, ValueError):
        raise ValueError("base_url must be a valid URL") from None
    if not url.is_absolute() or url.scheme not in ("http", "https") or not url.host:
        raise ValueError("base_url must be a valid URL")
    return raw.rstrip("/")


class SealedCredentials(BaseModel):
    """The sealed (API key, API secret) pair of one connection.

    Replaced wholesale on rotation, never field by field.
    """

    api_key: SealedSecret
    api_secret: SealedSecret

    model_config = {"frozen": True}

    def to_row(self) -> tuple[str, str, str, str, str, str]:
        """Flatten into column order used by the credential store."""
        return (
            self.api_key.ciphertext,
            self.api_key.nonce,
            self.api_key.tag,
            self.api_secret.ciphertext,
            self.api_secret.nonce,
            self.api_secret.tag,
        )

    @classmethod
    def from_row(cls, row: Any) -> "SealedCredentials":
        """Build from a database row carrying the six sealed columns."""
        return cls(
            api_key=SealedSecret(
                ciphertext=row["api_key_enc"],
                nonce=row["api_key_nonce"],
                tag=row["api_key_tag"],
            ),
            api_secret=SealedSecret(
                ciphertext=row["api_secret_enc"],
                nonce=row["api_secret_nonce"],
                tag=row["api_secret_tag"],
            ),
        )


class CredentialPair(BaseModel):
    """Plaintext API credentials, revealed just before an outbound call."""

    api_key: SecretStr
    api_secret: SecretStr

    model_config = {"frozen": True}

    def authorization_header(self) -> str:
        """Frappe token auth header value."""
        return (
            f"token {self.api_key.get_secret_value()}:"
            f"{self.api_secret.get_secret_value()}"
        )


class ConnectionRecord(BaseModel):
    """Public view of a stored connection."""

    id: int
    name: str
    base_url: str
    has_secrets: bool = Field(default=False)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        return normalize_name(v)

    @classmethod
    def from_row(cls, row: Any) -> "ConnectionRecord":
        """Build from a database row; secret columns are never read."""
        return cls(
            id=row["id"],
            name=row["name"],
            base_url=row["base_url"],
            has_secrets=bool(row.get("has_secrets", False)),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )
