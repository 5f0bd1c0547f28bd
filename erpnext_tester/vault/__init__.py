"""Credential Vault — API credentials sealed at rest with AES-256-GCM.

Security Note (Threat Model):
    Every sealed secret is bound to a fixed application context string,
    not to the connection or field it belongs to. A sealed API key could
    be swapped with another value sealed under the same master key
    without detection. Plaintext exists in process memory only for the
    duration of one outbound call.
"""

from .crypto import (
    SealedSecret,
    seal,
    unseal,
    validate_master_key,
    decode_master_key,
    generate_master_key,
    key_fingerprint,
)
from .exceptions import (
    VaultError,
    ConfigurationError,
    IntegrityError,
    MalformedInputError,
    ConnectionNotFound,
)
from .models import SealedCredentials, CredentialPair, ConnectionRecord
from .config import VaultConfig, load_config, load_master_key
from .credential_store import CredentialStore
from .key_rotation import rotate_master_key

__all__ = [
    "SealedSecret",
    "seal",
    "unseal",
    "validate_master_key",
    "decode_master_key",
    "generate_master_key",
    "key_fingerprint",
    "VaultError",
    "ConfigurationError",
    "IntegrityError",
    "MalformedInputError",
    "ConnectionNotFound",
    "SealedCredentials",
    "CredentialPair",
    "ConnectionRecord",
    "VaultConfig",
    "load_config",
    "load_master_key",
    "CredentialStore",
    "rotate_master_key",
]
