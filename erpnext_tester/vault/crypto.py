"""
Vault Crypto Core — Sealing and unsealing of stored API credentials.

Each secret is sealed independently with AES-256-GCM under the master key:
- fresh random 96-bit nonce per seal
- fixed associated data binding the ciphertext to this application
- result stored as three base64 fields: nonce, ciphertext, tag

This module is a leaf: it knows nothing about connections or persistence.

Security Note:
    Never log plaintext, ciphertext or key material.
    Nonces are random 96-bit; collision probability negligible under normal usage.
"""
import os
import base64
import secrets
import logging

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from pydantic import BaseModel

from .exceptions import ConfigurationError, IntegrityError, MalformedInputError

logger = logging.getLogger("erpnext_tester.vault")

NONCE_SIZE = 12  # 96-bit nonce
TAG_SIZE = 16  # GCM tag
KEY_LENGTH = 32  # AES-256

# Fixed for every sealed secret; does not identify the record or field.
ASSOCIATED_DATA = b"erpnext-api-tester"

_FINGERPRINT_INFO = b"erpnext-tester-key-fingerprint"


class SealedSecret(BaseModel):
    """One sealed secret as persisted: three base64 text fields.

    Carries no key material and is meaningless without the master key.
    Fields are not validated here so corrupted records still load and
    fail in :func:`unseal` with a precise error.
    """

    nonce: str
    ciphertext: str
    tag: str

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Master key helpers
# ---------------------------------------------------------------------------

def validate_master_key(candidate: str) -> bool:
    """Return True iff ``candidate`` is base64 decoding to exactly 32 bytes."""
    if not isinstance(candidate, str):
        return False
    try:
        key_bytes = base64.b64decode(candidate.strip(), validate=True)
    except ValueError:
        return False
    return len(key_bytes) == KEY_LENGTH


def decode_master_key(candidate: str) -> bytes:
    """Decode a base64 master key, failing fast on anything but 32 bytes.

    Args:
        candidate: Base64-encoded key as read from configuration.

    Returns:
        Raw 32-byte key.

    Raises:
        ConfigurationError: If the value is not base64 or has the wrong length.
    """
    if not validate_master_key(candidate):
        raise ConfigurationError(
            f"Master key must be base64 decoding to exactly {KEY_LENGTH} bytes"
        )
    return base64.b64decode(candidate.strip(), validate=True)


def generate_master_key() -> str:
    """Generate a random 32-byte master key and return as base64 string.

    This is a utility for operators to generate new keys.
    """
    return base64.b64encode(secrets.token_bytes(KEY_LENGTH)).decode("ascii")


def key_fingerprint(master_key: bytes) -> str:
    """Return a short, non-reversible identifier of a master key for logs.

    Args:
        master_key: Raw key bytes.

    Returns:
        16 hex characters derived with HKDF-SHA256.
    """
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=8,
        salt=None,
        info=_FINGERPRINT_INFO,
    )
    return hkdf.derive(master_key).hex()


# ---------------------------------------------------------------------------
# Sealing
# ---------------------------------------------------------------------------

def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _decode_field(name: str, value: str, expected: int | None = None) -> bytes:
    """Strictly decode one sealed field.

    Raises:
        MalformedInputError: Not base64, or wrong decoded length.
        IntegrityError: Valid base64 but not the encoding ``seal`` produced.
    """
    if not isinstance(value, str):
        raise MalformedInputError(f"Sealed field '{name}' must be a string")
    try:
        raw = base64.b64decode(value, validate=True)
    except ValueError:
        raise MalformedInputError(
            f"Sealed field '{name}' is not valid base64"
        ) from None
    if expected is not None and len(raw) != expected:
        raise MalformedInputError(
            f"Sealed field '{name}' must decode to {expected} bytes, "
            f"got {len(raw)}"
        )
    # Non-canonical padding bits decode to the same bytes; still an alteration.
    if _b64(raw) != value:
        raise IntegrityError(
            f"Sealed field '{name}' was altered after sealing"
        )
    return raw


def seal(plaintext: str, master_key: bytes) -> SealedSecret:
    """Encrypt and authenticate a secret string.

    Args:
        plaintext: Secret to protect (may be empty).
        master_key: Raw 32-byte master key, validated at startup.

    Returns:
        SealedSecret with base64 nonce, ciphertext and tag.
    """
    nonce = os.urandom(NONCE_SIZE)
    sealed = AESGCM(master_key).encrypt(
        nonce, plaintext.encode("utf-8", "surrogatepass"), ASSOCIATED_DATA,
    )
    return SealedSecret(
        nonce=_b64(nonce),
        ciphertext=_b64(sealed[:-TAG_SIZE]),
        tag=_b64(sealed[-TAG_SIZE:]),
    )


def unseal(sealed: SealedSecret, master_key: bytes) -> str:
    """Verify and decrypt a sealed secret.

    Args:
        sealed: Output of :func:`seal`, as persisted.
        master_key: Raw 32-byte master key.

    Returns:
        The original plaintext.

    Raises:
        MalformedInputError: A field is not base64 or has the wrong length.
        IntegrityError: The tag does not verify (tampering, wrong key).
    """
    nonce = _decode_field("nonce", sealed.nonce, NONCE_SIZE)
    ciphertext = _decode_field("ciphertext", sealed.ciphertext)
    tag = _decode_field("tag", sealed.tag, TAG_SIZE)
    try:
        plaintext = AESGCM(master_key).decrypt(
            nonce, ciphertext + tag, ASSOCIATED_DATA,
        )
    except InvalidTag:
        raise IntegrityError("Credential could not be decrypted") from None
    return plaintext.decode("utf-8", "surrogatepass")
