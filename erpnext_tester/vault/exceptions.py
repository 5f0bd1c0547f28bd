"""
Vault Exceptions — Failure kinds raised by the credential vault.

Security Note:
    Messages carry connection ids and field names only. Never include
    plaintext, ciphertext or key material in an exception message.
"""


class VaultError(Exception):
    """Base class for all vault errors."""


class ConfigurationError(VaultError, RuntimeError):
    """Missing or invalid startup configuration (fatal)."""


class IntegrityError(VaultError):
    """A sealed secret failed authentication and could not be decrypted."""


class MalformedInputError(VaultError, ValueError):
    """A sealed secret field is not valid base64 or has the wrong length."""


class ConnectionNotFound(VaultError, KeyError):
    """No stored connection exists for the requested id."""

    def __str__(self) -> str:
        # KeyError quotes its argument; keep the plain message.
        return str(self.args[0]) if self.args else ""
