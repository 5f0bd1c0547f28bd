"""
CredentialStore — Persistent connections with sealed API credentials.

Provides the public API for the Credential Record Store:
- ``create(name, base_url, api_key, api_secret)`` — seal and persist
- ``get(id)`` / ``list_connections()`` — public records, never secret material
- ``update(id, ...)`` — metadata change and/or wholesale credential rotation
- ``delete(id)`` / ``reset()`` — remove one or all connections
- ``reveal(id)`` — unseal the credential pair for one outbound call
- ``rotate_master_key(new_key)`` — re-seal everything under a new key

Security Note:
    Never log plaintext or sealed values. Only log connection ids, names
    and key fingerprints.
"""
import asyncio
import logging
from typing import Any, Optional

from .crypto import KEY_LENGTH, key_fingerprint, seal, unseal
from .exceptions import ConnectionNotFound, VaultError
from .key_rotation import rotate_master_key as _rotate_all
from .models import (
    ConnectionRecord,
    CredentialPair,
    SealedCredentials,
    normalize_base_url,
    normalize_name,
)

logger = logging.getLogger("erpnext_tester.vault")

# ---------------------------------------------------------------------------
# SQL statements
# ---------------------------------------------------------------------------

CREATE_SCHEMA = """
CREATE TABLE IF NOT EXISTS connections (
    id BIGSERIAL PRIMARY KEY,
    name VARCHAR(100) NOT NULL,
    base_url TEXT NOT NULL,
    api_key_enc TEXT NOT NULL,
    api_key_nonce TEXT NOT NULL,
    api_key_tag TEXT NOT NULL,
    api_secret_enc TEXT NOT NULL,
    api_secret_nonce TEXT NOT NULL,
    api_secret_tag TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS connections_name_idx ON connections (name);
CREATE INDEX IF NOT EXISTS connections_base_url_idx ON connections (base_url);
CREATE INDEX IF NOT EXISTS connections_created_at_idx ON connections (created_at DESC);
"""

_PUBLIC_COLUMNS = """
id, name, base_url,
(api_key_enc IS NOT NULL AND api_key_nonce IS NOT NULL
 AND api_key_tag IS NOT NULL AND api_secret_enc IS NOT NULL
 AND api_secret_nonce IS NOT NULL AND api_secret_tag IS NOT NULL) AS has_secrets,
created_at, updated_at
"""

_INSERT_CONNECTION = f"""
INSERT INTO connections (
    name, base_url,
    api_key_enc, api_key_nonce, api_key_tag,
    api_secret_enc, api_secret_nonce, api_secret_tag
)
VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
RETURNING {_PUBLIC_COLUMNS}
"""

_SELECT_CONNECTION = f"""
SELECT {_PUBLIC_COLUMNS}
FROM connections
WHERE id = $1
"""

_SELECT_ALL = f"""
SELECT {_PUBLIC_COLUMNS}
FROM connections
ORDER BY created_at DESC, id DESC
"""

_SELECT_SEALED = """
SELECT id, api_key_enc, api_key_nonce, api_key_tag,
       api_secret_enc, api_secret_nonce, api_secret_tag
FROM connections
WHERE id = $1
"""

_UPDATE_METADATA = f"""
UPDATE connections
SET name = $2, base_url = $3, updated_at = NOW()
WHERE id = $1
RETURNING {_PUBLIC_COLUMNS}
"""

_UPDATE_WITH_CREDENTIALS = f"""
UPDATE connections
SET name = $2, base_url = $3,
    api_key_enc = $4, api_key_nonce = $5, api_key_tag = $6,
    api_secret_enc = $7, api_secret_nonce = $8, api_secret_tag = $9,
    updated_at = NOW()
WHERE id = $1
RETURNING {_PUBLIC_COLUMNS}
"""

_DELETE_CONNECTION = f"""
DELETE FROM connections
WHERE id = $1
RETURNING {_PUBLIC_COLUMNS}
"""

_DELETE_ALL = """
DELETE FROM connections
"""


class CredentialStore:
    """Connections with their (API key, API secret) pair sealed at rest.

    The master key is passed in from the validated configuration and is
    only replaced by :meth:`rotate_master_key` after every stored pair was
    re-sealed under the new key.
    """

    def __init__(
        self,
        db_pool: Any,
        master_key: bytes,
        rotation_batch_size: int = 100,
        request_timeout: float = 30.0,
    ):
        if len(master_key) != KEY_LENGTH:
            raise ValueError(f"master key must be exactly {KEY_LENGTH} bytes")
        if request_timeout <= 0:
            raise ValueError("request_timeout must be positive")
        self._db = db_pool
        self._master_key = master_key
        self._rotation_batch_size = rotation_batch_size
        self._request_timeout = request_timeout
        # Held while sealing, unsealing or rotating so no operation
        # straddles a key swap.
        self._key_lock = asyncio.Lock()

    @property
    def key_fingerprint(self) -> str:
        return key_fingerprint(self._master_key)

    @property
    def request_timeout(self) -> float:
        """Seconds allowed for outbound calls made with stored credentials."""
        return self._request_timeout

    async def close(self) -> None:
        """Close the underlying database pool."""
        await self._db.close()
        logger.info("Credential store closed")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _validate_credentials(
        api_key: Optional[str], api_secret: Optional[str],
    ) -> None:
        """Both secrets are required together.

        Raises:
            ValueError: If either is missing or empty.
        """
        if not api_key or not api_secret:
            raise ValueError("API key and secret are required")

    def _seal_pair(self, api_key: str, api_secret: str) -> SealedCredentials:
        return SealedCredentials(
            api_key=seal(api_key, self._master_key),
            api_secret=seal(api_secret, self._master_key),
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def ensure_schema(self) -> None:
        """Create the connections table and indexes if missing."""
        async with self._db.acquire() as conn:
            await conn.execute(CREATE_SCHEMA)

    async def create(
        self,
        name: str,
        base_url: str,
        api_key: str,
        api_secret: str,
    ) -> ConnectionRecord:
        """Seal both secrets and persist a new connection.

        Raises:
            ValueError: If name, base_url or either secret is invalid.
        """
        name = normalize_name(name)
        base_url = normalize_base_url(base_url)
        self._validate_credentials(api_key, api_secret)

        async with self._key_lock:
            sealed = self._seal_pair(api_key, api_secret)
            async with self._db.acquire() as conn:
                row = await conn.fetchrow(
                    _INSERT_CONNECTION, name, base_url, *sealed.to_row(),
                )
        record = ConnectionRecord.from_row(row)
        logger.info("Connection created: id=%s name=%s", record.id, record.name)
        return record

    async def get(self, connection_id: int) -> Optional[ConnectionRecord]:
        """Return the public record, or None if not found."""
        async with self._db.acquire() as conn:
            row = await conn.fetchrow(_SELECT_CONNECTION, connection_id)
        if row is None:
            return None
        return ConnectionRecord.from_row(row)

    async def list_connections(self) -> list[ConnectionRecord]:
        """Return all connections, newest first."""
        async with self._db.acquire() as conn:
            rows = await conn.fetch(_SELECT_ALL)
        return [ConnectionRecord.from_row(row) for row in rows]

    async def update(
        self,
        connection_id: int,
        *,
        name: Optional[str] = None,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
    ) -> ConnectionRecord:
        """Update metadata and/or replace the credential pair.

        Credentials are rotated wholesale: pass both ``api_key`` and
        ``api_secret`` or neither.

        Raises:
            ConnectionNotFound: If the connection does not exist.
            ValueError: On invalid metadata or a partial credential update.
        """
        rotate = api_key is not None or api_secret is not None
        if rotate:
            self._validate_credentials(api_key, api_secret)
        if name is not None:
            name = normalize_name(name)
        if base_url is not None:
            base_url = normalize_base_url(base_url)

        async with self._key_lock:
            async with self._db.acquire() as conn:
                async with conn.transaction():
                    current = await conn.fetchrow(
                        _SELECT_CONNECTION, connection_id,
                    )
                    if current is None:
                        raise ConnectionNotFound(
                            f"Connection {connection_id} not found"
                        )
                    new_name = name if name is not None else current["name"]
                    new_url = base_url if base_url is not None else current["base_url"]
                    if rotate:
                        sealed = self._seal_pair(api_key, api_secret)
                        row = await conn.fetchrow(
                            _UPDATE_WITH_CREDENTIALS,
                            connection_id, new_name, new_url, *sealed.to_row(),
                        )
                    else:
                        row = await conn.fetchrow(
                            _UPDATE_METADATA, connection_id, new_name, new_url,
                        )
        record = ConnectionRecord.from_row(row)
        logger.info(
            "Connection updated: id=%s credentials_rotated=%s",
            connection_id, rotate,
        )
        return record

    async def delete(self, connection_id: int) -> ConnectionRecord:
        """Delete a connection together with its sealed credentials.

        Raises:
            ConnectionNotFound: If the connection does not exist.
        """
        async with self._db.acquire() as conn:
            row = await conn.fetchrow(_DELETE_CONNECTION, connection_id)
        if row is None:
            raise ConnectionNotFound(f"Connection {connection_id} not found")
        logger.info("Connection deleted: id=%s", connection_id)
        return ConnectionRecord.from_row(row)

    async def reset(self) -> int:
        """Delete every connection. Returns the number removed."""
        async with self._db.acquire() as conn:
            status = await conn.execute(_DELETE_ALL)
        count = int(status.split()[-1]) if status else 0
        logger.warning("All connections cleared: %d removed", count)
        return count

    async def reveal(self, connection_id: int) -> CredentialPair:
        """Unseal the credential pair of one connection.

        The caller must use the result for a single outbound call and must
        not cache or log it.

        Raises:
            ConnectionNotFound: If the connection does not exist.
            IntegrityError: If a stored secret fails authentication.
            MalformedInputError: If a stored field is corrupted.
        """
        async with self._key_lock:
            async with self._db.acquire() as conn:
                row = await conn.fetchrow(_SELECT_SEALED, connection_id)
            if row is None:
                raise ConnectionNotFound(f"Connection {connection_id} not found")
            sealed = SealedCredentials.from_row(row)
            try:
                return CredentialPair(
                    api_key=unseal(sealed.api_key, self._master_key),
                    api_secret=unseal(sealed.api_secret, self._master_key),
                )
            except VaultError as err:
                logger.error(
                    "Credentials for connection id=%s could not be decrypted: %s",
                    connection_id, err,
                )
                raise

    async def rotate_master_key(
        self, new_master_key: bytes, batch_size: Optional[int] = None,
    ) -> dict:
        """Re-seal every stored pair under ``new_master_key``.

        The store keeps using the old key unless every pair was re-sealed
        and committed.

        Raises:
            ValueError: If the new key is not 32 bytes.
            IntegrityError, MalformedInputError: If any stored secret cannot
                be unsealed; nothing is written in that case.
        """
        if len(new_master_key) != KEY_LENGTH:
            raise ValueError(f"master key must be exactly {KEY_LENGTH} bytes")
        async with self._key_lock:
            stats = await _rotate_all(
                self._db, self._master_key, new_master_key,
                batch_size=batch_size or self._rotation_batch_size,
            )
            self._master_key = new_master_key
        logger.info("Master key swapped to %s", key_fingerprint(new_master_key))
        return stats
