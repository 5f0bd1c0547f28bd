"""
Vault Key Rotation — All-or-nothing re-sealing under a new master key.

Every stored credential pair is read in batches, unsealed with the old key
and re-sealed with the new key in memory. Nothing is written unless every
pair unsealed cleanly; the writes then happen in a single transaction, so
the store never holds a mix of old-key and new-key records.

Security Note:
    Plaintext exists in memory only during re-sealing of each row.
    Never log plaintext or sealed values.
"""
import logging
from typing import Any

from .crypto import key_fingerprint, seal, unseal
from .exceptions import VaultError
from .models import SealedCredentials

logger = logging.getLogger("erpnext_tester.vault")

# SQL statements
_SELECT_BATCH = """
SELECT id, api_key_enc, api_key_nonce, api_key_tag,
       api_secret_enc, api_secret_nonce, api_secret_tag
FROM connections
WHERE id > $1
ORDER BY id
LIMIT $2
"""

# Guarded by the old nonces so a pair replaced meanwhile is not overwritten.
_UPDATE_SEALED = """
UPDATE connections
SET api_key_enc = $2, api_key_nonce = $3, api_key_tag = $4,
    api_secret_enc = $5, api_secret_nonce = $6, api_secret_tag = $7,
    updated_at = NOW()
WHERE id = $1 AND api_key_nonce = $8 AND api_secret_nonce = $9
"""


def _reseal(
    sealed: SealedCredentials, old_master_key: bytes, new_master_key: bytes,
) -> SealedCredentials:
    return SealedCredentials(
        api_key=seal(unseal(sealed.api_key, old_master_key), new_master_key),
        api_secret=seal(
            unseal(sealed.api_secret, old_master_key), new_master_key,
        ),
    )


async def rotate_master_key(
    db_pool: Any,
    old_master_key: bytes,
    new_master_key: bytes,
    batch_size: int = 100,
) -> dict:
    """Re-seal all credential pairs from old_master_key to new_master_key.

    Args:
        db_pool: asyncpg-compatible connection pool.
        old_master_key: Raw 32-byte key the records are sealed with.
        new_master_key: Raw 32-byte key to re-seal with.
        batch_size: Number of rows read per query.

    Returns:
        Stats dict with keys: total, rotated.

    Raises:
        IntegrityError, MalformedInputError: If any record cannot be
            unsealed with the old key. Nothing is written.
        RuntimeError: If a record changed while rotating. The transaction
            is rolled back.
    """
    stats = {"total": 0, "rotated": 0}
    pending: list[tuple[int, SealedCredentials, SealedCredentials]] = []
    last_id = 0

    logger.info(
        "Starting key rotation from %s to %s (batch_size=%d)",
        key_fingerprint(old_master_key), key_fingerprint(new_master_key),
        batch_size,
    )

    while True:
        async with db_pool.acquire() as conn:
            rows = await conn.fetch(_SELECT_BATCH, last_id, batch_size)

        if not rows:
            break

        logger.debug("Re-sealing batch of %d rows after id=%s", len(rows), last_id)
        for row in rows:
            stats["total"] += 1
            old = SealedCredentials.from_row(row)
            try:
                new = _reseal(old, old_master_key, new_master_key)
            except VaultError as err:
                logger.error(
                    "Key rotation aborted: connection id=%s could not be "
                    "unsealed: %s", row["id"], err,
                )
                raise
            pending.append((row["id"], old, new))
        last_id = rows[-1]["id"]

    if pending:
        async with db_pool.acquire() as conn:
            tx = conn.transaction()
            await tx.start()
            try:
                for row_id, old, new in pending:
                    status = await conn.execute(
                        _UPDATE_SEALED,
                        row_id, *new.to_row(),
                        old.api_key.nonce, old.api_secret.nonce,
                    )
                    if status != "UPDATE 1":
                        raise RuntimeError(
                            f"Connection id={row_id} changed during key rotation"
                        )
                    stats["rotated"] += 1
                await tx.commit()
            except Exception:
                await tx.rollback()
                raise

    logger.info("Key rotation complete: %s", stats)
    return stats
