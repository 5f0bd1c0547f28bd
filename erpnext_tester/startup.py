"""
Startup — Validate configuration once and build the credential store.

A ``ConfigurationError`` here is fatal: the process must exit instead of
serving requests that would need sealing or unsealing.
"""
import logging
from typing import Optional

import asyncpg

from .vault.config import VaultConfig, load_config
from .vault.credential_store import CredentialStore

logger = logging.getLogger("erpnext_tester")


async def open_store(
    config: Optional[VaultConfig] = None,
    min_size: int = 1,
    max_size: int = 10,
) -> CredentialStore:
    """Create the database pool and a store bound to the validated key.

    The pool is closed again if the schema cannot be created. Call
    :meth:`CredentialStore.close` on shutdown.

    Args:
        config: Pre-validated configuration; loaded from the environment
            when omitted.
        min_size: Minimum pool connections.
        max_size: Maximum pool connections.

    Raises:
        ConfigurationError: If configuration is missing or invalid.
    """
    if config is None:
        config = load_config()
    pool = await asyncpg.create_pool(
        dsn=config.database_url, min_size=min_size, max_size=max_size,
    )
    store = CredentialStore(
        pool, config.master_key,
        rotation_batch_size=config.rotation_batch_size,
        request_timeout=config.request_timeout,
    )
    try:
        await store.ensure_schema()
    except BaseException:
        logger.error("Schema setup failed, closing database pool")
        await pool.close()
        raise
    logger.info(
        "Credential store ready (env=%s, master key %s)",
        config.environment, store.key_fingerprint,
    )
    return store
