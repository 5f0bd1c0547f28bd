"""Shared fixtures: master keys and an in-memory asyncpg-compatible pool."""
import base64
import copy
import secrets
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import pytest

from erpnext_tester.vault import credential_store as cs
from erpnext_tester.vault import key_rotation as kr
from erpnext_tester.vault.credential_store import CredentialStore

SEALED_COLUMNS = (
    "api_key_enc", "api_key_nonce", "api_key_tag",
    "api_secret_enc", "api_secret_nonce", "api_secret_tag",
)


def _public(row: dict) -> dict:
    return {
        "id": row["id"],
        "name": row["name"],
        "base_url": row["base_url"],
        "has_secrets": all(row[c] is not None for c in SEALED_COLUMNS),
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }


def _sealed(row: dict) -> dict:
    return {"id": row["id"], **{c: row[c] for c in SEALED_COLUMNS}}


class FakeTransaction:
    """Snapshot on start, restore on rollback."""

    def __init__(self, db: "FakePool"):
        self._db = db
        self._snapshot = None

    async def start(self):
        self._snapshot = copy.deepcopy(self._db.rows)

    async def commit(self):
        self._snapshot = None

    async def rollback(self):
        if self._snapshot is not None:
            self._db.rows = self._snapshot
            self._snapshot = None

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        if exc_type is None:
            await self.commit()
        else:
            await self.rollback()


class FakeConnection:
    """Executes the store's SQL statements against a dict of rows."""

    def __init__(self, db: "FakePool"):
        self._db = db

    def transaction(self):
        return FakeTransaction(self._db)

    async def execute(self, query, *args):
        db = self._db
        db.executed.append(query)
        if query is cs.CREATE_SCHEMA:
            return "CREATE TABLE"
        if query is cs._DELETE_ALL:
            count = len(db.rows)
            db.rows = {}
            return f"DELETE {count}"
        if query is kr._UPDATE_SEALED:
            if db.fail_update_for is not None and args[0] == db.fail_update_for:
                raise RuntimeError("simulated database failure")
            row = db.rows.get(args[0])
            if row is None or row["api_key_nonce"] != args[7] \
                    or row["api_secret_nonce"] != args[8]:
                return "UPDATE 0"
            row.update(dict(zip(SEALED_COLUMNS, args[1:7])))
            row["updated_at"] = datetime.now(timezone.utc)
            return "UPDATE 1"
        raise AssertionError(f"unexpected execute: {query}")

    async def fetchrow(self, query, *args):
        db = self._db
        if query is cs._INSERT_CONNECTION:
            db.next_id += 1
            now = datetime.now(timezone.utc)
            row = {
                "id": db.next_id,
                "name": args[0],
                "base_url": args[1],
                **dict(zip(SEALED_COLUMNS, args[2:8])),
                "created_at": now,
                "updated_at": now,
            }
            db.rows[row["id"]] = row
            return _public(row)
        row = db.rows.get(args[0])
        if query is cs._SELECT_CONNECTION:
            return _public(row) if row else None
        if query is cs._SELECT_SEALED:
            return _sealed(row) if row else None
        if query is cs._UPDATE_METADATA:
            if row is None:
                return None
            row.update(name=args[1], base_url=args[2])
            row["updated_at"] = datetime.now(timezone.utc)
            return _public(row)
        if query is cs._UPDATE_WITH_CREDENTIALS:
            if row is None:
                return None
            row.update(name=args[1], base_url=args[2])
            row.update(dict(zip(SEALED_COLUMNS, args[3:9])))
            row["updated_at"] = datetime.now(timezone.utc)
            return _public(row)
        if query is cs._DELETE_CONNECTION:
            if row is None:
                return None
            del db.rows[args[0]]
            return _public(row)
        raise AssertionError(f"unexpected fetchrow: {query}")

    async def fetch(self, query, *args):
        db = self._db
        if query is cs._SELECT_ALL:
            rows = sorted(
                db.rows.values(),
                key=lambda r: (r["created_at"], r["id"]),
                reverse=True,
            )
            return [_public(r) for r in rows]
        if query is kr._SELECT_BATCH:
            last_id, limit = args
            rows = [db.rows[i] for i in sorted(db.rows) if i > last_id]
            return [_sealed(r) for r in rows[:limit]]
        raise AssertionError(f"unexpected fetch: {query}")


class FakePool:
    """In-memory stand-in for an asyncpg pool."""

    def __init__(self):
        self.rows: dict[int, dict] = {}
        self.next_id = 0
        self.executed: list[str] = []
        self.fail_update_for = None
        self.closed = False

    @asynccontextmanager
    async def acquire(self):
        yield FakeConnection(self)

    async def close(self):
        self.closed = True


def make_key() -> bytes:
    return secrets.token_bytes(32)


@pytest.fixture
def master_key() -> bytes:
    return make_key()


@pytest.fixture
def master_key_b64(master_key) -> str:
    return base64.b64encode(master_key).decode("ascii")


@pytest.fixture
def db_pool() -> FakePool:
    return FakePool()


@pytest.fixture
def store(db_pool, master_key) -> CredentialStore:
    return CredentialStore(db_pool, master_key)
