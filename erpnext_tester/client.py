"""
ERPNext Client — Authenticated calls against an ERPNext/Frappe REST API.

Credentials are revealed from the vault immediately before a call and
dropped when the client is closed.

Security Note:
    Log methods, paths and status codes only. Never log the
    Authorization header or the credentials behind it.
"""
import time
import asyncio
import logging
from typing import Any, Optional

import aiohttp
import orjson
from pydantic import BaseModel, Field

from .vault.exceptions import ConnectionNotFound
from .vault.models import CredentialPair, normalize_base_url

logger = logging.getLogger("erpnext_tester.client")

VALID_METHODS = ("GET", "POST", "PUT", "DELETE", "PATCH")
DEFAULT_TIMEOUT = 30.0


class RawResponse(BaseModel):
    """Result of a raw API call; transport failures have status 0."""

    status: int
    headers: dict[str, str] = Field(default_factory=dict)
    data: Any = None
    duration_ms: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300 and self.error is None


class ERPNextClient:
    """Async client for one ERPNext instance.

    Use as an async context manager::

        async with ERPNextClient(base_url, credentials) as client:
            await client.ping()
    """

    def __init__(
        self,
        base_url: str,
        credentials: CredentialPair,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        if credentials is None:
            raise ValueError("base_url and credentials are required")
        self.base_url = normalize_base_url(base_url)
        self._credentials = credentials
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: Optional[aiohttp.ClientSession] = None

    def __repr__(self) -> str:
        return f"<ERPNextClient base_url={self.base_url!r}>"

    async def __aenter__(self) -> "ERPNextClient":
        await self.open()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def open(self) -> None:
        """Start the HTTP session.

        Raises:
            RuntimeError: If the client was closed; clients are single-use.
        """
        if self._credentials is None:
            raise RuntimeError("ERPNextClient is closed")
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=self._timeout,
                headers={
                    "Authorization": self._credentials.authorization_header(),
                    "Content-Type": "application/json",
                },
                json_serialize=lambda obj: orjson.dumps(obj).decode("utf-8"),
            )

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None
        self._credentials = None

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    @property
    def session(self) -> aiohttp.ClientSession:
        if self._session is None:
            raise RuntimeError("ERPNextClient is not open")
        return self._session

    # ------------------------------------------------------------------
    # API
    # ------------------------------------------------------------------

    async def _get_status(self, path: str, params: Optional[dict] = None) -> int:
        async with self.session.get(self._url(path), params=params) as response:
            await response.read()
            logger.debug("ERPNext API Response: %s %s", response.status, path)
            return response.status

    async def ping(self) -> bool:
        """Check connectivity and credentials.

        Tries ``/api/method/ping`` first and falls back to
        ``/api/resource/DocType`` when the ping method is not available.
        """
        try:
            status = await self._get_status("/api/method/ping")
            if status == 200:
                logger.info("ERPNext ping successful via /api/method/ping")
                return True
            if status != 404:
                logger.warning("ERPNext ping failed with status %s", status)
                return False
            logger.info("/api/method/ping not available, trying fallback")
            status = await self._get_status(
                "/api/resource/DocType", params={"limit": "1"},
            )
        except (aiohttp.ClientError, asyncio.TimeoutError) as err:
            logger.error("ERPNext ping failed: %s", err)
            return False
        if status == 200:
            logger.info("ERPNext ping successful via /api/resource/DocType")
            return True
        logger.warning("ERPNext ping failed on both endpoints (status %s)", status)
        return False

    async def list_doctypes(self, limit: int = 2000) -> list[str]:
        """Return the DocType names available on the instance."""
        result = await self.send_raw(
            "GET",
            "/api/resource/DocType",
            query={"fields": '["name"]', "limit_page_length": str(limit)},
        )
        if result.status != 200 or not isinstance(result.data, dict):
            logger.error("Failed to retrieve DocTypes: status %s", result.status)
            return []
        items = result.data.get("data")
        if not isinstance(items, list):
            logger.error("Unexpected DocType listing payload")
            return []
        doctypes = [
            item["name"] for item in items
            if isinstance(item, dict) and isinstance(item.get("name"), str)
        ]
        logger.info("Retrieved %d DocTypes", len(doctypes))
        return doctypes

    async def send_raw(
        self,
        method: str,
        path: str,
        query: Optional[dict] = None,
        body: Any = None,
    ) -> RawResponse:
        """Send a request and capture status, headers, body and duration.

        Raises:
            ValueError: If method is unsupported or path is not under /api/.
        """
        method = method.upper()
        if method not in VALID_METHODS:
            raise ValueError(
                f"Invalid method: {method}. "
                f"Must be one of: {', '.join(VALID_METHODS)}"
            )
        if not path.startswith("/api/"):
            raise ValueError("Path must start with /api/")

        logger.info("ERPNext API Request: %s %s", method, path)
        started = time.perf_counter()
        try:
            async with self.session.request(
                method,
                self._url(path),
                params=query or None,
                json=body,
            ) as response:
                raw = await response.read()
                duration_ms = int((time.perf_counter() - started) * 1000)
                logger.info(
                    "ERPNext API Response: %s %s (%d ms)",
                    response.status, path, duration_ms,
                )
                return RawResponse(
                    status=response.status,
                    headers=_flatten_headers(response.headers),
                    data=_decode_body(raw),
                    duration_ms=duration_ms,
                )
        except (aiohttp.ClientError, asyncio.TimeoutError) as err:
            duration_ms = int((time.perf_counter() - started) * 1000)
            logger.error("ERPNext API Request Error: %s %s: %s", method, path, err)
            return RawResponse(
                status=0,
                duration_ms=duration_ms,
                error=str(err) or "No response received from server",
            )


def _flatten_headers(headers: Any) -> dict[str, str]:
    """Flatten response headers, joining repeated ones such as Set-Cookie."""
    flat: dict[str, str] = {}
    seen: set[str] = set()
    for name in headers.keys():
        if name.lower() in seen:
            continue
        seen.add(name.lower())
        flat[name] = ", ".join(headers.getall(name))
    return flat


def _decode_body(raw: bytes) -> Any:
    if not raw:
        return None
    try:
        return orjson.loads(raw)
    except orjson.JSONDecodeError:
        return raw.decode("utf-8", errors="replace")


async def send_with_connection(
    store: Any,
    connection_id: int,
    method: str,
    path: str,
    query: Optional[dict] = None,
    body: Any = None,
    timeout: Optional[float] = None,
) -> RawResponse:
    """Reveal a stored connection's credentials and send one request.

    ``timeout`` defaults to the store's configured ``request_timeout``.

    Raises:
        ConnectionNotFound: If the connection does not exist.
        IntegrityError, MalformedInputError: If the stored credentials
            cannot be decrypted.
    """
    record = await store.get(connection_id)
    if record is None:
        raise ConnectionNotFound(f"Connection {connection_id} not found")
    credentials = await store.reveal(connection_id)
    if timeout is None:
        timeout = getattr(store, "request_timeout", DEFAULT_TIMEOUT)
    async with ERPNextClient(record.base_url, credentials, timeout) as client:
        return await client.send_raw(method, path, query=query, body=body)
