"""
One-time exchange codes for the OAuth login hand-off.

After a successful OAuth login the backend stores the issued token payload
under a short random code and redirects the client with that code only. The
client redeems it exactly once via ``POST /auth/oauth2/exchange``. Codes live
in Redis with a TTL, so they survive restarts and are shared across replicas.
"""

from __future__ import annotations

import json
import secrets
from abc import ABC, abstractmethod
from typing import Any

import redis.asyncio as redis
from fastapi import HTTPException, Request, status

from dietician_core.core.config import get_settings
from dietician_core.core.logging import get_logger

logger = get_logger(__name__)

_KEY_PREFIX = "oauth:exchange:"
_CODE_BYTES = 32


class ExchangeStoreUnavailable(RuntimeError):
    """Raised when the backing cache cannot be reached."""


def generate_code() -> str:
    """Return a URL-safe, unguessable exchange code."""
    return secrets.token_urlsafe(_CODE_BYTES)


class ExchangeCodeStore(ABC):
    """Single-use code -> payload mapping with expiry."""

    @abstractmethod
    async def put(self, code: str, payload: dict[str, Any], ttl_seconds: int) -> None:
        """Store ``payload`` under ``code`` for ``ttl_seconds``."""

    @abstractmethod
    async def take_once(self, code: str) -> dict[str, Any] | None:
        """Atomically fetch and remove the payload; ``None`` if unknown or expired."""

    async def issue(self, payload: dict[str, Any], ttl_seconds: int | None = None) -> str:
        """Store ``payload`` under a freshly generated code and return the code."""
        ttl = ttl_seconds or get_settings().oauth_exchange_code_ttl
        code = generate_code()
        await self.put(code, payload, ttl)
        return code


class RedisExchangeCodeStore(ExchangeCodeStore):
    """Exchange store backed by Redis ``SET EX`` and ``GETDEL``."""

    def __init__(self, client: redis.Redis) -> None:
        self._client = client

    @staticmethod
    def _key(code: str) -> str:
        return f"{_KEY_PREFIX}{code}"

    async def put(self, code: str, payload: dict[str, Any], ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        try:
            await self._client.set(self._key(code), json.dumps(payload), ex=ttl_seconds)
        except redis.RedisError as exc:
            logger.error("exchange_code_store_failed", error=str(exc))
            raise ExchangeStoreUnavailable("exchange code store is unavailable") from exc

    async def close(self) -> None:
        await self._client.aclose()

    async def take_once(self, code: str) -> dict[str, Any] | None:
        if not code:
            return None
        try:
            raw = await self._client.getdel(self._key(code))
        except redis.RedisError as exc:
            logger.error("exchange_code_redeem_failed", error=str(exc))
            raise ExchangeStoreUnavailable("exchange code store is unavailable") from exc
        if raw is None:
            return None
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("exchange_code_payload_invalid")
            return None
        return payload if isinstance(payload, dict) else None


def create_exchange_store(redis_url: str) -> RedisExchangeCodeStore:
    """Build the Redis-backed store; the connection is opened lazily."""
    client = redis.from_url(redis_url, decode_responses=True)  # type: ignore[no-untyped-call]
    return RedisExchangeCodeStore(client)


async def close_exchange_store(store: ExchangeCodeStore | None) -> None:
    """Close the underlying connection (call at shutdown)."""
    if isinstance(store, RedisExchangeCodeStore):
        await store.close()


def get_exchange_store(request: Request) -> ExchangeCodeStore:
    """Dependency returning the store created in the application lifespan."""
    store: ExchangeCodeStore | None = getattr(request.app.state, "exchange_store", None)
    if store is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Exchange code store is not configured",
        )
    return store
