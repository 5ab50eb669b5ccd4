"""Tests for the Redis-backed one-time exchange code store."""

import json
import re
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from fastapi import HTTPException
from redis.exceptions import ConnectionError as RedisConnectionError

from dietician_core.core.exchange_store import (
    ExchangeStoreUnavailable,
    RedisExchangeCodeStore,
    close_exchange_store,
    generate_code,
    get_exchange_store,
)


@pytest.fixture
def client() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def store(client: AsyncMock) -> RedisExchangeCodeStore:
    return RedisExchangeCodeStore(client)


def test_generated_codes_are_unique_and_url_safe() -> None:
    codes = {generate_code() for _ in range(100)}
    assert len(codes) == 100
    assert all(len(code) >= 43 for code in codes)
    assert all(re.fullmatch(r"[A-Za-z0-9_-]+", code) for code in codes)


class TestPut:
    @pytest.mark.asyncio
    async def test_sets_json_with_expiry(
        self,
        store: RedisExchangeCodeStore,
        client: AsyncMock,
    ) -> None:
        await store.put("abc", {"user_id": 5}, 30)

        client.set.assert_awaited_once_with(
            "oauth:exchange:abc", json.dumps({"user_id": 5}), ex=30
        )

    @pytest.mark.asyncio
    @pytest.mark.parametrize("ttl", [0, -1])
    async def test_rejects_non_positive_ttl(
        self,
        store: RedisExchangeCodeStore,
        client: AsyncMock,
        ttl: int,
    ) -> None:
        with pytest.raises(ValueError):
            await store.put("abc", {}, ttl)
        client.set.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_issue_uses_configured_ttl(
        self,
        store: RedisExchangeCodeStore,
        client: AsyncMock,
    ) -> None:
        code = await store.issue({"user_id": 1})

        key, raw = client.set.await_args.args
        assert key == f"oauth:exchange:{code}"
        assert json.loads(raw) == {"user_id": 1}
        assert client.set.await_args.kwargs == {"ex": 60}

    @pytest.mark.asyncio
    async def test_unreachable_backend(
        self,
        store: RedisExchangeCodeStore,
        client: AsyncMock,
    ) -> None:
        client.set.side_effect = RedisConnectionError("refused")
        with pytest.raises(ExchangeStoreUnavailable):
            await store.put("abc", {}, 10)


class TestTakeOnce:
    @pytest.mark.asyncio
    async def test_returns_payload_via_getdel(
        self,
        store: RedisExchangeCodeStore,
        client: AsyncMock,
    ) -> None:
        client.getdel.return_value = json.dumps({"user_id": 9})

        assert await store.take_once("abc") == {"user_id": 9}
        client.getdel.assert_awaited_once_with("oauth:exchange:abc")

    @pytest.mark.asyncio
    async def test_unknown_code(
        self,
        store: RedisExchangeCodeStore,
        client: AsyncMock,
    ) -> None:
        client.getdel.return_value = None
        assert await store.take_once("missing") is None

    @pytest.mark.asyncio
    async def test_empty_code_skips_backend(
        self,
        store: RedisExchangeCodeStore,
        client: AsyncMock,
    ) -> None:
        assert await store.take_once("") is None
        client.getdel.assert_not_awaited()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("raw", ["{not json", "[1, 2]", '"text"'])
    async def test_malformed_payload(
        self,
        store: RedisExchangeCodeStore,
        client: AsyncMock,
        raw: str,
    ) -> None:
        client.getdel.return_value = raw
        assert await store.take_once("abc") is None

    @pytest.mark.asyncio
    async def test_unreachable_backend(
        self,
        store: RedisExchangeCodeStore,
        client: AsyncMock,
    ) -> None:
        client.getdel.side_effect = RedisConnectionError("refused")
        with pytest.raises(ExchangeStoreUnavailable):
            await store.take_once("abc")


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_close(
        self,
        store: RedisExchangeCodeStore,
        client: AsyncMock,
    ) -> None:
        await close_exchange_store(store)
        client.aclose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_close_none(self) -> None:
        await close_exchange_store(None)

    def test_dependency_reads_application_state(self, store: RedisExchangeCodeStore) -> None:
        request = SimpleNamespace(app=SimpleNamespace(state=SimpleNamespace(exchange_store=store)))
        assert get_exchange_store(request) is store  # type: ignore[arg-type]

    def test_dependency_without_store(self) -> None:
        request = SimpleNamespace(app=SimpleNamespace(state=SimpleNamespace()))
        with pytest.raises(HTTPException) as exc_info:
            get_exchange_store(request)  # type: ignore[arg-type]
        assert exc_info.value.status_code == 503
