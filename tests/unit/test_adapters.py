"""Tests for the httpx provider adapters and failure translation."""

from __future__ import annotations

import json

import httpx
import pytest

from ratekeeper.adapters import (
    classified,
    classify_http_status,
    classify_rpc_error,
    classify_transport_error,
    http_get_operation,
    json_rpc_operation,
)
from ratekeeper.exceptions import FatalError, RateLimitedError, TransientError
from ratekeeper.providers.types import ProviderConfig

RPC = ProviderConfig(provider_id="rpc", base_url="https://rpc.example/v3/key")
API = ProviderConfig(provider_id="api", base_url="https://api.example/api/v3/")


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _rpc_reply(body: dict) -> httpx.Response:
    return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, **body})


class TestClassification:
    def _response(self, status: int, **kwargs) -> httpx.Response:
        return httpx.Response(status, request=httpx.Request("GET", "https://rpc.example/"), **kwargs)

    def test_429_is_rate_limited_with_retry_after(self) -> None:
        error = classify_http_status(self._response(429, headers={"Retry-After": "12"}))
        assert isinstance(error, RateLimitedError)
        assert error.retry_after_s == 12.0
        assert error.details["status_code"] == 429

    def test_429_with_http_date_falls_back_to_cooldown(self) -> None:
        error = classify_http_status(
            self._response(429, headers={"Retry-After": "Wed, 21 Oct 2026 07:28:00 GMT"})
        )
        assert isinstance(error, RateLimitedError)
        assert error.retry_after_s is None

    @pytest.mark.parametrize("status", [500, 502, 503, 504, 408])
    def test_server_errors_are_transient(self, status: int) -> None:
        assert isinstance(classify_http_status(self._response(status)), TransientError)

    @pytest.mark.parametrize("status", [400, 401, 403, 404])
    def test_client_errors_are_fatal(self, status: int) -> None:
        assert isinstance(classify_http_status(self._response(status)), FatalError)

    def test_rpc_error_codes(self) -> None:
        assert isinstance(classify_rpc_error({"code": -32005, "message": "limit exceeded"}), RateLimitedError)
        assert isinstance(classify_rpc_error({"code": -32601, "message": "method not found"}), FatalError)
        assert isinstance(classify_rpc_error({"code": -32000, "message": "header not found"}), TransientError)

    def test_transport_errors(self) -> None:
        request = httpx.Request("POST", "https://rpc.example/")
        assert isinstance(classify_transport_error(httpx.ConnectError("refused", request=request)), TransientError)
        assert isinstance(classify_transport_error(httpx.ReadTimeout("slow", request=request)), TransientError)
        assert isinstance(classify_transport_error(ConnectionResetError()), TransientError)

    def test_non_transport_error_returned_unchanged(self) -> None:
        exc = ValueError("bad input")
        assert classify_transport_error(exc) is exc


class TestJsonRpcOperation:
    @pytest.mark.asyncio
    async def test_returns_result_and_posts_payload(self) -> None:
        seen: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(json.loads(request.content))
            assert str(request.url) == RPC.base_url
            return _rpc_reply({"result": "0x1b4"})

        async with _client(handler) as client:
            result = await json_rpc_operation(client, "eth_blockNumber")(RPC)

        assert result == "0x1b4"
        assert seen == [{"jsonrpc": "2.0", "id": 1, "method": "eth_blockNumber", "params": []}]

    @pytest.mark.asyncio
    async def test_http_429_raises_rate_limited(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(429, headers={"Retry-After": "3"})

        async with _client(handler) as client:
            with pytest.raises(RateLimitedError) as exc_info:
                await json_rpc_operation(client, "eth_call")(RPC)

        assert exc_info.value.retry_after_s == 3.0
        assert isinstance(exc_info.value.__cause__, httpx.HTTPStatusError)

    @pytest.mark.asyncio
    async def test_rpc_limit_error_raises_rate_limited(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return _rpc_reply({"error": {"code": -32005, "message": "daily request count exceeded"}})

        async with _client(handler) as client:
            with pytest.raises(RateLimitedError, match="-32005"):
                await json_rpc_operation(client, "eth_getLogs", [{}])(RPC)

    @pytest.mark.asyncio
    async def test_unauthorised_is_fatal(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(401, json={"message": "invalid project id"})

        async with _client(handler) as client:
            with pytest.raises(FatalError):
                await json_rpc_operation(client, "eth_chainId")(RPC)

    @pytest.mark.asyncio
    async def test_connect_error_is_transient(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        async with _client(handler) as client:
            with pytest.raises(TransientError):
                await json_rpc_operation(client, "eth_chainId")(RPC)

    @pytest.mark.asyncio
    async def test_malformed_body_is_transient(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text="<html>bad gateway</html>")

        async with _client(handler) as client:
            with pytest.raises(TransientError, match="Malformed"):
                await json_rpc_operation(client, "eth_chainId")(RPC)


class TestHttpGetOperation:
    @pytest.mark.asyncio
    async def test_joins_path_and_passes_params(self) -> None:
        urls: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            urls.append(str(request.url))
            return httpx.Response(200, json={"avalanche-2": {"usd": 31.2}})

        async with _client(handler) as client:
            op = http_get_operation(client, "/simple/price", {"ids": "avalanche-2", "vs_currencies": "usd"})
            result = await op(API)

        assert result == {"avalanche-2": {"usd": 31.2}}
        assert urls == ["https://api.example/api/v3/simple/price?ids=avalanche-2&vs_currencies=usd"]

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503)

        async with _client(handler) as client:
            with pytest.raises(TransientError):
                await http_get_operation(client, "ping")(API)


class TestClassifiedDecorator:
    @pytest.mark.asyncio
    async def test_leaves_unrelated_errors_alone(self) -> None:
        @classified
        async def op(provider: ProviderConfig) -> None:
            raise ValueError("caller bug")

        with pytest.raises(ValueError, match="caller bug"):
            await op(RPC)

    @pytest.mark.asyncio
    async def test_translates_builtin_timeouts(self) -> None:
        @classified
        async def op(provider: ProviderConfig) -> None:
            raise TimeoutError("deadline")

        with pytest.raises(TransientError) as exc_info:
            await op(RPC)
        assert isinstance(exc_info.value.__cause__, TimeoutError)


class TestCoordinatorIntegration:
    @pytest.mark.asyncio
    async def test_throttled_primary_falls_over_to_backup(self, make_coordinator) -> None:
        hosts: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            hosts.append(request.url.host)
            if request.url.host == "infura.example":
                return httpx.Response(429)
            return _rpc_reply({"result": "0xa86a"})

        providers = [
            ProviderConfig(provider_id="infura", base_url="https://infura.example/v3/key", weight=10, primary=True),
            ProviderConfig(provider_id="public-rpc", base_url="https://public.example/rpc", weight=5),
        ]
        async with _client(handler) as client, make_coordinator(providers=providers) as coordinator:
            result = await coordinator.execute("chain-rpc", json_rpc_operation(client, "eth_chainId"))

        assert result == "0xa86a"
        assert hosts == ["infura.example", "public.example"]
