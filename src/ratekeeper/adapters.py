"""Provider adapters that translate transport failures into the failure taxonomy.

The coordinator only understands ``RateLimitedError``, ``TransientError``
and ``FatalError``.  Everything transport-specific (HTTP status codes,
``Retry-After`` headers, JSON-RPC error objects, socket errors) is mapped
here, at the edge, before it reaches the retry policy.

Each operation factory returns a pure async function of the selected
``ProviderConfig``; the coordinator decides which provider it runs against.
"""

from __future__ import annotations

import functools
from typing import Any

import httpx
import structlog

from ratekeeper.exceptions import FatalError, ProviderFailure, RateLimitedError, TransientError
from ratekeeper.providers.types import Operation, ProviderConfig

logger = structlog.get_logger(__name__)

# JSON-RPC codes: -32005 is the Infura / EIP-1474 "limit exceeded" code
RPC_RATE_LIMIT_CODES = frozenset({-32005})
RPC_FATAL_CODES = frozenset({-32700, -32600, -32601, -32602})

TRANSIENT_HTTP_STATUSES = frozenset({408, 425})


def _retry_after(response: httpx.Response) -> float | None:
    raw = response.headers.get("Retry-After")
    if raw is None:
        return None
    try:
        return max(0.0, float(raw))
    except ValueError:
        # HTTP-date form is not worth parsing; the policy cooldown applies
        return None


def classify_http_status(response: httpx.Response) -> ProviderFailure:
    status = response.status_code
    details = {"status_code": status, "url": str(response.request.url)}
    if status == 429:
        return RateLimitedError(
            f"HTTP 429 from {response.request.url.host}",
            retry_after_s=_retry_after(response),
            details=details,
        )
    if status >= 500 or status in TRANSIENT_HTTP_STATUSES:
        return TransientError(f"HTTP {status} from {response.request.url.host}", details=details)
    return FatalError(f"HTTP {status} from {response.request.url.host}", details=details)


def classify_rpc_error(error: dict[str, Any]) -> ProviderFailure:
    """Map a JSON-RPC ``error`` object onto the taxonomy."""
    code = error.get("code")
    message = str(error.get("message", "JSON-RPC error"))
    details = {"rpc_code": code, "rpc_message": message}
    if code in RPC_RATE_LIMIT_CODES:
        return RateLimitedError(f"JSON-RPC {code}: {message}", details=details)
    if code in RPC_FATAL_CODES:
        return FatalError(f"JSON-RPC {code}: {message}", details=details)
    return TransientError(f"JSON-RPC {code}: {message}", details=details)


def classify_transport_error(exc: BaseException) -> BaseException:
    """Return the taxonomy error for ``exc``, or ``exc`` itself if it is not transport-level."""
    if isinstance(exc, ProviderFailure):
        return exc
    if isinstance(exc, httpx.HTTPStatusError):
        return classify_http_status(exc.response)
    if isinstance(exc, httpx.TransportError):
        # Timeouts, connect errors, protocol errors
        return TransientError(f"{type(exc).__name__}: {exc}")
    if isinstance(exc, OSError):
        # ConnectionError, TimeoutError, socket.gaierror
        return TransientError(f"{type(exc).__name__}: {exc}")
    return exc


def classified(operation: Operation) -> Operation:
    """Wrap an operation so transport errors leave it already classified."""

    @functools.wraps(operation)
    async def _wrapped(provider: ProviderConfig) -> Any:
        try:
            return await operation(provider)
        except ProviderFailure:
            raise
        except Exception as exc:
            translated = classify_transport_error(exc)
            if translated is exc:
                raise
            logger.debug(
                "transport_error_classified",
                provider=provider.provider_id,
                error=type(exc).__name__,
                classified_as=type(translated).__name__,
            )
            raise translated from exc

    return _wrapped


def json_rpc_operation(
    client: httpx.AsyncClient,
    method: str,
    params: list[Any] | None = None,
    *,
    request_id: int = 1,
) -> Operation:
    """Build an operation issuing one JSON-RPC call against the selected provider."""

    async def _call(provider: ProviderConfig) -> Any:
        payload = {
            "jsonrpc": "2.0",
            "id": request_id,
            "method": method,
            "params": params or [],
        }
        response = await client.post(
            provider.base_url,
            json=payload,
            headers=provider.metadata.get("headers"),
        )
        response.raise_for_status()
        try:
            body = response.json()
        except ValueError as exc:
            raise TransientError(f"Malformed JSON-RPC response from {provider.provider_id}") from exc

        if body.get("error"):
            raise classify_rpc_error(body["error"])
        return body.get("result")

    return classified(_call)


def http_get_operation(
    client: httpx.AsyncClient,
    path: str,
    params: dict[str, Any] | None = None,
) -> Operation:
    """Build an operation issuing a JSON GET (market data, explorer APIs)."""

    async def _get(provider: ProviderConfig) -> Any:
        url = provider.base_url.rstrip("/") + "/" + path.lstrip("/")
        response = await client.get(
            url,
            params=params,
            headers=provider.metadata.get("headers"),
        )
        response.raise_for_status()
        try:
            return response.json()
        except ValueError as exc:
            raise TransientError(f"Malformed JSON response from {provider.provider_id}") from exc

    return classified(_get)
