"""Async HTTP clients for upstream providers.

These clients turn every transport or protocol failure into an
``UpstreamError`` so the request queue can retry it and the circuit
breaker can count it. They do no retrying or caching of their own.
"""

import os
from collections.abc import Sequence
from typing import Any

import httpx
import structlog

from cacheguard.resilience.errors import ConfigurationError, UpstreamError

logger = structlog.get_logger(__name__)

DEFAULT_TIMEOUT = 30.0
MAX_ERROR_BODY = 200


class UpstreamClient:
    """JSON-over-HTTP client for one upstream.

    Example:
        async with UpstreamClient("defillama", "https://api.llama.fi") as client:
            protocols = await client.get_json("/protocols")
    """

    def __init__(
        self,
        name: str,
        base_url: str = "",
        *,
        headers: dict[str, str] | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            name: Upstream name, used in errors and logs.
            base_url: Prefix for relative request paths.
            headers: Extra headers sent with every request.
            timeout: Transport-level timeout in seconds.
            transport: Custom httpx transport (for testing).
        """
        self.name = name
        self.base_url = base_url
        self.headers = headers or {}
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._logger = logger.bind(component="upstream_client", upstream=name)

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create httpx client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self.headers,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def request_json(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
    ) -> Any:
        """Send a request and decode its JSON body.

        Raises:
            UpstreamError: On network errors, non-2xx responses or a body
                that is not JSON.
        """
        client = await self._get_client()
        self._logger.debug("upstream_request", method=method, url=url, params=params)

        try:
            response = await client.request(method, url, params=params, json=json)
        except httpx.RequestError as e:
            self._logger.error("upstream_request_error", url=url, error=str(e))
            raise UpstreamError(
                f"{self.name} request failed: {e}",
                upstream=self.name,
                details={"url": url},
            ) from e

        if not response.is_success:
            self._logger.warning("upstream_bad_status", url=url, status=response.status_code)
            raise UpstreamError(
                f"{self.name} returned HTTP {response.status_code}",
                upstream=self.name,
                status=response.status_code,
                details={"url": url, "body": response.text[:MAX_ERROR_BODY]},
            )

        try:
            data = response.json()
        except ValueError as e:
            raise UpstreamError(
                f"{self.name} returned malformed JSON",
                upstream=self.name,
                status=response.status_code,
                details={"url": url, "body": response.text[:MAX_ERROR_BODY]},
            ) from e

        self._logger.debug("upstream_response", url=url, status=response.status_code)
        return data

    async def get_json(self, path: str, params: dict[str, Any] | None = None) -> Any:
        """GET ``path`` and return the decoded JSON body."""
        return await self.request_json("GET", path, params=params)

    async def graphql(
        self,
        query: str,
        variables: dict[str, Any] | None = None,
        path: str = "",
    ) -> Any:
        """Run a GraphQL query and return its ``data`` member.

        Raises:
            UpstreamError: If the response carries ``errors`` or no data.
        """
        body = await self.request_json(
            "POST",
            path,
            json={"query": query, "variables": variables or {}},
        )
        if not isinstance(body, dict):
            raise UpstreamError(f"{self.name} returned a non-object GraphQL body", upstream=self.name)
        errors = body.get("errors")
        if errors:
            messages = [e.get("message", str(e)) if isinstance(e, dict) else str(e) for e in errors]
            raise UpstreamError(
                f"{self.name} GraphQL error: {'; '.join(messages)}",
                upstream=self.name,
                details={"errors": errors},
            )
        if body.get("data") is None:
            raise UpstreamError(f"{self.name} GraphQL response has no data", upstream=self.name)
        return body["data"]

    async def __aenter__(self) -> "UpstreamClient":
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        await self.close()


class JsonRpcClient(UpstreamClient):
    """JSON-RPC 2.0 client with an ordered list of endpoints.

    Each call tries the endpoints in order and returns the first result;
    if every endpoint fails, the last error is raised.

    Example:
        rpc = JsonRpcClient.from_env()
        block = int(await rpc.rpc_call("eth_blockNumber"), 16)
    """

    def __init__(
        self,
        name: str,
        endpoints: Sequence[str],
        *,
        timeout: float = 8.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not endpoints:
            raise ConfigurationError(f"{name} needs at least one RPC endpoint")
        super().__init__(name, timeout=timeout, transport=transport)
        self.endpoints = list(endpoints)
        self._request_id = 0

    @classmethod
    def from_env(cls, name: str = "ethereum") -> "JsonRpcClient":
        """Primary and fallback endpoints from ETH_RPC_URL / ETH_RPC_URL_FALLBACK."""
        return cls(
            name,
            [
                os.getenv("ETH_RPC_URL", "https://eth.llamarpc.com"),
                os.getenv("ETH_RPC_URL_FALLBACK", "https://rpc.ankr.com/eth"),
            ],
        )

    async def _call_endpoint(self, url: str, payload: dict[str, Any]) -> Any:
        body = await self.request_json("POST", url, json=payload)
        if not isinstance(body, dict):
            raise UpstreamError(f"{self.name} returned a non-object RPC body", upstream=self.name)
        if body.get("error") is not None:
            raise UpstreamError(
                f"{self.name} RPC error: {body['error']}",
                upstream=self.name,
                details={"url": url, "error": body["error"]},
            )
        if "result" not in body:
            raise UpstreamError(f"{self.name} RPC response has no result", upstream=self.name)
        return body["result"]

    async def rpc_call(self, method: str, params: list[Any] | None = None) -> Any:
        """Call ``method`` on the first endpoint that answers.

        Raises:
            UpstreamError: If every endpoint fails.
        """
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params or [],
        }

        last_error: UpstreamError | None = None
        for index, url in enumerate(self.endpoints):
            try:
                return await self._call_endpoint(url, payload)
            except UpstreamError as e:
                last_error = e
                if index + 1 < len(self.endpoints):
                    self._logger.warning(
                        "rpc_endpoint_failed_trying_fallback",
                        method=method,
                        url=url,
                        error=e.message,
                    )

        self._logger.error("rpc_all_endpoints_failed", method=method, error=str(last_error))
        assert last_error is not None
        raise last_error
