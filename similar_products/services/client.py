"""
ProductServiceClient - Async HTTP client for the upstream catalog service.

Every upstream call goes through one shared CircuitBreaker. Transport
failures, timeouts, error statuses and an open circuit degrade to
"nothing found" instead of propagating; only an unusable similar-ids
payload is raised to the caller.
"""

import json
from dataclasses import dataclass
from decimal import Decimal
from typing import Any
from urllib.parse import quote

import httpx
from loguru import logger
from pydantic import ValidationError

from similar_products.models import ProductDetail
from similar_products.services.circuit_breaker import CircuitBreaker
from similar_products.services.errors import (
    CircuitOpenError,
    RequestTimeoutError,
    ServiceError,
    UpstreamPayloadError,
    UpstreamStatusError,
)


@dataclass
class ClientConfig:
    """Configuration for the upstream catalog service."""

    service_id: str = "product-service"
    base_url: str = "http://localhost:3001"
    connect_timeout: float = 3.0
    read_timeout: float = 8.0
    max_connections: int = 200
    headers: dict[str, str] | None = None


class ProductServiceClient:
    """
    Client for the two upstream operations.

    Usage:
        async with ProductServiceClient(ClientConfig(base_url=url), breaker) as client:
            ids = await client.list_similar_ids("1")
            detail = await client.fetch_detail(ids[0])

    Neither operation retries.
    """

    def __init__(
        self,
        config: ClientConfig | None = None,
        circuit_breaker: CircuitBreaker | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.config = config or ClientConfig()
        self.circuit_breaker = circuit_breaker or CircuitBreaker(self.config.service_id)

        # HTTP client (lazy initialization)
        self._http_client = http_client

    @property
    def service_id(self) -> str:
        return self.config.service_id

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                base_url=self.config.base_url,
                timeout=httpx.Timeout(
                    self.config.read_timeout,
                    connect=self.config.connect_timeout,
                ),
                limits=httpx.Limits(max_connections=self.config.max_connections),
                headers=self.config.headers,
                follow_redirects=True,
            )
        return self._http_client

    async def list_similar_ids(self, product_id: str) -> list[str]:
        """
        Fetch the ids of products similar to product_id, in upstream order.

        Returns:
            The id list; empty when upstream is unavailable, the circuit is
            open or the product is unknown

        Raises:
            UpstreamPayloadError: If upstream answered with something that is
                not a JSON array of string ids
        """
        path = f"/product/{_path_segment(product_id)}/similarids"

        try:
            payload = await self._get_json(path)
        except UpstreamPayloadError:
            raise
        except CircuitOpenError as e:
            logger.warning(f"Similar ids for product '{product_id}' skipped: {e}")
            return []
        except ServiceError as e:
            logger.warning(f"Similar ids for product '{product_id}' unavailable: {e}")
            return []

        if payload is None:
            logger.info(f"Product '{product_id}' not found upstream, no similar ids")
            return []

        if not isinstance(payload, list) or not all(isinstance(i, str) for i in payload):
            raise UpstreamPayloadError(
                f"Expected a JSON array of ids for product '{product_id}', "
                f"got {type(payload).__name__}",
                service_id=self.service_id,
            )

        return payload

    async def fetch_detail(self, product_id: str) -> ProductDetail | None:
        """
        Fetch one product detail.

        Returns:
            The detail, or None when the product is not found, upstream is
            unavailable, the circuit is open or the payload is invalid
        """
        path = f"/product/{_path_segment(product_id)}"

        try:
            payload = await self._get_json(path)
        except ServiceError as e:
            logger.warning(f"Detail for product '{product_id}' unavailable: {e}")
            return None

        if payload is None:
            logger.debug(f"Product '{product_id}' not found upstream")
            return None

        try:
            return ProductDetail.model_validate(payload)
        except ValidationError as e:
            logger.warning(
                f"Detail for product '{product_id}' has an invalid payload: "
                f"{e.error_count()} validation errors"
            )
            return None

    async def _get_json(self, path: str) -> Any | None:
        """GET path through the circuit breaker. None means 404."""
        return await self.circuit_breaker.call(lambda: self._execute_request(path))

    async def _execute_request(self, path: str) -> Any | None:
        """Execute the actual HTTP request."""
        client = await self._get_http_client()

        try:
            response = await client.get(path)
        except httpx.TimeoutException as e:
            raise RequestTimeoutError(self.service_id, self.config.read_timeout) from e
        except httpx.RequestError as e:
            raise ServiceError(
                f"{type(e).__name__}: {e}", service_id=self.service_id
            ) from e

        # A 404 is a healthy answer and must not count against the breaker
        if response.status_code == httpx.codes.NOT_FOUND:
            return None

        if response.is_error:
            raise UpstreamStatusError(
                self.service_id, response.status_code, response.text
            )

        # Prices stay exact: JSON floats parse to Decimal
        try:
            return json.loads(response.content, parse_float=Decimal)
        except ValueError as e:
            raise UpstreamPayloadError(
                f"Invalid JSON from {path}: {e}", service_id=self.service_id
            ) from e

    async def close(self) -> None:
        """Close the HTTP client and cleanup resources."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None
        logger.debug("ProductServiceClient closed")

    async def __aenter__(self) -> "ProductServiceClient":
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        await self.close()


def _path_segment(product_id: str) -> str:
    """Percent-encode an id as a single URL path segment."""
    return quote(product_id, safe="")
