"""
Similar products aggregation.

Turns one similar-ids call into many detail lookups, resolved through the
shared DetailStore under a concurrency bound and an optional deadline.
Individual lookups that fail, time out or find nothing are dropped; the
result keeps the order of the upstream id list.
"""

import asyncio
from datetime import timedelta
from typing import Any

from loguru import logger

from similar_products.exceptions import SimilarProductsRetrievalError
from similar_products.models import ProductDetail
from similar_products.services.cache import CacheConfig, DetailStore
from similar_products.services.circuit_breaker import (
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
)
from similar_products.services.client import ClientConfig, ProductServiceClient
from similar_products.settings import Settings


class SimilarProductsService:
    """
    Aggregation engine for the similar products lookup.

    Usage:
        service = SimilarProductsService(client, store, concurrency_level=5)
        details = await service.get_similar_products("1")
    """

    def __init__(
        self,
        client: ProductServiceClient,
        store: DetailStore,
        concurrency_level: int = 10,
        timeout: timedelta | None = timedelta(seconds=5),
    ):
        if concurrency_level < 1:
            raise ValueError(f"concurrency_level must be >= 1, got {concurrency_level}")

        self.client = client
        self.store = store
        self.concurrency_level = concurrency_level
        self.timeout = timeout

    async def get_similar_products(self, product_id: str) -> list[ProductDetail]:
        """
        Resolve the details of every product similar to product_id.

        Args:
            product_id: Source product id

        Returns:
            Resolved details in the order of the upstream id list,
            duplicates included, unresolved ids left out

        Raises:
            SimilarProductsRetrievalError: If the similar id list could not be obtained
        """
        try:
            similar_ids = await self.client.list_similar_ids(product_id)
        except Exception as e:
            logger.error(f"Similar ids lookup for product '{product_id}' failed: {e}")
            raise SimilarProductsRetrievalError(product_id, e) from e

        if not similar_ids:
            return []

        details = await self._resolve_all(product_id, similar_ids)
        logger.debug(
            f"Resolved {len(details)}/{len(similar_ids)} similar products for '{product_id}'"
        )
        return details

    async def _resolve_all(
        self, product_id: str, similar_ids: list[str]
    ) -> list[ProductDetail]:
        """Resolve ids concurrently and return the successes in input order."""
        semaphore = asyncio.Semaphore(self.concurrency_level)

        async def resolve(related_id: str) -> ProductDetail | None:
            async with semaphore:
                return await self.store.get(related_id, self.client.fetch_detail)

        tasks = [asyncio.create_task(resolve(related_id)) for related_id in similar_ids]
        timeout = self.timeout.total_seconds() if self.timeout is not None else None

        try:
            _, pending = await asyncio.wait(tasks, timeout=timeout)
        finally:
            # Also reached when the caller itself is cancelled
            for task in tasks:
                if not task.done():
                    task.cancel()

        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning(
                f"{len(pending)} of {len(similar_ids)} similar products for "
                f"'{product_id}' not resolved within {timeout}s"
            )

        details: list[ProductDetail] = []
        for related_id, task in zip(similar_ids, tasks):
            if task.cancelled():
                continue

            error = task.exception()
            if error is not None:
                logger.warning(
                    f"Dropping similar product '{related_id}' of '{product_id}': "
                    f"{type(error).__name__}: {error}"
                )
                continue

            detail = task.result()
            if detail is not None:
                details.append(detail)

        return details

    def get_health_status(self) -> dict[str, Any]:
        """Get breaker and cache status."""
        breaker = self.client.circuit_breaker
        return {
            "circuit_breakers": {breaker.service_id: breaker.get_status()},
            "cache": self.store.get_stats().to_dict(),
        }

    async def close(self) -> None:
        """Cancel outstanding loads and close the upstream client."""
        await self.store.close()
        await self.client.close()


def build_similar_products_service(settings: Settings) -> SimilarProductsService:
    """Wire one store, one breaker and one client from settings."""
    registry = CircuitBreakerRegistry()
    breaker = registry.get(
        settings.circuit_breaker_name,
        CircuitBreakerConfig(
            failure_rate_threshold=settings.circuit_breaker_failure_rate_threshold,
            wait_duration_in_open_state=timedelta(
                seconds=settings.circuit_breaker_wait_duration_in_open_state
            ),
            sliding_window_size=settings.circuit_breaker_sliding_window_size,
            minimum_number_of_calls=settings.circuit_breaker_minimum_number_of_calls,
            slow_call_rate_threshold=settings.circuit_breaker_slow_call_rate_threshold,
            slow_call_duration_threshold=timedelta(
                seconds=settings.circuit_breaker_slow_call_duration_threshold
            ),
            permitted_calls_in_half_open=settings.circuit_breaker_permitted_calls_in_half_open,
        ),
    )

    client = ProductServiceClient(
        ClientConfig(
            service_id=settings.circuit_breaker_name,
            base_url=settings.product_service_base_url,
            connect_timeout=settings.product_service_connect_timeout,
            read_timeout=settings.product_service_read_timeout,
            max_connections=settings.product_service_max_connections,
        ),
        circuit_breaker=breaker,
    )

    store = DetailStore(
        CacheConfig(
            maximum_size=settings.cache_maximum_size,
            expire_after_write=_duration(settings.cache_expire_after_write),
            expire_after_access=_duration(settings.cache_expire_after_access),
            record_stats=settings.cache_record_stats,
        ),
        debug=settings.debug,
    )

    return SimilarProductsService(
        client,
        store,
        concurrency_level=settings.similar_products_concurrency_level,
        timeout=timedelta(seconds=settings.similar_products_timeout),
    )


def _duration(seconds: float | None) -> timedelta | None:
    return timedelta(seconds=seconds) if seconds is not None else None
