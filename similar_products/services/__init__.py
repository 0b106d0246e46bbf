"""
Service layer - similar products aggregation and its resilience patterns.

Provides:
- DetailStore: Bounded cache with dual TTLs and single-flight loading
- CircuitBreaker: Sliding-window failure gate for the upstream service
- RequestDeduplicator: Shares one in-flight load between concurrent callers
- ProductServiceClient: Upstream catalog client guarded by the breaker
- SimilarProductsService: Bounded, order-preserving, failure-tolerant fan-out
"""

from similar_products.services.errors import (
    ServiceError,
    CircuitOpenError,
    RequestTimeoutError,
    UpstreamPayloadError,
    UpstreamStatusError,
)
from similar_products.services.cache import CacheConfig, CacheEntry, CacheStats, DetailStore
from similar_products.services.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitState,
)
from similar_products.services.deduplicator import RequestDeduplicator
from similar_products.services.client import ClientConfig, ProductServiceClient
from similar_products.services.similar_products import (
    SimilarProductsService,
    build_similar_products_service,
)

__all__ = [
    # Errors
    "ServiceError",
    "CircuitOpenError",
    "RequestTimeoutError",
    "UpstreamPayloadError",
    "UpstreamStatusError",
    # Cache
    "CacheConfig",
    "CacheEntry",
    "CacheStats",
    "DetailStore",
    # Circuit Breaker
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerRegistry",
    "CircuitState",
    # Deduplicator
    "RequestDeduplicator",
    # Client
    "ClientConfig",
    "ProductServiceClient",
    # Aggregation
    "SimilarProductsService",
    "build_similar_products_service",
]
