import os

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

load_dotenv()


class Settings(BaseModel):
    # Upstream catalog service
    product_service_base_url: str = Field(
        default="http://localhost:3001", alias="PRODUCT_SERVICE_BASE_URL"
    )
    product_service_connect_timeout: float = Field(
        default=3.0, alias="PRODUCT_SERVICE_CONNECT_TIMEOUT"
    )
    product_service_read_timeout: float = Field(
        default=8.0, alias="PRODUCT_SERVICE_READ_TIMEOUT"
    )
    product_service_max_connections: int = Field(
        default=200, alias="PRODUCT_SERVICE_MAX_CONNECTIONS"
    )

    # Detail cache (durations in seconds, empty or "none" disables a TTL)
    cache_maximum_size: int = Field(default=1000, alias="CACHE_MAXIMUM_SIZE")
    cache_expire_after_write: float | None = Field(
        default=1800.0, alias="CACHE_EXPIRE_AFTER_WRITE"
    )
    cache_expire_after_access: float | None = Field(
        default=600.0, alias="CACHE_EXPIRE_AFTER_ACCESS"
    )
    cache_record_stats: bool = Field(default=True, alias="CACHE_RECORD_STATS")

    # Circuit breaker (rates in percent, durations in seconds)
    circuit_breaker_name: str = Field(
        default="productDetailCB", alias="CIRCUIT_BREAKER_NAME"
    )
    circuit_breaker_failure_rate_threshold: float = Field(
        default=50.0, alias="CIRCUIT_BREAKER_FAILURE_RATE_THRESHOLD"
    )
    circuit_breaker_wait_duration_in_open_state: float = Field(
        default=10.0, alias="CIRCUIT_BREAKER_WAIT_DURATION_IN_OPEN_STATE"
    )
    circuit_breaker_sliding_window_size: int = Field(
        default=100, alias="CIRCUIT_BREAKER_SLIDING_WINDOW_SIZE"
    )
    circuit_breaker_minimum_number_of_calls: int = Field(
        default=20, alias="CIRCUIT_BREAKER_MINIMUM_NUMBER_OF_CALLS"
    )
    circuit_breaker_slow_call_rate_threshold: float = Field(
        default=50.0, alias="CIRCUIT_BREAKER_SLOW_CALL_RATE_THRESHOLD"
    )
    circuit_breaker_slow_call_duration_threshold: float = Field(
        default=5.0, alias="CIRCUIT_BREAKER_SLOW_CALL_DURATION_THRESHOLD"
    )
    circuit_breaker_permitted_calls_in_half_open: int = Field(
        default=1, alias="CIRCUIT_BREAKER_PERMITTED_CALLS_IN_HALF_OPEN"
    )

    # Aggregation
    similar_products_timeout: float = Field(default=5.0, alias="SIMILAR_PRODUCTS_TIMEOUT")
    similar_products_concurrency_level: int = Field(
        default=10, alias="SIMILAR_PRODUCTS_CONCURRENCY_LEVEL"
    )

    # Server
    server_host: str = Field(default="0.0.0.0", alias="SERVER_HOST")
    server_port: int = Field(default=5000, alias="SERVER_PORT")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    debug: bool = Field(default=False, alias="SIMILAR_PRODUCTS_DEBUG")

    @field_validator(
        "cache_expire_after_write", "cache_expire_after_access", mode="before"
    )
    @classmethod
    def _disable_ttl(cls, value):
        if isinstance(value, str) and value.strip().lower() in ("", "none"):
            return None
        return value


global_settings = Settings.model_validate(dict(os.environ))
