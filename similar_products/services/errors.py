"""
Service layer exceptions.
"""


class ServiceError(Exception):
    """Base exception for upstream service errors."""

    def __init__(self, message: str, service_id: str | None = None):
        self.service_id = service_id
        super().__init__(message)


class CircuitOpenError(ServiceError):
    """Circuit breaker is open, request blocked."""

    def __init__(self, service_id: str, reset_after_seconds: float):
        self.reset_after_seconds = reset_after_seconds
        super().__init__(
            f"Circuit breaker open for service '{service_id}', "
            f"retry after {reset_after_seconds:.1f}s",
            service_id=service_id,
        )


class RequestTimeoutError(ServiceError):
    """Request timed out."""

    def __init__(self, service_id: str, timeout: float | None):
        self.timeout = timeout
        super().__init__(
            f"Request to service '{service_id}' timed out after {timeout}s",
            service_id=service_id,
        )


class UpstreamStatusError(ServiceError):
    """Upstream answered with an unexpected HTTP status."""

    def __init__(self, service_id: str, status_code: int, body: str = ""):
        self.status_code = status_code
        super().__init__(
            f"HTTP {status_code}: {body[:200]}",
            service_id=service_id,
        )


class UpstreamPayloadError(ServiceError):
    """Upstream answered successfully but the body is unusable."""

    pass
