"""FastAPI server exposing the similar products lookup."""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from loguru import logger

from similar_products.api.schemas import ProductDetailResponse
from similar_products.exceptions import SimilarProductsRetrievalError
from similar_products.services.similar_products import (
    SimilarProductsService,
    build_similar_products_service,
)
from similar_products.settings import global_settings


class SimilarProductsServer:
    """HTTP server wrapping a SimilarProductsService.

    The service is created on startup by service_factory and closed on shutdown.
    """

    def __init__(
        self,
        service_factory: Callable[[], SimilarProductsService] | None = None,
    ):
        self._service_factory = service_factory or (
            lambda: build_similar_products_service(global_settings)
        )
        self.service: SimilarProductsService | None = None
        self.app = FastAPI(title="Similar Products Service", lifespan=self._lifespan)

        # Register routes
        self.app.get(
            "/product/{product_id}/similar",
            response_model=list[ProductDetailResponse],
        )(self.get_product_similar)
        self.app.get("/health")(self.health_check)
        self.app.exception_handler(SimilarProductsRetrievalError)(
            self.handle_retrieval_error
        )

    @asynccontextmanager
    async def _lifespan(self, app: FastAPI) -> AsyncIterator[None]:
        self.service = self._service_factory()
        logger.info("Similar products service started")
        try:
            yield
        finally:
            await self.service.close()
            self.service = None
            logger.info("Similar products service stopped")

    def _require_service(self) -> SimilarProductsService:
        if self.service is None:
            raise RuntimeError("Service not started. Run the app inside its lifespan.")
        return self.service

    async def get_product_similar(self, product_id: str) -> list[ProductDetailResponse]:
        """Similar products of product_id, in the order upstream ranks them.

        Args:
            product_id: Source product id

        Returns:
            Product details; an empty list when none could be resolved
        """
        details = await self._require_service().get_similar_products(product_id)
        return [ProductDetailResponse.from_detail(d) for d in details]

    async def handle_retrieval_error(
        self, request: Request, exc: SimilarProductsRetrievalError
    ) -> JSONResponse:
        """Map an unobtainable similar id list to 502."""
        logger.error(f"{request.method} {request.url.path}: {exc}")
        return JSONResponse(
            status_code=status.HTTP_502_BAD_GATEWAY,
            content={"detail": str(exc), "product_id": exc.product_id},
        )

    async def health_check(self):
        """Health check endpoint."""
        return {
            "status": "ok",
            "service": "similar-products",
            **self._require_service().get_health_status(),
        }


def create_app(
    service_factory: Callable[[], SimilarProductsService] | None = None,
) -> FastAPI:
    """Create FastAPI app for the similar products service.

    Args:
        service_factory: Builds the service when the app starts, from
            global_settings when omitted

    Returns:
        FastAPI app
    """
    server = SimilarProductsServer(service_factory)
    return server.app
