"""
HTTP surface for the similar products service.
"""

from similar_products.api.server import SimilarProductsServer, create_app
from similar_products.api.schemas import ProductDetailResponse

__all__ = [
    "SimilarProductsServer",
    "create_app",
    "ProductDetailResponse",
]
