"""Response models for the HTTP surface."""

from decimal import Decimal

from pydantic import BaseModel

from similar_products.models import ProductDetail


class ProductDetailResponse(BaseModel):
    """Product detail as returned to API clients.

    price is serialized as a decimal string, exactly as upstream sent it.
    """

    id: str
    name: str | None = None
    price: Decimal
    availability: bool

    @classmethod
    def from_detail(cls, detail: ProductDetail) -> "ProductDetailResponse":
        return cls(
            id=detail.id,
            name=detail.name,
            price=detail.price,
            availability=detail.available,
        )
