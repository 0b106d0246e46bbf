"""
Product records exchanged with the upstream catalog service.
"""

from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field


class ProductDetail(BaseModel):
    """Resolved product detail.

    Upstream sends ``availability``; the record exposes it as ``available``.
    Instances are immutable and compare by value.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    name: str | None = None
    price: Decimal
    available: bool = Field(alias="availability")
