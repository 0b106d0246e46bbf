"""Shared fixtures for the similar products test suite."""

import asyncio
from decimal import Decimal
from typing import Any

import httpx
import pytest

from similar_products.models import ProductDetail

BASE_URL = "http://catalog.test"


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_detail(
    product_id: str,
    name: str | None = "Product",
    price: str = "10",
    available: bool = True,
) -> ProductDetail:
    return ProductDetail(
        id=product_id, name=name, price=Decimal(price), available=available
    )


def detail_payload(
    product_id: str,
    name: str | None = "Product",
    price: float = 10.0,
    availability: bool = True,
) -> dict[str, Any]:
    return {"id": product_id, "name": name, "price": price, "availability": availability}


class UpstreamStub:
    """In-memory stand-in for the catalog service behind an httpx.MockTransport.

    Values in ``similar`` and ``details`` may be a JSON body, an int status
    code, an exception to raise, or raw ``bytes`` served as-is.
    """

    def __init__(
        self,
        similar: dict[str, Any] | None = None,
        details: dict[str, Any] | None = None,
        delays: dict[str, float] | None = None,
    ):
        self.similar = similar or {}
        self.details = details or {}
        self.delays = delays or {}
        self.requests: list[str] = []

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self.transport, base_url=BASE_URL)

    async def handle(self, request: httpx.Request) -> httpx.Response:
        raw_path = request.url.raw_path.decode()
        self.requests.append(raw_path)

        path = request.url.path
        if path.endswith("/similarids"):
            product_id = path[len("/product/"):-len("/similarids")]
            value = self.similar.get(product_id, 404)
        else:
            product_id = path[len("/product/"):]
            value = self.details.get(product_id, 404)

        delay = self.delays.get(product_id)
        if delay:
            await asyncio.sleep(delay)

        if isinstance(value, Exception):
            raise value
        if isinstance(value, int):
            return httpx.Response(status_code=value, json={"message": "error"})
        if isinstance(value, bytes):
            return httpx.Response(status_code=200, content=value)
        return httpx.Response(status_code=200, json=value)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def upstream() -> UpstreamStub:
    """Catalog with products 1-5; 1 is similar to 2, 3 and 4."""
    return UpstreamStub(
        similar={
            "1": ["2", "3", "4"],
            "2": ["3", "100", "1000"],
            "5": [],
        },
        details={
            "1": detail_payload("1", "Shirt", 9.99, True),
            "2": detail_payload("2", "Dress", 19.99, True),
            "3": detail_payload("3", "Blazer", 29.99, False),
            "4": detail_payload("4", "Boots", 39.99, True),
            "100": detail_payload("100", "Trousers", 49.99, False),
            "1000": 500,
        },
    )
