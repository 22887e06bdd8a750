import asyncio
from decimal import Decimal

import pytest

from cache import MemoryCache
from schemas import CurrentUser, LineItem, Product
from session import Session
from sync import MemoryDocumentStore, Subscription


def make_product(product_id: str, price="100", stock: int = 10, name=None) -> Product:
    return Product(id=product_id, name=name or f"Product {product_id}", price=Decimal(str(price)), stock=stock,
                   image=f"https://cdn.example.com/{product_id}.jpg")


def make_item(price, quantity: int = 1, product_id: str = "p1") -> LineItem:
    return LineItem(product_id=product_id, name=f"Item {product_id}", unit_price=Decimal(str(price)), quantity=quantity)


def make_address(**overrides):
    data = {
        "label": "Home",
        "recipient_name": "Asha Gurung",
        "recipient_phone": "+91 98765 43210",
        "full_address": "12 Mall Road, Darjeeling 734101",
    }
    data.update(overrides)
    return data


class FlakyDocumentStore(MemoryDocumentStore):
    """Memory store whose reads and writes can be made to fail on demand."""

    def __init__(self):
        super().__init__()
        self.fail_get = False
        self.fail_set = False
        self.writes = 0

    async def get_document(self, collection, doc_id):
        if self.fail_get:
            raise ConnectionError("network unreachable")
        return await super().get_document(collection, doc_id)

    async def set_document(self, collection, doc_id, value):
        if self.fail_set:
            raise ConnectionError("quota exceeded")
        self.writes += 1
        await super().set_document(collection, doc_id, value)


class GatedDocumentStore(MemoryDocumentStore):
    """Reads block until ``release`` is set."""

    def __init__(self):
        super().__init__()
        self.release = asyncio.Event()

    async def get_document(self, collection, doc_id):
        await self.release.wait()
        return await super().get_document(collection, doc_id)


class LeakyFeedDocumentStore(MemoryDocumentStore):
    """Keeps every change callback, even after the subscription is closed, like a slow transport."""

    def __init__(self):
        super().__init__()
        self.callbacks = []

    def subscribe(self, collection, doc_id, on_change, on_error):
        self.callbacks.append((on_change, on_error))
        return Subscription()


@pytest.fixture
def documents():
    return MemoryDocumentStore()


@pytest.fixture
def flaky_documents():
    return FlakyDocumentStore()


@pytest.fixture
def cache():
    return MemoryCache()


@pytest.fixture
def alice():
    return CurrentUser(id="alice", email="alice@example.com")


@pytest.fixture
def bob():
    return CurrentUser(id="bob", email="bob@example.com")


@pytest.fixture
def session(documents, cache):
    return Session(documents, cache=cache)
