import asyncio
import time
from abc import ABC, abstractmethod
import uuid
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Union

from pydantic import BaseModel, ValidationError as SchemaValidationError

import pricing
from errors import StoreError, ValidationError, NotFoundError, SyncError
from schemas import (
    Address,
    AddressBookDocument,
    CartDocument,
    LineItem,
    Product,
    Totals,
    WishlistDocument,
    utcnow,
)

Watcher = Callable[["Store"], None]
Persister = Callable[[], Optional[asyncio.Task]]


def describe_validation_error(exc: SchemaValidationError) -> str:
    parts = []
    for err in exc.errors():
        msg = err["msg"].removeprefix("Value error, ")
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {msg}" if loc else msg)
    return ", ".join(parts)


class Store(ABC):
    """In-memory state for one user document.

    Mutations are applied synchronously and then handed to the bound persister
    (a SyncAdapter), which returns the pending push task. Remote content comes in
    through ``replace_state`` and is never pushed back. The task of the latest push is
    also kept as ``last_push`` for operations that return something else.
    """

    document_model: type = BaseModel

    def __init__(self):
        self.loading = False
        self.error: Optional[StoreError] = None
        self.version = 0
        self._watchers: List[Watcher] = []
        self._persister: Optional[Persister] = None
        self._pending: set = set()
        self.last_push: Optional[asyncio.Task] = None

    # observers
    def watch(self, callback: Watcher) -> Callable[[], None]:
        self._watchers.append(callback)

        def unwatch():
            if callback in self._watchers:
                self._watchers.remove(callback)
        return unwatch

    def _notify(self):
        for callback in list(self._watchers):
            callback(self)

    # persistence hook
    def bind(self, persister: Persister):
        self._persister = persister

    def unbind(self):
        self._persister = None

    @property
    def bound(self) -> bool:
        return self._persister is not None

    def _commit(self) -> Optional[asyncio.Task]:
        self.version += 1
        self._notify()
        task = self._persister() if self._persister is not None else None
        self.last_push = task
        if task is not None:
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
        return task

    async def flush(self):
        """Wait for every in-flight push; raise the current SyncError if the remote is behind."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
        if isinstance(self.error, SyncError):
            raise self.error

    def clear_error(self):
        self.error = None

    # document state
    @abstractmethod
    def snapshot(self) -> BaseModel:
        ...

    @abstractmethod
    def _apply(self, document: BaseModel):
        ...

    @abstractmethod
    def _merge(self, base: BaseModel, remote: BaseModel):
        """Fold ``remote`` into the current state, keeping the local edits made since ``base``."""

    def _coerce(self, document: Union[BaseModel, Dict[str, Any], None]) -> BaseModel:
        if document is None:
            return self.document_model()
        if isinstance(document, self.document_model):
            return document
        return self.document_model.model_validate(document)

    def replace_state(self, document: Union[BaseModel, Dict[str, Any], None]):
        self._apply(self._coerce(document))
        self._notify()

    def merge_state(self, remote: Union[BaseModel, Dict[str, Any]], base: BaseModel):
        """Install a remote document fetched while local mutations were being made on top of ``base``."""
        self._merge(self._coerce(base), self._coerce(remote))
        self._notify()

    @abstractmethod
    def clear(self) -> Optional[asyncio.Task]:
        ...


class CartStore(Store):
    document_model = CartDocument

    def __init__(self):
        super().__init__()
        self._items: List[LineItem] = []

    @property
    def items(self) -> List[LineItem]:
        return list(self._items)

    @property
    def item_count(self) -> int:
        return sum(i.quantity for i in self._items)

    def get_item(self, product_id: str) -> Optional[LineItem]:
        for item in self._items:
            if item.product_id == product_id:
                return item
        return None

    def _index(self, product_id: str) -> int:
        for idx, item in enumerate(self._items):
            if item.product_id == product_id:
                return idx
        return -1

    def add_item(self, product: Union[Product, Dict[str, Any]], quantity: int = 1) -> Optional[asyncio.Task]:
        if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity < 1:
            raise ValidationError("Quantity must be at least 1")
        if not isinstance(product, Product):
            try:
                product = Product.model_validate(product)
            except SchemaValidationError as exc:
                raise ValidationError(describe_validation_error(exc)) from exc
        idx = self._index(product.id)
        if idx >= 0:
            existing = self._items[idx]
            self._items[idx] = existing.model_copy(update={
                "quantity": existing.quantity + quantity,
                "available_stock": product.stock,
            })
        else:
            self._items.append(LineItem(
                product_id=product.id,
                name=product.name,
                unit_price=product.price,
                quantity=quantity,
                available_stock=product.stock,
                image_ref=product.image,
                category=product.category,
            ))
        return self._commit()

    def update_quantity(self, product_id: str, new_quantity: int) -> Optional[asyncio.Task]:
        idx = self._index(product_id)
        if idx < 0:
            return None
        if new_quantity < 1:
            del self._items[idx]
        else:
            self._items[idx] = self._items[idx].model_copy(update={"quantity": int(new_quantity)})
        return self._commit()

    def remove_item(self, product_id: str) -> Optional[asyncio.Task]:
        idx = self._index(product_id)
        if idx < 0:
            return None
        del self._items[idx]
        return self._commit()

    def clear(self) -> Optional[asyncio.Task]:
        self._items = []
        return self._commit()

    def stock_warnings(self) -> List[LineItem]:
        return [i for i in self._items if i.quantity > i.available_stock]

    # totals
    def get_subtotal(self) -> Decimal:
        return pricing.subtotal(self._items)

    def get_tax(self) -> Decimal:
        return pricing.tax(self._items)

    def get_shipping(self) -> Decimal:
        return pricing.shipping(self._items)

    def get_grand_total(self) -> Decimal:
        return pricing.grand_total(self._items)

    def get_totals(self) -> Totals:
        return pricing.compute_totals(self._items)

    def snapshot(self) -> CartDocument:
        return CartDocument(items=self.items, updated_at=utcnow())

    def _apply(self, document: CartDocument):
        # remote writers may not honour one-line-per-product, so merge on the way in
        merged: Dict[str, LineItem] = {}
        for item in document.items:
            if item.product_id in merged:
                prev = merged[item.product_id]
                merged[item.product_id] = prev.model_copy(update={"quantity": prev.quantity + item.quantity})
            else:
                merged[item.product_id] = item
        self._items = list(merged.values())

    def _merge(self, base: CartDocument, remote: CartDocument):
        before = {i.product_id: i.quantity for i in base.items}
        local = {i.product_id: i for i in self._items}
        self._apply(remote)
        merged = []
        for item in self._items:
            mine = local.pop(item.product_id, None)
            change = (mine.quantity if mine else 0) - before.get(item.product_id, 0)
            if item.quantity + change >= 1:
                merged.append((mine or item).model_copy(update={"quantity": item.quantity + change}))
        # lines only this device has: keep what was added here since the fetch started
        for item in local.values():
            quantity = item.quantity - before.get(item.product_id, 0)
            if quantity >= 1:
                merged.append(item.model_copy(update={"quantity": quantity}))
        self._items = merged


class WishlistStore(Store):
    document_model = WishlistDocument

    def __init__(self):
        super().__init__()
        self._ids: List[str] = []

    @property
    def product_ids(self) -> List[str]:
        return list(self._ids)

    def is_in_wishlist(self, product_id: str) -> bool:
        return product_id in self._ids

    def get_count(self) -> int:
        return len(self._ids)

    def add_to_wishlist(self, product_id: str) -> Optional[asyncio.Task]:
        if not product_id:
            raise ValidationError("Product id is required")
        if product_id in self._ids:
            return None
        self._ids.append(product_id)
        return self._commit()

    def remove_from_wishlist(self, product_id: str) -> Optional[asyncio.Task]:
        if product_id not in self._ids:
            return None
        self._ids.remove(product_id)
        return self._commit()

    def toggle(self, product_id: str) -> bool:
        """Flip membership and return whether the product is now wishlisted."""
        if self.is_in_wishlist(product_id):
            self.remove_from_wishlist(product_id)
            return False
        self.add_to_wishlist(product_id)
        return True

    def clear(self) -> Optional[asyncio.Task]:
        self._ids = []
        return self._commit()

    def snapshot(self) -> WishlistDocument:
        return WishlistDocument(product_ids=self.product_ids, updated_at=utcnow())

    def _apply(self, document: WishlistDocument):
        self._ids = list(document.product_ids)

    def _merge(self, base: WishlistDocument, remote: WishlistDocument):
        before = set(base.product_ids)
        removed = before - set(self._ids)
        ids = [p for p in remote.product_ids if p not in removed]
        ids += [p for p in self._ids if p not in before and p not in ids]
        self._ids = ids


def new_address_id() -> str:
    return f"addr_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


class AddressBookStore(Store):
    document_model = AddressBookDocument

    def __init__(self):
        super().__init__()
        self._addresses: List[Address] = []

    @property
    def addresses(self) -> List[Address]:
        return list(self._addresses)

    def get_address(self, address_id: str) -> Optional[Address]:
        for addr in self._addresses:
            if addr.id == address_id:
                return addr
        return None

    def get_default_address(self) -> Optional[Address]:
        for addr in self._addresses:
            if addr.is_default:
                return addr
        return self._addresses[0] if self._addresses else None

    @staticmethod
    def _validate(data: Dict[str, Any]) -> Address:
        try:
            return Address.model_validate(data)
        except SchemaValidationError as exc:
            raise ValidationError(describe_validation_error(exc)) from exc

    def _only_default(self, address_id: str):
        self._addresses = [
            a if a.is_default == (a.id == address_id) else a.model_copy(update={"is_default": a.id == address_id})
            for a in self._addresses
        ]

    def add_address(self, data: Dict[str, Any]) -> Address:
        now = utcnow()
        address = self._validate({**data, "id": new_address_id(), "created_at": now, "updated_at": now})
        self._addresses.append(address)
        if address.is_default:
            self._only_default(address.id)
        self._commit()
        return address

    def update_address(self, address_id: str, changes: Dict[str, Any]) -> Address:
        current = self.get_address(address_id)
        if current is None:
            raise NotFoundError("Address not found")
        merged = {**current.model_dump(), **changes, "id": address_id, "created_at": current.created_at, "updated_at": utcnow()}
        address = self._validate(merged)
        self._addresses = [address if a.id == address_id else a for a in self._addresses]
        if address.is_default:
            self._only_default(address_id)
        self._commit()
        return address

    def delete_address(self, address_id: str) -> Optional[asyncio.Task]:
        if self.get_address(address_id) is None:
            return None
        self._addresses = [a for a in self._addresses if a.id != address_id]
        return self._commit()

    def set_default_address(self, address_id: str) -> Optional[asyncio.Task]:
        if self.get_address(address_id) is None:
            raise NotFoundError("Address not found")
        self._only_default(address_id)
        return self._commit()

    def clear(self) -> Optional[asyncio.Task]:
        self._addresses = []
        return self._commit()

    def snapshot(self) -> AddressBookDocument:
        return AddressBookDocument(addresses=self.addresses, updated_at=utcnow())

    def _apply(self, document: AddressBookDocument):
        self._addresses = list(document.addresses)
        defaults = [a.id for a in self._addresses if a.is_default]
        if len(defaults) > 1:
            self._only_default(defaults[-1])

    def _merge(self, base: AddressBookDocument, remote: AddressBookDocument):
        before = {a.id: a for a in base.addresses}
        local = {a.id: a for a in self._addresses}
        local_default = next((a.id for a in self._addresses if a.is_default), None)
        base_default = next((a.id for a in base.addresses if a.is_default), None)
        merged = []
        for addr in remote.addresses:
            if addr.id in before and addr.id not in local:
                continue  # deleted here
            mine = local.get(addr.id)
            edited = mine is not None and mine != before.get(addr.id)
            merged.append(mine if edited else addr)
        ids = {a.id for a in merged}
        merged += [a for a in self._addresses if a.id not in ids and a.id not in before]
        self._addresses = merged
        if local_default != base_default and self.get_address(local_default) is not None:
            self._only_default(local_default)
            return
        defaults = [a.id for a in self._addresses if a.is_default]
        if len(defaults) > 1:
            self._only_default(defaults[-1])
