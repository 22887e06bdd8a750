import asyncio
import logging
from typing import Callable, List, Optional

from cache import (
    LocalCache,
    CART_CACHE_KEY,
    WISHLIST_CACHE_KEY,
    ADDRESS_CACHE_KEY,
    user_cache_key,
)
from config import CARTS, WISHLISTS, ADDRESSES
from errors import AuthRequiredError
from schemas import CurrentUser
from stores import AddressBookStore, CartStore, Store, WishlistStore
from sync import DocumentStore, SyncAdapter

logger = logging.getLogger("ramro.session")

AuthListener = Callable[[Optional[CurrentUser]], None]


def _log_transition_failure(task: asyncio.Task):
    if not task.cancelled() and task.exception() is not None:
        logger.warning("Sign-in did not complete cleanly: %s", task.exception())


class AuthState:
    """Identity boundary: the signed-in user and a feed of sign-in/sign-out transitions."""

    def __init__(self):
        self.current_user: Optional[CurrentUser] = None
        self._listeners: List[AuthListener] = []

    def watch(self, listener: AuthListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unwatch():
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unwatch

    def set_user(self, user: Optional[CurrentUser]):
        previous = self.current_user
        self.current_user = user
        if (previous.id if previous else None) == (user.id if user else None):
            return
        for listener in list(self._listeners):
            listener(user)


class Session:
    """Cart, wishlist and address book of whoever is signed in on this device."""

    def __init__(self, documents: DocumentStore, cache: Optional[LocalCache] = None):
        self.documents = documents
        self.cache = cache
        self.cart = CartStore()
        self.wishlist = WishlistStore()
        self.addresses = AddressBookStore()
        self.user: Optional[CurrentUser] = None
        self.adapters: List[SyncAdapter] = []
        self._transition: Optional[asyncio.Task] = None

    @property
    def stores(self) -> List[Store]:
        return [self.cart, self.wishlist, self.addresses]

    def _adapters_for(self, user: CurrentUser) -> List[SyncAdapter]:
        plan = [
            (self.cart, CARTS, CART_CACHE_KEY),
            (self.wishlist, WISHLISTS, WISHLIST_CACHE_KEY),
            (self.addresses, ADDRESSES, ADDRESS_CACHE_KEY),
        ]
        return [
            SyncAdapter(store, self.documents, collection, user.id,
                        cache=self.cache, cache_key=user_cache_key(prefix, user.id))
            for store, collection, prefix in plan
        ]

    async def sign_in(self, user: CurrentUser, live: bool = True):
        if self.user is not None and self.user.id == user.id and self.adapters:
            return
        if self.user is not None:
            self.sign_out()
        # a guest cart is transient and never carried into an account
        self._reset()
        self.user = user
        self.adapters = self._adapters_for(user)
        for adapter in self.adapters:
            adapter.attach()
            adapter.restore_cached()
        logger.info("Signed in %s", user.id)
        results = await asyncio.gather(*(adapter.start_load() for adapter in self.adapters), return_exceptions=True)
        if self.user is not user:
            return
        if live:
            for adapter in self.adapters:
                adapter.subscribe()
        failures = [r for r in results if isinstance(r, BaseException)]
        if failures:
            raise failures[0]

    def sign_out(self):
        for adapter in self.adapters:
            adapter.detach()
        self.adapters = []
        # stores are unbound now, so clearing them leaves the remote documents intact
        self._reset()
        if self.user is not None:
            logger.info("Signed out %s", self.user.id)
        self.user = None

    def _reset(self):
        for store in self.stores:
            store.clear()
            store.clear_error()

    def follow(self, auth: AuthState) -> Callable[[], None]:
        """Run sign-in/sign-out whenever ``auth`` reports a transition."""

        def on_auth_change(user: Optional[CurrentUser]):
            if user is None:
                self.sign_out()
                return
            # drop the previous user's state before the new load resolves
            if self.user is not None and self.user.id != user.id:
                self.sign_out()
            self._transition = asyncio.get_running_loop().create_task(self.sign_in(user))
            self._transition.add_done_callback(_log_transition_failure)

        return auth.watch(on_auth_change)

    async def settled(self):
        if self._transition is not None:
            await self._transition

    def require_user(self) -> CurrentUser:
        if self.user is None:
            raise AuthRequiredError()
        return self.user

    def toggle_wishlist(self, product_id: str) -> bool:
        self.require_user()
        return self.wishlist.toggle(product_id)

    async def flush(self):
        for store in self.stores:
            await store.flush()
