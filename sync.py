import asyncio
import copy
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import ValidationError as SchemaValidationError

from cache import LocalCache
from errors import SyncError
from stores import Store

logger = logging.getLogger("ramro.sync")

OnChange = Callable[[Optional[Dict[str, Any]]], None]
OnError = Callable[[Exception], None]

MAX_UNACKED = 32


class Subscription:
    """Disposable handle for one change-feed listener."""

    def __init__(self, on_close: Optional[Callable[[], None]] = None):
        self.active = True
        self._on_close = on_close

    def close(self):
        if not self.active:
            return
        self.active = False
        if self._on_close:
            self._on_close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


class DocumentStore(ABC):
    """Boundary to the managed document database. Writes are full overwrites."""

    @abstractmethod
    async def get_document(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def set_document(self, collection: str, doc_id: str, value: Dict[str, Any]):
        ...

    @abstractmethod
    async def delete_document(self, collection: str, doc_id: str):
        ...

    @abstractmethod
    async def find_documents(self, collection: str, **equals) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    def subscribe(self, collection: str, doc_id: str, on_change: OnChange, on_error: OnError) -> Subscription:
        ...


class MemoryDocumentStore(DocumentStore):
    """In-process document store; change notifications are delivered synchronously on write."""

    def __init__(self):
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._listeners: Dict[Tuple[str, str], List[Tuple[OnChange, OnError, Subscription]]] = {}

    async def get_document(self, collection, doc_id):
        doc = self._collections.get(collection, {}).get(doc_id)
        return copy.deepcopy(doc)

    async def set_document(self, collection, doc_id, value):
        self._collections.setdefault(collection, {})[doc_id] = copy.deepcopy(value)
        self._publish(collection, doc_id)

    async def delete_document(self, collection, doc_id):
        if self._collections.get(collection, {}).pop(doc_id, None) is not None:
            self._publish(collection, doc_id)

    async def find_documents(self, collection, **equals):
        docs = self._collections.get(collection, {}).values()
        return [copy.deepcopy(d) for d in docs if all(d.get(k) == v for k, v in equals.items())]

    def subscribe(self, collection, doc_id, on_change, on_error):
        key = (collection, doc_id)
        entries = self._listeners.setdefault(key, [])

        def remove():
            entries[:] = [e for e in entries if e[2] is not sub]
        sub = Subscription(on_close=remove)
        entries.append((on_change, on_error, sub))
        return sub

    def listener_count(self, collection: str, doc_id: str) -> int:
        return len(self._listeners.get((collection, doc_id), []))

    def fail_feed(self, collection: str, doc_id: str, error: Exception):
        """Deliver ``error`` to every live listener of the document, as a dropped connection would."""
        for _, on_error, sub in list(self._listeners.get((collection, doc_id), [])):
            if sub.active:
                on_error(error)

    def _publish(self, collection, doc_id):
        value = self._collections.get(collection, {}).get(doc_id)
        for on_change, _, sub in list(self._listeners.get((collection, doc_id), [])):
            if sub.active:
                on_change(copy.deepcopy(value))


def _consume_result(task: asyncio.Task):
    # failures are reported through Store.error and Store.flush()
    if not task.cancelled():
        task.exception()


class SyncAdapter:
    """Keeps one Store consistent with one remote per-user document."""

    def __init__(self, store: Store, documents: DocumentStore, collection: str, doc_id: str,
                 cache: Optional[LocalCache] = None, cache_key: Optional[str] = None):
        self.store = store
        self.documents = documents
        self.collection = collection
        self.doc_id = doc_id
        self.cache = cache
        self.cache_key = cache_key
        self.attached = False
        self._subscription: Optional[Subscription] = None
        self._feed_token: Optional[object] = None
        self._unacked: List[Dict[str, Any]] = []
        self._load_gate: Optional[asyncio.Event] = None
        self._epoch = 0

    def __repr__(self):
        return f"<SyncAdapter {self.collection}/{self.doc_id}>"

    # binding
    def attach(self):
        self.store.bind(self._on_local_change)
        self.attached = True

    def detach(self):
        self._epoch += 1
        self.unsubscribe()
        if self.attached:
            self.store.unbind()
            self.attached = False

    # local cache
    def _serialize(self) -> Dict[str, Any]:
        return self.store.snapshot().model_dump(mode="json")

    def _write_cache(self, payload: Dict[str, Any]):
        if self.cache is None or not self.cache_key:
            return
        try:
            self.cache.set(self.cache_key, payload)
        except OSError as exc:
            logger.warning("Could not write local cache %s: %s", self.cache_key, exc)

    def restore_cached(self) -> bool:
        if self.cache is None or not self.cache_key:
            return False
        data = self.cache.get(self.cache_key)
        if not data:
            return False
        try:
            self.store.replace_state(data)
        except SchemaValidationError:
            logger.warning("Discarding malformed cache entry %s", self.cache_key)
            self.cache.remove(self.cache_key)
            return False
        return True

    def _replace(self, data: Optional[Dict[str, Any]]):
        try:
            self.store.replace_state(data)
        except SchemaValidationError as exc:
            raise SyncError(f"Malformed {self.collection} document", self.collection, self.doc_id) from exc
        if data is not None:
            self._write_cache(data)

    def _merge(self, data: Dict[str, Any], base):
        try:
            self.store.merge_state(data, base)
        except SchemaValidationError as exc:
            raise SyncError(f"Malformed {self.collection} document", self.collection, self.doc_id) from exc
        self._write_cache(self._serialize())

    # remote
    def start_load(self) -> asyncio.Task:
        """Begin fetching the remote document into the store.

        Mutations made before the returned task finishes are merged with the fetched
        document, and their pushes wait for it so they cannot overwrite it.
        """
        gate = asyncio.Event()
        self._load_gate = gate
        self.store.loading = True
        self.store.error = None
        return asyncio.get_running_loop().create_task(
            self._load(self.store.version, self.store.snapshot(), self._epoch, gate))

    async def load(self):
        await self.start_load()

    async def _load(self, started: int, base, epoch: int, gate: asyncio.Event):
        try:
            try:
                data = await self.documents.get_document(self.collection, self.doc_id)
            except Exception as exc:
                logger.warning("Load of %s/%s failed: %s", self.collection, self.doc_id, exc)
                raise SyncError(f"Failed to load {self.collection}: {exc}", self.collection, self.doc_id) from exc
            if self._epoch != epoch:
                logger.debug("%r detached during load, result dropped", self)
                return
            if data is None:
                return
            if self.store.version == started:
                self._replace(data)
            else:
                logger.info("Local changes during load of %s/%s, merging", self.collection, self.doc_id)
                self._merge(data, base)
        except SyncError as error:
            self.store.error = error
            raise
        finally:
            self.store.loading = False
            if self._load_gate is gate:
                self._load_gate = None
            gate.set()

    def _on_local_change(self) -> Optional[asyncio.Task]:
        payload = self._serialize()
        self._write_cache(payload)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.store.error = SyncError(f"{self.collection} changed outside the event loop; not saved",
                                         self.collection, self.doc_id)
            logger.warning("No running loop, %s/%s not pushed", self.collection, self.doc_id)
            return None
        task = loop.create_task(self._push_queued(payload, self._load_gate, self._epoch))
        task.add_done_callback(_consume_result)
        return task

    async def _push_queued(self, payload: Dict[str, Any], gate: Optional[asyncio.Event], epoch: int):
        if gate is not None:
            # made during a load: send the state the load leaves behind, remote content included
            await gate.wait()
            if self._epoch != epoch:
                logger.info("%r detached while a push waited for load; not sent", self)
                return
            payload = None
        await self.push(payload)

    async def push(self, payload: Optional[Dict[str, Any]] = None):
        if payload is None:
            payload = self._serialize()
            self._write_cache(payload)
        if self.subscribed:
            self._unacked.append(payload)
            del self._unacked[:-MAX_UNACKED]
        try:
            await self.documents.set_document(self.collection, self.doc_id, payload)
        except Exception as exc:
            if payload in self._unacked:
                self._unacked.remove(payload)
            error = SyncError(f"Failed to save {self.collection}: {exc}", self.collection, self.doc_id)
            self.store.error = error
            logger.warning("Push of %s/%s failed: %s", self.collection, self.doc_id, exc)
            raise error from exc
        if isinstance(self.store.error, SyncError):
            self.store.error = None

    # change feed
    def subscribe(self) -> Subscription:
        self.unsubscribe()
        token = object()
        self._feed_token = token

        def on_change(data):
            if self._feed_token is not token:
                logger.debug("Dropping late update for %s/%s", self.collection, self.doc_id)
                return
            if data is not None and data in self._unacked:
                # our own write coming back; drop it and anything older
                del self._unacked[:self._unacked.index(data) + 1]
                return
            try:
                self._replace(data)
            except SyncError as error:
                self.store.error = error
                logger.warning("%s", error)

        def on_error(exc):
            if self._feed_token is not token:
                return
            self.store.error = SyncError(f"Live sync of {self.collection} interrupted: {exc}",
                                         self.collection, self.doc_id)
            logger.warning("Change feed for %s/%s failed: %s", self.collection, self.doc_id, exc)

        try:
            self._subscription = self.documents.subscribe(self.collection, self.doc_id, on_change, on_error)
        except Exception as exc:
            self._feed_token = None
            error = SyncError(f"Failed to subscribe to {self.collection}: {exc}", self.collection, self.doc_id)
            self.store.error = error
            raise error from exc
        return self._subscription

    def unsubscribe(self):
        self._feed_token = None
        self._unacked.clear()
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None

    @property
    def subscribed(self) -> bool:
        return self._subscription is not None and self._subscription.active
