import asyncio
import logging
import threading
from typing import Any, Dict, Optional

from pymongo import MongoClient
from pymongo.database import Database
from pymongo.errors import PyMongoError

from config import DATABASE_URL, DATABASE_NAME, DOCUMENT_BACKEND
from sync import DocumentStore, MemoryDocumentStore, Subscription

logger = logging.getLogger("ramro.db")

client = MongoClient(DATABASE_URL) if DATABASE_URL else None
db: Optional[Database] = client[DATABASE_NAME] if client is not None and DATABASE_NAME else None


def _strip_id(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if doc is None:
        return None
    doc = dict(doc)
    doc.pop("_id", None)
    return doc


class MongoDocumentStore(DocumentStore):
    """Documents keyed by ``_id`` = document id; live updates come from change streams.

    Change streams need a replica set or a managed cluster.
    """

    def __init__(self, database: Database, poll_ms: int = 500):
        self.database = database
        self.poll_ms = poll_ms

    async def get_document(self, collection, doc_id):
        doc = await asyncio.to_thread(self.database[collection].find_one, {"_id": doc_id})
        return _strip_id(doc)

    async def set_document(self, collection, doc_id, value):
        await asyncio.to_thread(
            self.database[collection].replace_one, {"_id": doc_id}, {**value, "_id": doc_id}, upsert=True
        )

    async def delete_document(self, collection, doc_id):
        await asyncio.to_thread(self.database[collection].delete_one, {"_id": doc_id})

    async def find_documents(self, collection, **equals):
        docs = await asyncio.to_thread(lambda: list(self.database[collection].find(equals)))
        return [_strip_id(d) for d in docs]

    def subscribe(self, collection, doc_id, on_change, on_error):
        loop = asyncio.get_running_loop()
        stop = threading.Event()

        def deliver(doc):
            if not stop.is_set():
                on_change(doc)

        def fail(exc):
            if not stop.is_set():
                on_error(exc)

        def watch():
            pipeline = [{"$match": {"documentKey._id": doc_id}}]
            try:
                with self.database[collection].watch(pipeline, full_document="updateLookup",
                                                     max_await_time_ms=self.poll_ms) as stream:
                    while not stop.is_set():
                        change = stream.try_next()
                        if change is None:
                            continue
                        if change["operationType"] == "delete":
                            doc = None
                        else:
                            doc = _strip_id(change.get("fullDocument"))
                        try:
                            loop.call_soon_threadsafe(deliver, doc)
                        except RuntimeError:
                            logger.debug("Event loop closed, stopping change stream on %s/%s", collection, doc_id)
                            return
            except PyMongoError as exc:
                logger.warning("Change stream on %s/%s closed: %s", collection, doc_id, exc)
                try:
                    loop.call_soon_threadsafe(fail, exc)
                except RuntimeError:
                    logger.debug("Event loop closed before feed error for %s/%s was delivered", collection, doc_id)

        thread = threading.Thread(target=watch, name=f"watch-{collection}-{doc_id}", daemon=True)
        thread.start()
        return Subscription(on_close=stop.set)


def build_document_store() -> DocumentStore:
    if DOCUMENT_BACKEND == "mongo":
        if db is None:
            raise RuntimeError("DATABASE_URL and DATABASE_NAME must be set for the mongo backend")
        logger.info("Using MongoDB database %s", db.name)
        return MongoDocumentStore(db)
    logger.info("Using in-memory document store")
    return MemoryDocumentStore()
