"""
MongoDB access for Mousepad Studio

The client is created lazily on first use and torn down explicitly. Concurrent
first requests share one connect attempt instead of racing to open several.
"""
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Union

from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database
from pymongo.errors import OperationFailure, PyMongoError

logger = logging.getLogger("mousepad.database")

CART_COLLECTION = "cartitem"
ORDER_COLLECTION = "order"


class MongoResource:
    def __init__(self, url: str, name: str, client_factory: Callable[..., Any] = MongoClient, **client_kwargs):
        self.url = url
        self.name = name
        self._client_factory = client_factory
        self._client_kwargs = {"serverSelectionTimeoutMS": 5000, **client_kwargs}
        self._client = None
        self._db: Optional[Database] = None
        self._lock = threading.Lock()

    @property
    def connected(self) -> bool:
        return self._db is not None

    def connect(self) -> Database:
        if self._db is not None:
            return self._db
        with self._lock:
            if self._db is None:
                client = self._client_factory(self.url, **self._client_kwargs)
                self._client = client
                self._db = client[self.name]
                logger.info("MongoDB client ready for database %s", self.name)
        return self._db

    @property
    def db(self) -> Database:
        return self.connect()

    def close(self) -> None:
        with self._lock:
            if self._client is not None:
                self._client.close()
                logger.info("MongoDB client closed")
            self._client = None
            self._db = None

    def ping(self) -> bool:
        try:
            self.db.command("ping")
            return True
        except PyMongoError as exc:
            logger.warning("MongoDB ping failed: %s", exc)
            return False

    def collection(self, name: str):
        return self.db[name]

    def ensure_indexes(self) -> None:
        cart = self.collection(CART_COLLECTION)
        cart.create_index([("owner", ASCENDING), ("id", ASCENDING)], unique=True)
        cart.create_index([("owner", ASCENDING), ("created_at", DESCENDING)])
        orders = self.collection(ORDER_COLLECTION)
        orders.create_index([("owner", ASCENDING), ("created_at", DESCENDING)])
        orders.create_index([("status", ASCENDING)])
        # Orders used to carry a separate unique business id
        try:
            if "orderId_1" in orders.index_information():
                orders.drop_index("orderId_1")
                logger.info("Dropped old orderId_1 index from order collection")
        except OperationFailure as exc:
            logger.warning("Error dropping orderId index: %s", exc)

    def create_document(self, collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
        doc = data.model_dump() if isinstance(data, BaseModel) else dict(data)
        now = datetime.now(timezone.utc)
        doc.setdefault("created_at", now)
        doc["updated_at"] = now
        result = self.collection(collection_name).insert_one(doc)
        return str(result.inserted_id)

    def get_documents(self, collection_name: str, filter_dict: Optional[Dict[str, Any]] = None,
                      limit: Optional[int] = None, sort: Optional[List] = None) -> List[Dict[str, Any]]:
        cursor = self.collection(collection_name).find(filter_dict or {})
        if sort:
            cursor = cursor.sort(sort)
        if limit:
            cursor = cursor.limit(limit)
        return list(cursor)


def serialize_doc(doc: Optional[Dict[str, Any]], expose_object_id: bool = True) -> Optional[Dict[str, Any]]:
    if not doc:
        return doc
    doc = dict(doc)
    object_id = doc.pop("_id", None)
    if expose_object_id and object_id is not None:
        doc["id"] = str(object_id)
    for k, v in list(doc.items()):
        if isinstance(v, datetime):
            doc[k] = v.isoformat()
    return doc
