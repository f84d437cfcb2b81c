import copy
import logging
from collections import defaultdict
from typing import Any, Dict, Iterable, List, Optional

from pymongo import ASCENDING

logger = logging.getLogger(__name__)

USERS = "users"
BOOKS = "books"
TRADES = "trades"

# Primary key field of each table
TABLE_KEYS = {
    USERS: "user_id",
    BOOKS: "book_id",
    TRADES: "trade_id",
}

# Secondary indexes queried by the services
TABLE_INDEXES = {
    USERS: ["email"],
    BOOKS: ["user_id", "status"],
    TRADES: ["from_user_id", "to_user_id", "from_book_id", "to_book_id", "status"],
}


class WriteConflict(Exception):
    """Raised when a conditional put finds the stored record has changed."""

    def __init__(self, table: str, key: str):
        super().__init__(f"Conditional write on {table}/{key} failed")
        self.table = table
        self.key = key


def key_of(table: str, item: Dict[str, Any]) -> str:
    return item[TABLE_KEYS[table]]


class RecordStore:
    """Key-value record store used for users, books and trades.

    ``put`` is an upsert. When ``expect`` is given the write only happens if
    every field in it still has the expected value in the stored record,
    otherwise :class:`WriteConflict` is raised. A list value in a ``scan``
    filter matches any of its members.
    """

    async def get(self, table: str, key: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    async def put(self, table: str, item: Dict[str, Any], expect: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        raise NotImplementedError

    async def query_by_index(self, table: str, index: str, value: Any) -> List[Dict[str, Any]]:
        raise NotImplementedError

    async def scan(self, table: str, filter: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        raise NotImplementedError

    async def delete(self, table: str, key: str) -> bool:
        raise NotImplementedError

    async def batch_get(self, table: str, keys: Iterable[str]) -> Dict[str, Dict[str, Any]]:
        raise NotImplementedError


def _matches(record: Dict[str, Any], filter: Optional[Dict[str, Any]]) -> bool:
    if not filter:
        return True
    for field, expected in filter.items():
        value = record.get(field)
        if isinstance(expected, (list, tuple, set)):
            if value not in expected:
                return False
        elif value != expected:
            return False
    return True


class MemoryRecordStore(RecordStore):
    """In-process store for tests and local runs.

    Records are deep-copied on the way in and out. No await happens between
    the condition check and the write, so a conditional put is atomic under
    asyncio.
    """

    def __init__(self):
        self._tables: Dict[str, Dict[str, Dict[str, Any]]] = defaultdict(dict)

    async def get(self, table, key):
        record = self._tables[table].get(key)
        return copy.deepcopy(record) if record is not None else None

    async def put(self, table, item, expect=None):
        key = key_of(table, item)
        if expect is not None:
            current = self._tables[table].get(key)
            if current is None or not _matches(current, expect):
                raise WriteConflict(table, key)
        self._tables[table][key] = copy.deepcopy(item)
        return copy.deepcopy(item)

    async def query_by_index(self, table, index, value):
        return [copy.deepcopy(r) for r in self._tables[table].values() if r.get(index) == value]

    async def scan(self, table, filter=None):
        return [copy.deepcopy(r) for r in self._tables[table].values() if _matches(r, filter)]

    async def delete(self, table, key):
        return self._tables[table].pop(key, None) is not None

    async def batch_get(self, table, keys):
        found = {}
        for key in set(keys):
            record = self._tables[table].get(key)
            if record is not None:
                found[key] = copy.deepcopy(record)
        return found


def _strip_id(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if doc is not None:
        doc.pop("_id", None)
    return doc


def _to_query(filter: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    query = {}
    for field, expected in (filter or {}).items():
        if isinstance(expected, (list, tuple, set)):
            query[field] = {"$in": list(expected)}
        else:
            query[field] = expected
    return query


class MongoRecordStore(RecordStore):
    """Record store backed by a motor database; the table key doubles as ``_id``."""

    def __init__(self, db):
        self.db = db

    async def ensure_indexes(self):
        for table, indexes in TABLE_INDEXES.items():
            for index in indexes:
                await self.db[table].create_index([(index, ASCENDING)])
        logger.info("MongoDB indexes ensured")

    async def get(self, table, key):
        return _strip_id(await self.db[table].find_one({"_id": key}))

    async def put(self, table, item, expect=None):
        key = key_of(table, item)
        doc = dict(item)
        doc["_id"] = key
        if expect is None:
            await self.db[table].replace_one({"_id": key}, doc, upsert=True)
        else:
            result = await self.db[table].replace_one({"_id": key, **_to_query(expect)}, doc)
            if result.matched_count == 0:
                raise WriteConflict(table, key)
        return dict(item)

    async def query_by_index(self, table, index, value):
        return [_strip_id(doc) async for doc in self.db[table].find({index: value})]

    async def scan(self, table, filter=None):
        return [_strip_id(doc) async for doc in self.db[table].find(_to_query(filter))]

    async def delete(self, table, key):
        result = await self.db[table].delete_one({"_id": key})
        return result.deleted_count > 0

    async def batch_get(self, table, keys):
        unique = list(set(keys))
        if not unique:
            return {}
        found = {}
        async for doc in self.db[table].find({"_id": {"$in": unique}}):
            found[doc.pop("_id")] = doc
        return found
