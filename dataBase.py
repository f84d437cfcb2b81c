import logging
import motor.motor_asyncio
import os
from dotenv import load_dotenv

from blob_store import BlobStore, GridFSBlobStore, MemoryBlobStore
from record_store import MemoryRecordStore, MongoRecordStore, RecordStore

# Load environment variables from .env
load_dotenv()

logger = logging.getLogger(__name__)

MONGO_URL = os.getenv("MONGO_URL")
MONGO_DB_NAME = os.getenv("MONGO_DB_NAME", "bookswapdb")
STORE_BACKEND = os.getenv("STORE_BACKEND", "mongo" if MONGO_URL else "memory")
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "")

if STORE_BACKEND == "mongo":
    client = motor.motor_asyncio.AsyncIOMotorClient(MONGO_URL, tz_aware=True)
    db = client[MONGO_DB_NAME]
    store: RecordStore = MongoRecordStore(db)
    blob_store: BlobStore = GridFSBlobStore(db, base_url=PUBLIC_BASE_URL)
elif STORE_BACKEND == "memory":
    client = None
    db = None
    store = MemoryRecordStore()
    blob_store = MemoryBlobStore(base_url=PUBLIC_BASE_URL)
else:
    raise RuntimeError(f"Unknown STORE_BACKEND {STORE_BACKEND!r}, expected 'mongo' or 'memory'")


async def init_db():
    if isinstance(store, MongoRecordStore):
        await client.admin.command("ping")
        await store.ensure_indexes()
    logger.info(f"Using {STORE_BACKEND} record store")


def close_db():
    if client is not None:
        client.close()


def get_store() -> RecordStore:
    return store


def get_blob_store() -> BlobStore:
    return blob_store
