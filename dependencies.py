from fastapi import Depends

from blob_store import BlobStore
from book_service import BookService
from dataBase import get_blob_store, get_store
from feed_service import FeedAssembler
from record_store import RecordStore
from trade_service import TradeLifecycleManager


def get_trade_manager(store: RecordStore = Depends(get_store)) -> TradeLifecycleManager:
    return TradeLifecycleManager(store)


def get_book_service(
    store: RecordStore = Depends(get_store),
    blob_store: BlobStore = Depends(get_blob_store),
) -> BookService:
    return BookService(store, blob_store)


def get_feed(store: RecordStore = Depends(get_store)) -> FeedAssembler:
    return FeedAssembler(store)
