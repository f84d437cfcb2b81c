import logging
from typing import Any, Dict, List, Optional

from blob_store import PLACEHOLDER_IMAGE, BlobStore, is_stored_image
from errors import Forbidden, InvalidState, NotFound
from models.post_book_model import MAX_CURRENT_BOOKS, BookStatus
from models.trade_models import TradeStatus
from record_store import BOOKS, TRADES, USERS, RecordStore
from utils import new_id, utcnow

logger = logging.getLogger(__name__)


class ImageUpload:
    """An image received from the client, not yet stored."""

    def __init__(self, data: bytes, filename: str, mime_type: str):
        self.data = data
        self.filename = filename
        self.mime_type = mime_type


def book_status(book: Dict[str, Any]) -> str:
    return book.get("status") or BookStatus.CURRENT.value


async def owned_books(store: RecordStore, user_id: str) -> List[Dict[str, Any]]:
    return await store.query_by_index(BOOKS, "user_id", user_id)


async def count_current_books(store: RecordStore, user_id: str) -> int:
    books = await owned_books(store, user_id)
    return sum(1 for book in books if book_status(book) == BookStatus.CURRENT.value)


async def trade_holding_book(
    store: RecordStore,
    book: Dict[str, Any],
    exclude_trade_id: Optional[str] = None,
) -> Optional[Dict[str, Any]]:
    """The trade the book is committed to, if any.

    That is an accepted trade referencing it, or a completed one the book
    has not been relisted out of since.
    """
    book_id = book["book_id"]
    trades = await store.query_by_index(TRADES, "from_book_id", book_id)
    trades += await store.query_by_index(TRADES, "to_book_id", book_id)
    relisted_at = book.get("relisted_at")
    for trade in trades:
        if trade["trade_id"] == exclude_trade_id:
            continue
        if trade["status"] == TradeStatus.ACCEPTED.value:
            return trade
        if trade["status"] == TradeStatus.COMPLETED.value:
            completed_at = trade.get("completed_at")
            if not relisted_at or (completed_at is not None and completed_at > relisted_at):
                return trade
    return None


class BookService:
    """Listing CRUD: the per-user cap on current books and cover images."""

    def __init__(self, store: RecordStore, blob_store: BlobStore):
        self.store = store
        self.blob_store = blob_store

    async def get_book(self, book_id: str) -> Dict[str, Any]:
        book = await self.store.get(BOOKS, book_id)
        if not book:
            raise NotFound("Book not found")
        return book

    async def add_book(
        self,
        user_id: str,
        title: Optional[str] = None,
        author: Optional[str] = None,
        description: Optional[str] = None,
        condition: Optional[str] = None,
        image: Optional[ImageUpload] = None,
    ) -> Dict[str, Any]:
        user = await self.store.get(USERS, user_id)
        if not user:
            raise NotFound("User not found")

        if await count_current_books(self.store, user_id) >= MAX_CURRENT_BOOKS:
            raise InvalidState(f"Maximum of {MAX_CURRENT_BOOKS} books allowed per user")

        image_url = PLACEHOLDER_IMAGE
        if image is not None:
            image_url = await self.blob_store.upload(image.data, image.filename, image.mime_type)

        now = utcnow()
        book = {
            "book_id": new_id(),
            "user_id": user_id,
            "title": title or "Untitled",
            "author": author or "Unknown",
            "description": description or "",
            "condition": condition or "used",
            "image_url": image_url,
            "status": BookStatus.CURRENT.value,
            "created_at": now,
            "updated_at": now,
            "relisted_at": None,
        }
        await self.store.put(BOOKS, book)
        logger.info(f"User {user_id} listed book {book['book_id']}")
        return book

    async def _check_not_traded(self, book: Dict[str, Any]) -> None:
        if book_status(book) == BookStatus.PREVIOUS.value:
            raise InvalidState("This book has been traded away and can no longer be changed")
        holding = await trade_holding_book(self.store, book)
        if holding:
            raise InvalidState(
                "This book is part of an accepted trade", {"trade_id": holding["trade_id"]}
            )

    async def update_book(
        self,
        book_id: str,
        caller_id: str,
        fields: Dict[str, Any],
        image: Optional[ImageUpload] = None,
    ) -> Dict[str, Any]:
        book = await self.get_book(book_id)
        if book["user_id"] != caller_id:
            raise Forbidden("You can only edit your own books")
        await self._check_not_traded(book)

        # Empty strings keep the old value, except for the description
        for field in ("title", "author", "condition"):
            if fields.get(field):
                book[field] = fields[field]
        if fields.get("description") is not None:
            book["description"] = fields["description"]

        if image is not None:
            old_url = book.get("image_url")
            book["image_url"] = await self.blob_store.upload(image.data, image.filename, image.mime_type)
            if is_stored_image(old_url):
                await self.blob_store.delete(old_url)

        book["status"] = book_status(book)
        book["updated_at"] = utcnow()
        await self.store.put(BOOKS, book)
        return book

    async def delete_book(self, book_id: str, caller_id: str) -> None:
        book = await self.get_book(book_id)
        if book["user_id"] != caller_id:
            raise Forbidden("You can only delete your own books")
        await self._check_not_traded(book)

        if is_stored_image(book.get("image_url")):
            await self.blob_store.delete(book["image_url"])
        await self.store.delete(BOOKS, book_id)
        logger.info(f"User {caller_id} deleted book {book_id}")
