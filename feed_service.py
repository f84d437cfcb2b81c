import logging
from collections import Counter
from typing import Any, Dict, Iterable, List, Optional, Set

from book_service import book_status, owned_books
from errors import InvalidRequest, NotFound
from models.post_book_model import BookStatus
from models.trade_models import TradeStatus
from record_store import BOOKS, TRADES, USERS, RecordStore
from trade_service import SENDER, RECEIVER, given_book_id

logger = logging.getLogger(__name__)

IN_PROGRESS_STATUSES = [TradeStatus.ACCEPTED.value, TradeStatus.COMPLETED.value]


def counts_for_book(trade: Dict[str, Any], book: Dict[str, Any]) -> bool:
    """A completed trade stops counting against a book once it is relisted."""
    relisted_at = book.get("relisted_at")
    if trade["status"] != TradeStatus.COMPLETED.value or not relisted_at:
        return True
    completed_at = trade.get("completed_at")
    return completed_at is not None and completed_at > relisted_at


def lagging_book_ids(trades: Iterable[Dict[str, Any]], books: Dict[str, Dict[str, Any]]) -> Set[str]:
    """Books whose completion write never landed; they read as previous."""
    lagging = set()
    for trade in trades:
        if trade["status"] != TradeStatus.COMPLETED.value or trade.get("books_settled"):
            continue
        for role in (SENDER, RECEIVER):
            book = books.get(given_book_id(trade, role))
            if book and book["user_id"] == trade[f"{role}_user_id"] and counts_for_book(trade, book):
                lagging.add(book["book_id"])
    return lagging


class FeedAssembler:
    """Read side: books joined with owner names and trade flags."""

    def __init__(self, store: RecordStore):
        self.store = store

    async def _pending_targets(self, viewer_id: Optional[str]) -> Set[str]:
        if not viewer_id:
            return set()
        sent = await self.store.query_by_index(TRADES, "from_user_id", viewer_id)
        return {t["to_book_id"] for t in sent if t["status"] == TradeStatus.PENDING.value}

    async def _trades_touching(self, book_ids: List[str]) -> List[Dict[str, Any]]:
        """Accepted and completed trades that reference any of ``book_ids``."""
        if not book_ids:
            return []
        trades = {}
        for field in ("from_book_id", "to_book_id"):
            found = await self.store.scan(TRADES, {"status": IN_PROGRESS_STATUSES, field: book_ids})
            trades.update((trade["trade_id"], trade) for trade in found)
        return list(trades.values())

    async def _annotate(self, books: List[Dict[str, Any]], viewer_id: Optional[str]) -> List[Dict[str, Any]]:
        by_id = {book["book_id"]: book for book in books}
        owner_ids = {book["user_id"] for book in books}
        owners = await self.store.batch_get(USERS, owner_ids)
        trades = await self._trades_touching(list(by_id))
        pending_targets = await self._pending_targets(viewer_id)

        lagging = lagging_book_ids(trades, by_id)

        mailed: Dict[str, List[Dict[str, Any]]] = {}
        for trade in trades:
            if trade.get("from_user_mailed") and trade.get("to_user_mailed"):
                for book_id in (trade.get("from_book_id"), trade["to_book_id"]):
                    if book_id in by_id:
                        mailed.setdefault(book_id, []).append(trade)

        annotated = []
        for book in books:
            status = book_status(book)
            if book["book_id"] in lagging:
                status = BookStatus.PREVIOUS.value
            in_progress = any(counts_for_book(t, book) for t in mailed.get(book["book_id"], []))
            owner = owners.get(book["user_id"])
            entry = dict(book)
            entry.update(
                {
                    "user_name": owner["username"] if owner else "Unknown",
                    "status": status,
                    "has_pending_trade": book["book_id"] in pending_targets,
                    "trade_in_progress": in_progress or status == BookStatus.PREVIOUS.value,
                }
            )
            annotated.append(entry)
        return annotated

    async def feed(self, viewer_id: Optional[str] = None) -> List[Dict[str, Any]]:
        books = await self.store.scan(BOOKS)
        books.sort(key=lambda b: b["created_at"], reverse=True)
        return await self._annotate(books, viewer_id)

    async def shelf(
        self,
        user_id: str,
        status: Optional[str] = None,
        viewer_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """A user's books; ``previous`` also covers books they traded away."""
        if status not in (None, BookStatus.CURRENT.value, BookStatus.PREVIOUS.value):
            raise InvalidRequest("status must be 'current' or 'previous'")
        user = await self.store.get(USERS, user_id)
        if not user:
            raise NotFound("User not found")

        books = await owned_books(self.store, user_id)
        owned_ids = {book["book_id"] for book in books}

        sent = await self.store.query_by_index(TRADES, "from_user_id", user_id)
        received = await self.store.query_by_index(TRADES, "to_user_id", user_id)
        given_away = set()
        for trade in sent + received:
            if trade["status"] != TradeStatus.COMPLETED.value:
                continue
            role = SENDER if trade["from_user_id"] == user_id else RECEIVER
            book_id = given_book_id(trade, role)
            if book_id and book_id not in owned_ids:
                given_away.add(book_id)
        if given_away:
            books.extend((await self.store.batch_get(BOOKS, given_away)).values())

        entries = await self._annotate(books, viewer_id)
        for entry in entries:
            entry["on_shelf"] = entry["user_id"] == user_id
            if not entry["on_shelf"]:
                entry["status"] = BookStatus.PREVIOUS.value
        if status:
            entries = [entry for entry in entries if entry["status"] == status]
        entries.sort(key=lambda b: b["created_at"], reverse=True)
        return {"user_id": user_id, "user_name": user["username"], "books": entries}

    async def summary(self) -> Dict[str, Any]:
        books = await self.store.scan(BOOKS)
        trades = await self.store.scan(TRADES)
        book_counts = Counter(book_status(book) for book in books)
        trade_counts = Counter(trade["status"] for trade in trades)
        return {
            "total_books": len(books),
            "books_by_status": {s.value: book_counts.get(s.value, 0) for s in BookStatus},
            "total_trades": len(trades),
            "trades_by_status": {s.value: trade_counts.get(s.value, 0) for s in TradeStatus},
        }
