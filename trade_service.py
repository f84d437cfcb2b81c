"""Trade lifecycle: every status transition and its side effects on books.

Transitions::

    pending  --accept-->  accepted  --(both mailed, both received)-->  completed
    pending  --decline--> declined
    pending  --cancel-->  cancelled
    completed --relist--> received book back to current, under its new owner

The ``guard_*`` functions return an error instance (or None) instead of
raising, so the transition table can be checked on its own. Only
``TradeLifecycleManager`` raises them.

Trade writes are compare-and-swap on ``version`` and ``status``: a write that
loses a race is re-read and re-validated, so two concurrent accepts cannot
both succeed.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from book_service import book_status, count_current_books, trade_holding_book
from errors import BookSwapError, Conflict, Forbidden, InvalidRequest, InvalidState, NotFound
from models.post_book_model import MAX_CURRENT_BOOKS, BookStatus
from models.trade_models import ACTIVE_STATUSES, AnyBookOf, TradeAction, TradeStatus, offered_book
from record_store import BOOKS, TRADES, USERS, RecordStore, WriteConflict
from utils import new_id, utcnow

logger = logging.getLogger(__name__)

MAX_WRITE_ATTEMPTS = 3

SENDER = "from"
RECEIVER = "to"

# Statuses each action may start from
ALLOWED_FROM = {
    TradeAction.ACCEPT: {TradeStatus.PENDING},
    TradeAction.DECLINE: {TradeStatus.PENDING},
    TradeAction.CANCEL: {TradeStatus.PENDING},
    TradeAction.MARK_MAILED: {TradeStatus.ACCEPTED},
    TradeAction.MARK_RECEIVED: {TradeStatus.ACCEPTED, TradeStatus.COMPLETED},
    TradeAction.RELIST: {TradeStatus.COMPLETED},
}

STATE_ERRORS = {
    TradeAction.ACCEPT: "Trade is not pending",
    TradeAction.DECLINE: "Trade is not pending",
    TradeAction.CANCEL: "Only pending trades can be cancelled",
    TradeAction.MARK_MAILED: "Trade must be accepted before marking as mailed",
    TradeAction.MARK_RECEIVED: "Trade must be accepted before marking as received",
    TradeAction.RELIST: "Trade must be completed before relisting a book",
}

FORBIDDEN_ERRORS = {
    TradeAction.ACCEPT: "You can only accept trades sent to you",
    TradeAction.DECLINE: "You can only decline trades sent to you",
    TradeAction.CANCEL: "You can only cancel trade offers you sent",
    TradeAction.MARK_MAILED: "You can only mark your own trades as mailed",
    TradeAction.MARK_RECEIVED: "You can only mark your own trades as received",
    TradeAction.RELIST: "You can only relist books from your own trades",
}


def participant_role(trade: Dict[str, Any], caller_id: str) -> Optional[str]:
    if trade["from_user_id"] == caller_id:
        return SENDER
    if trade["to_user_id"] == caller_id:
        return RECEIVER
    return None


def guard_transition(trade: Dict[str, Any], action: TradeAction) -> Optional[InvalidState]:
    if TradeStatus(trade["status"]) not in ALLOWED_FROM[action]:
        return InvalidState(STATE_ERRORS[action], {"status": trade["status"]})
    return None


def guard_caller(trade: Dict[str, Any], caller_id: str, action: TradeAction) -> Optional[Forbidden]:
    role = participant_role(trade, caller_id)
    if action in (TradeAction.ACCEPT, TradeAction.DECLINE):
        allowed = role == RECEIVER
    elif action == TradeAction.CANCEL:
        allowed = role == SENDER
    else:
        allowed = role is not None
    return None if allowed else Forbidden(FORBIDDEN_ERRORS[action])


def guard_counterparty_mailed(trade: Dict[str, Any], caller_id: str) -> Optional[InvalidState]:
    other_flag = "to_user_mailed" if participant_role(trade, caller_id) == SENDER else "from_user_mailed"
    if not trade.get(other_flag):
        return InvalidState("Other user has not mailed their book yet")
    return None


def guard_book_owner(book: Dict[str, Any], owner_id: str) -> Optional[InvalidRequest]:
    """A traded book must be a current book of the participant giving it."""
    if book["user_id"] != owner_id or book_status(book) != BookStatus.CURRENT.value:
        return InvalidRequest(
            f"Book {book['book_id']} is not one of user {owner_id}'s current books",
            {"book_id": book["book_id"]},
        )
    return None


def check(*errors: Optional[BookSwapError]) -> None:
    """Raise the first error a guard returned."""
    for error in errors:
        if error is not None:
            raise error


def given_book_id(trade: Dict[str, Any], role: str) -> Optional[str]:
    """The book a participant sends away in this trade."""
    return trade["from_book_id"] if role == SENDER else trade["to_book_id"]


def received_book_id(trade: Dict[str, Any], role: str) -> Optional[str]:
    return trade["to_book_id"] if role == SENDER else trade["from_book_id"]


def newest_first(trades: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    unique = {trade["trade_id"]: trade for trade in trades}
    return sorted(unique.values(), key=lambda t: t["created_at"], reverse=True)


Updates = Optional[Dict[str, Any]]


class TradeLifecycleManager:
    def __init__(self, store: RecordStore):
        self.store = store

    async def get_trade(self, trade_id: str) -> Dict[str, Any]:
        trade = await self.store.get(TRADES, trade_id)
        if not trade:
            raise NotFound("Trade not found")
        return trade

    async def create_trade(
        self,
        from_user_id: str,
        to_user_id: str,
        from_book_id: Optional[str],
        to_book_id: str,
        message: Optional[str] = "",
    ) -> Dict[str, Any]:
        if not to_book_id:
            raise InvalidRequest("to_book_id is required")
        if from_user_id == to_user_id:
            raise InvalidRequest("You cannot propose a trade to yourself")

        users = await self.store.batch_get(USERS, [from_user_id, to_user_id])
        for user_id in (from_user_id, to_user_id):
            if user_id not in users:
                raise NotFound(f"User {user_id} not found")

        wanted = [(to_book_id, to_user_id, "Book not found")]
        if from_book_id:
            wanted.append((from_book_id, from_user_id, "Offered book not found"))
        await self._check_books_tradeable(wanted)

        existing = await self.find_pending_trade(from_user_id, to_user_id, from_book_id, to_book_id)
        if existing:
            raise Conflict(
                "A pending trade offer already exists for these books",
                {"existing_trade_id": existing["trade_id"]},
            )

        now = utcnow()
        trade = {
            "trade_id": new_id(),
            "from_user_id": from_user_id,
            "to_user_id": to_user_id,
            "from_book_id": from_book_id or None,
            "to_book_id": to_book_id,
            "message": message or "",
            "status": TradeStatus.PENDING.value,
            "from_user_mailed": False,
            "to_user_mailed": False,
            "from_user_received": False,
            "to_user_received": False,
            "books_settled": False,
            "created_at": now,
            "updated_at": now,
            "accepted_at": None,
            "declined_at": None,
            "cancelled_at": None,
            "completed_at": None,
            "version": 1,
        }
        await self.store.put(TRADES, trade)
        logger.info(f"Trade {trade['trade_id']} proposed by {from_user_id} to {to_user_id}")
        return trade

    async def find_pending_trade(self, from_user_id, to_user_id, from_book_id, to_book_id):
        for trade in await self.store.query_by_index(TRADES, "from_user_id", from_user_id):
            if (
                trade["status"] == TradeStatus.PENDING.value
                and trade["to_user_id"] == to_user_id
                and (trade.get("from_book_id") or None) == (from_book_id or None)
                and trade["to_book_id"] == to_book_id
            ):
                return trade
        return None

    async def _transition(
        self,
        trade_id: str,
        apply: Callable[[Dict[str, Any]], Awaitable[Updates]],
    ) -> Tuple[Dict[str, Any], bool]:
        """Read, validate and conditionally write a trade.

        ``apply`` raises domain errors or returns the fields to change, None
        meaning nothing to write. Returns the resulting trade and whether a
        write happened.
        """
        for attempt in range(1, MAX_WRITE_ATTEMPTS + 1):
            trade = await self.get_trade(trade_id)
            updates = await apply(trade)
            if not updates:
                return trade, False

            updated = dict(trade)
            updated.update(updates)
            updated["version"] = (trade.get("version") or 0) + 1
            updated["updated_at"] = utcnow()
            try:
                await self.store.put(
                    TRADES, updated, expect={"version": trade.get("version"), "status": trade["status"]}
                )
                return updated, True
            except WriteConflict:
                logger.warning(f"Trade {trade_id} changed during write, retrying (attempt {attempt})")
        raise Conflict("Trade was modified concurrently, please retry")

    async def accept(self, trade_id: str, caller_id: str, selected_from_book_id: Optional[str] = None):
        async def apply(trade):
            check(guard_caller(trade, caller_id, TradeAction.ACCEPT), guard_transition(trade, TradeAction.ACCEPT))
            updates = {"status": TradeStatus.ACCEPTED.value, "accepted_at": utcnow()}
            selector = offered_book(trade)
            if isinstance(selector, AnyBookOf):
                if not selected_from_book_id:
                    raise InvalidRequest("Please select which book you want from the other user")
                from_book_id = updates["from_book_id"] = selected_from_book_id
                missing = "Selected book not found"
            else:
                from_book_id = selector.book_id
                missing = "Offered book not found"
            # Books may have changed hands since the proposal
            await self._check_books_tradeable(
                [
                    (trade["to_book_id"], trade["to_user_id"], "Book not found"),
                    (from_book_id, trade["from_user_id"], missing),
                ],
                exclude_trade_id=trade["trade_id"],
            )
            return updates

        trade, _ = await self._transition(trade_id, apply)
        logger.info(f"Trade {trade_id} accepted by {caller_id}")
        return trade

    async def _check_books_tradeable(
        self,
        wanted: List[Tuple[str, str, str]],
        exclude_trade_id: Optional[str] = None,
    ) -> None:
        """Each ``(book_id, owner_id, missing_message)`` must name a current book of that owner."""
        for book_id, owner_id, missing in wanted:
            book = await self.store.get(BOOKS, book_id)
            if not book:
                raise NotFound(missing)
            check(guard_book_owner(book, owner_id))
            holding = await trade_holding_book(self.store, book, exclude_trade_id)
            if holding:
                raise InvalidState(
                    "Book is already part of another trade",
                    {"book_id": book_id, "trade_id": holding["trade_id"]},
                )

    async def decline(self, trade_id: str, caller_id: str):
        async def apply(trade):
            check(guard_caller(trade, caller_id, TradeAction.DECLINE), guard_transition(trade, TradeAction.DECLINE))
            return {"status": TradeStatus.DECLINED.value, "declined_at": utcnow()}

        trade, _ = await self._transition(trade_id, apply)
        logger.info(f"Trade {trade_id} declined by {caller_id}")
        return trade

    async def cancel(self, trade_id: str, caller_id: str):
        async def apply(trade):
            check(guard_caller(trade, caller_id, TradeAction.CANCEL), guard_transition(trade, TradeAction.CANCEL))
            return {"status": TradeStatus.CANCELLED.value, "cancelled_at": utcnow()}

        trade, _ = await self._transition(trade_id, apply)
        logger.info(f"Trade {trade_id} cancelled by {caller_id}")
        return trade

    async def mark_mailed(self, trade_id: str, caller_id: str):
        async def apply(trade):
            check(
                guard_caller(trade, caller_id, TradeAction.MARK_MAILED),
                guard_transition(trade, TradeAction.MARK_MAILED),
            )
            flag = f"{participant_role(trade, caller_id)}_user_mailed"
            if trade.get(flag):
                return None
            return {flag: True}

        trade, changed = await self._transition(trade_id, apply)
        if changed:
            logger.info(f"Trade {trade_id}: {caller_id} mailed their book")
        return trade

    async def mark_received(self, trade_id: str, caller_id: str):
        async def apply(trade):
            check(
                guard_caller(trade, caller_id, TradeAction.MARK_RECEIVED),
                guard_transition(trade, TradeAction.MARK_RECEIVED),
                guard_counterparty_mailed(trade, caller_id),
            )
            role = participant_role(trade, caller_id)
            flag = f"{role}_user_received"
            if trade.get(flag):
                return None

            updates = {flag: True}
            other_received = trade.get("to_user_received" if role == SENDER else "from_user_received")
            if other_received:
                if not trade.get("from_book_id"):
                    raise InvalidState("Trade has no offered book selected")
                updates["status"] = TradeStatus.COMPLETED.value
                updates["completed_at"] = utcnow()
            return updates

        trade, changed = await self._transition(trade_id, apply)
        if trade["status"] == TradeStatus.COMPLETED.value and not trade.get("books_settled"):
            if changed:
                logger.info(f"Trade {trade_id} completed")
            else:
                logger.info(f"Trade {trade_id} retrying book settlement")
            trade = await self.settle_books(trade)
        elif changed:
            logger.info(f"Trade {trade_id}: {caller_id} received their book")
        return trade

    async def settle_books(self, trade: Dict[str, Any]) -> Dict[str, Any]:
        """Mark both traded books previous after completion.

        Best effort: a failed book write is logged and leaves
        ``books_settled`` false so a later retry can finish the job. A book
        that changed hands since (relisted) is left alone.
        """
        failed = []
        for role in (SENDER, RECEIVER):
            book_id = given_book_id(trade, role)
            giver_id = trade[f"{role}_user_id"]
            try:
                book = await self.store.get(BOOKS, book_id)
                if book is None:
                    logger.warning(f"Trade {trade['trade_id']}: book {book_id} no longer exists")
                    continue
                if book["user_id"] != giver_id or book.get("status") == BookStatus.PREVIOUS.value:
                    continue
                book["status"] = BookStatus.PREVIOUS.value
                book["updated_at"] = utcnow()
                await self.store.put(BOOKS, book)
            except Exception:
                logger.error(
                    f"Trade {trade['trade_id']} completed but book {book_id} could not be marked previous",
                    exc_info=True,
                )
                failed.append(book_id)

        if failed:
            return trade

        async def apply(current):
            return None if current.get("books_settled") else {"books_settled": True}

        settled, _ = await self._transition(trade["trade_id"], apply)
        return settled

    async def relist(self, trade_id: str, caller_id: str) -> Dict[str, Any]:
        """Put the book the caller received back into circulation under them."""
        trade = await self.get_trade(trade_id)
        check(guard_caller(trade, caller_id, TradeAction.RELIST), guard_transition(trade, TradeAction.RELIST))

        book_id = received_book_id(trade, participant_role(trade, caller_id))
        book = await self.store.get(BOOKS, book_id) if book_id else None
        if not book:
            raise NotFound("Book not found")

        relisted_at = book.get("relisted_at")
        if relisted_at and trade.get("completed_at") and relisted_at >= trade["completed_at"]:
            raise InvalidState("This book has already been relisted")

        if await count_current_books(self.store, caller_id) >= MAX_CURRENT_BOOKS:
            raise InvalidState(f"Maximum of {MAX_CURRENT_BOOKS} books allowed per user")

        previous_owner = book["user_id"]
        now = utcnow()
        relisted = dict(book)
        relisted.update(
            {
                "user_id": caller_id,
                "status": BookStatus.CURRENT.value,
                "relisted_at": now,
                "relisted_from_trade_id": trade_id,
                "updated_at": now,
            }
        )
        try:
            await self.store.put(
                BOOKS, relisted, expect={"user_id": previous_owner, "relisted_at": relisted_at}
            )
        except WriteConflict:
            raise Conflict("Book was modified concurrently, please retry")
        logger.info(f"Book {book_id} relisted by {caller_id} from trade {trade_id}")
        return relisted

    async def list_trades_for_user(self, user_id: str, status: Optional[str] = None) -> List[Dict[str, Any]]:
        sent = await self.store.query_by_index(TRADES, "from_user_id", user_id)
        received = await self.store.query_by_index(TRADES, "to_user_id", user_id)
        trades = newest_first(sent + received)
        if status:
            trades = [trade for trade in trades if trade["status"] == status]
        return trades

    async def list_active_trades(self) -> List[Dict[str, Any]]:
        return newest_first(await self.store.scan(TRADES, {"status": ACTIVE_STATUSES}))

    async def book_history(self, book_id: str) -> List[Dict[str, Any]]:
        """Every trade the book took part in, newest first."""
        if not await self.store.get(BOOKS, book_id):
            raise NotFound("Book not found")
        offered = await self.store.query_by_index(TRADES, "from_book_id", book_id)
        requested = await self.store.query_by_index(TRADES, "to_book_id", book_id)
        return newest_first(offered + requested)
