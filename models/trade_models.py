from dataclasses import dataclass
from pydantic import BaseModel, Field
from typing import Optional, Union
from enum import Enum


class TradeStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


ACTIVE_STATUSES = [TradeStatus.PENDING.value, TradeStatus.ACCEPTED.value, TradeStatus.COMPLETED.value]


class TradeAction(str, Enum):
    ACCEPT = "accept"
    DECLINE = "decline"
    CANCEL = "cancel"
    MARK_MAILED = "mark_mailed"
    MARK_RECEIVED = "mark_received"
    RELIST = "relist"


@dataclass(frozen=True)
class FixedBook:
    book_id: str


@dataclass(frozen=True)
class AnyBookOf:
    """Any current book of ``user_id``, picked by the receiver on accept."""
    user_id: str


BookSelector = Union[FixedBook, AnyBookOf]


def offered_book(trade: dict) -> BookSelector:
    if trade.get("from_book_id"):
        return FixedBook(trade["from_book_id"])
    return AnyBookOf(trade["from_user_id"])


class TradeRequest(BaseModel):
    to_user_id: str
    from_book_id: Optional[str] = None
    to_book_id: str
    message: Optional[str] = Field(default="", max_length=1000)


class AcceptTradeRequest(BaseModel):
    from_book_id: Optional[str] = None
