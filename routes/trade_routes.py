from fastapi import APIRouter, Depends
from typing import Optional

from dependencies import get_trade_manager
from models.trade_models import AcceptTradeRequest, TradeRequest, TradeStatus
from trade_service import TradeLifecycleManager
from utils import get_current_user_id

router = APIRouter(tags=["trades"])


@router.post("/trades")
async def create_trade(
    proposal: TradeRequest,
    user_id: str = Depends(get_current_user_id),
    manager: TradeLifecycleManager = Depends(get_trade_manager),
):
    trade = await manager.create_trade(
        from_user_id=user_id,
        to_user_id=proposal.to_user_id,
        from_book_id=proposal.from_book_id,
        to_book_id=proposal.to_book_id,
        message=proposal.message,
    )
    return {"message": "Trade proposal created successfully", "trade": trade}


@router.get("/trades/active")
async def get_active_trades(manager: TradeLifecycleManager = Depends(get_trade_manager)):
    """Every pending, accepted and completed trade in one call."""
    trades = await manager.list_active_trades()
    return {"message": f"Found {len(trades)} trades", "total_trades": len(trades), "trades": trades}


@router.get("/trades/{trade_id}")
async def get_trade(trade_id: str, manager: TradeLifecycleManager = Depends(get_trade_manager)):
    return {"trade": await manager.get_trade(trade_id)}


@router.get("/users/{user_id}/trades")
async def get_user_trades(
    user_id: str,
    status: Optional[TradeStatus] = None,
    manager: TradeLifecycleManager = Depends(get_trade_manager),
):
    trades = await manager.list_trades_for_user(user_id, status.value if status else None)
    return {"message": f"Found {len(trades)} trades", "total_trades": len(trades), "trades": trades}


@router.put("/trades/{trade_id}/accept")
async def accept_trade(
    trade_id: str,
    body: Optional[AcceptTradeRequest] = None,
    user_id: str = Depends(get_current_user_id),
    manager: TradeLifecycleManager = Depends(get_trade_manager),
):
    selected = body.from_book_id if body else None
    trade = await manager.accept(trade_id, user_id, selected)
    return {"message": "Trade accepted", "trade": trade}


@router.put("/trades/{trade_id}/decline")
async def decline_trade(
    trade_id: str,
    user_id: str = Depends(get_current_user_id),
    manager: TradeLifecycleManager = Depends(get_trade_manager),
):
    trade = await manager.decline(trade_id, user_id)
    return {"message": "Trade declined", "trade": trade}


@router.put("/trades/{trade_id}/cancel")
async def cancel_trade(
    trade_id: str,
    user_id: str = Depends(get_current_user_id),
    manager: TradeLifecycleManager = Depends(get_trade_manager),
):
    trade = await manager.cancel(trade_id, user_id)
    return {"message": "Trade offer cancelled", "trade": trade}


@router.put("/trades/{trade_id}/mark-mailed")
async def mark_trade_mailed(
    trade_id: str,
    user_id: str = Depends(get_current_user_id),
    manager: TradeLifecycleManager = Depends(get_trade_manager),
):
    trade = await manager.mark_mailed(trade_id, user_id)
    return {"message": "Book marked as mailed", "trade": trade}


@router.put("/trades/{trade_id}/mark-received")
async def mark_trade_received(
    trade_id: str,
    user_id: str = Depends(get_current_user_id),
    manager: TradeLifecycleManager = Depends(get_trade_manager),
):
    trade = await manager.mark_received(trade_id, user_id)
    message = "Trade completed" if trade["status"] == TradeStatus.COMPLETED.value else "Book marked as received"
    return {"message": message, "trade": trade}


@router.put("/trades/{trade_id}/relist-book")
async def relist_book(
    trade_id: str,
    user_id: str = Depends(get_current_user_id),
    manager: TradeLifecycleManager = Depends(get_trade_manager),
):
    book = await manager.relist(trade_id, user_id)
    return {"message": "Book reintroduced to the bookshop", "book": book}
