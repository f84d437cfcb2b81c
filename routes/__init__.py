from .book_routes import router as book_routes
from .trade_routes import router as trade_routes

__all__ = [
    'book_routes',
    'trade_routes',
]
