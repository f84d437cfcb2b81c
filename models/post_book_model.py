from pydantic import BaseModel
from typing import Optional
from enum import Enum

MAX_CURRENT_BOOKS = 5


class BookStatus(str, Enum):
    CURRENT = "current"
    PREVIOUS = "previous"


class PostBookModel(BaseModel):
    title: Optional[str] = None
    author: Optional[str] = None
    description: Optional[str] = None
    condition: Optional[str] = None
