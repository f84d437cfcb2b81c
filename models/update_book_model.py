from pydantic import BaseModel
from typing import Optional


class UpdateBookModel(BaseModel):
    title: Optional[str] = None
    author: Optional[str] = None
    description: Optional[str] = None
    condition: Optional[str] = None
