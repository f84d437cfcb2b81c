from fastapi import APIRouter, Depends, File, Form, UploadFile
from fastapi.responses import Response
from typing import Optional

from blob_store import BlobStore
from book_service import BookService, ImageUpload
from dataBase import get_blob_store
from dependencies import get_book_service, get_feed, get_trade_manager
from errors import Forbidden, InvalidRequest, NotFound
from feed_service import FeedAssembler
from models.post_book_model import BookStatus, PostBookModel
from models.update_book_model import UpdateBookModel
from trade_service import TradeLifecycleManager
from utils import get_current_user_id, get_optional_user_id

router = APIRouter(tags=["books"])

ALLOWED_IMAGE_TYPES = {"jpeg", "jpg", "png", "gif", "webp"}
MAX_IMAGE_BYTES = 5 * 1024 * 1024


async def read_image(image: Optional[UploadFile]) -> Optional[ImageUpload]:
    if image is None or not image.filename:
        return None
    extension = image.filename.rsplit(".", 1)[-1].lower() if "." in image.filename else ""
    subtype = (image.content_type or "").split("/")[-1].lower()
    if extension not in ALLOWED_IMAGE_TYPES or subtype not in ALLOWED_IMAGE_TYPES:
        raise InvalidRequest("Only image files are allowed")
    data = await image.read()
    if len(data) > MAX_IMAGE_BYTES:
        raise InvalidRequest("Image must be 5MB or smaller")
    return ImageUpload(data, image.filename, image.content_type)


@router.get("/books")
async def get_feed_books(
    viewer_id: Optional[str] = Depends(get_optional_user_id),
    feed: FeedAssembler = Depends(get_feed),
):
    books = await feed.feed(viewer_id)
    return {"message": "Books fetched successfully", "total_books": len(books), "books": books}


@router.get("/books/summary")
async def get_books_summary(feed: FeedAssembler = Depends(get_feed)):
    return await feed.summary()


@router.get("/books/{book_id}")
async def get_book_details(book_id: str, books: BookService = Depends(get_book_service)):
    return {"book": await books.get_book(book_id)}


@router.get("/books/{book_id}/history")
async def get_book_history(book_id: str, manager: TradeLifecycleManager = Depends(get_trade_manager)):
    """Provenance: every trade the book has been part of."""
    trades = await manager.book_history(book_id)
    return {"book_id": book_id, "total_trades": len(trades), "trades": trades}


@router.get("/users/{user_id}/books")
async def get_user_books(
    user_id: str,
    status: Optional[BookStatus] = None,
    viewer_id: Optional[str] = Depends(get_optional_user_id),
    feed: FeedAssembler = Depends(get_feed),
):
    shelf = await feed.shelf(user_id, status.value if status else None, viewer_id)
    shelf["total_books"] = len(shelf["books"])
    return shelf


@router.post("/users/{user_id}/books")
async def add_new_book(
    user_id: str,
    title: Optional[str] = Form(None),
    author: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    condition: Optional[str] = Form(None),
    image: Optional[UploadFile] = File(None),
    caller_id: str = Depends(get_current_user_id),
    books: BookService = Depends(get_book_service),
):
    if caller_id != user_id:
        raise Forbidden("You can only add books to your own shelf")
    fields = PostBookModel(title=title, author=author, description=description, condition=condition)
    book = await books.add_book(user_id, image=await read_image(image), **fields.model_dump())
    return {"message": "Book added successfully", "book": book}


@router.put("/books/{book_id}")
async def update_book(
    book_id: str,
    title: Optional[str] = Form(None),
    author: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    condition: Optional[str] = Form(None),
    image: Optional[UploadFile] = File(None),
    caller_id: str = Depends(get_current_user_id),
    books: BookService = Depends(get_book_service),
):
    fields = UpdateBookModel(title=title, author=author, description=description, condition=condition)
    book = await books.update_book(book_id, caller_id, fields.model_dump(), await read_image(image))
    return {"message": "Book updated successfully", "book": book}


@router.delete("/books/{book_id}")
async def delete_book(
    book_id: str,
    caller_id: str = Depends(get_current_user_id),
    books: BookService = Depends(get_book_service),
):
    await books.delete_book(book_id, caller_id)
    return {"message": "Book deleted successfully"}


@router.get("/images/{blob_id}")
async def get_image(blob_id: str, blob_store: BlobStore = Depends(get_blob_store)):
    found = await blob_store.download(blob_id)
    if found is None:
        raise NotFound("Image not found")
    data, mime_type = found
    return Response(content=data, media_type=mime_type)
