import logging
import random
import time
from typing import Dict, Optional, Tuple

from bson import ObjectId
from bson.errors import InvalidId
from gridfs.errors import NoFile
from motor.motor_asyncio import AsyncIOMotorGridFSBucket

logger = logging.getLogger(__name__)

# Shown for books listed without a cover image
PLACEHOLDER_IMAGE = (
    "data:image/svg+xml,%3Csvg xmlns=%22http://www.w3.org/2000/svg%22 width=%22200%22 "
    "height=%22280%22%3E%3Crect fill=%22%23D2D2D7%22 width=%22200%22 height=%22280%22/%3E"
    "%3Ctext x=%2250%25%22 y=%2250%25%22 text-anchor=%22middle%22 dy=%22.3em%22 "
    "fill=%22%2386868B%22 font-family=%22system-ui%22 font-size=%2214%22%3ENo Image%3C/text%3E%3C/svg%3E"
)


def is_stored_image(url: Optional[str]) -> bool:
    """True for URLs that point at the blob store rather than a placeholder."""
    return bool(url) and not url.startswith("data:")


def cover_filename(filename: str) -> str:
    extension = filename.rsplit(".", 1)[-1].lower() if "." in filename else "jpg"
    return f"book-covers/{int(time.time() * 1000)}-{random.randint(0, 10**9)}.{extension}"


class BlobStore:
    """Image storage. ``upload`` returns the public URL of the stored blob."""

    def __init__(self, base_url: str = ""):
        self.base_url = base_url.rstrip("/")

    def url_for(self, blob_id: str) -> str:
        return f"{self.base_url}/images/{blob_id}"

    def blob_id_from_url(self, url: str) -> str:
        return url.rstrip("/").rsplit("/", 1)[-1]

    async def upload(self, data: bytes, filename: str, mime_type: str) -> str:
        raise NotImplementedError

    async def delete(self, url: str) -> None:
        raise NotImplementedError

    async def download(self, blob_id: str) -> Optional[Tuple[bytes, str]]:
        raise NotImplementedError


class MemoryBlobStore(BlobStore):
    def __init__(self, base_url: str = ""):
        super().__init__(base_url)
        self.blobs: Dict[str, Tuple[bytes, str]] = {}
        self._counter = 0

    async def upload(self, data, filename, mime_type):
        self._counter += 1
        blob_id = f"{self._counter}-{cover_filename(filename).rsplit('/', 1)[-1]}"
        self.blobs[blob_id] = (bytes(data), mime_type)
        return self.url_for(blob_id)

    async def delete(self, url):
        if not is_stored_image(url):
            return
        if self.blobs.pop(self.blob_id_from_url(url), None) is None:
            logger.warning(f"Image {url} was already gone")

    async def download(self, blob_id):
        return self.blobs.get(blob_id)


class GridFSBlobStore(BlobStore):
    """Stores cover images in a MongoDB GridFS bucket."""

    def __init__(self, db, base_url: str = "", bucket_name: str = "book_covers"):
        super().__init__(base_url)
        self.bucket = AsyncIOMotorGridFSBucket(db, bucket_name=bucket_name)

    async def upload(self, data, filename, mime_type):
        file_id = await self.bucket.upload_from_stream(
            cover_filename(filename), data, metadata={"contentType": mime_type}
        )
        return self.url_for(str(file_id))

    async def delete(self, url):
        if not is_stored_image(url):
            return
        try:
            await self.bucket.delete(ObjectId(self.blob_id_from_url(url)))
            logger.info(f"Deleted image {url}")
        except (NoFile, InvalidId) as e:
            # the book record is removed regardless
            logger.error(f"Error deleting image {url}: {e}")

    async def download(self, blob_id):
        try:
            stream = await self.bucket.open_download_stream(ObjectId(blob_id))
        except (NoFile, InvalidId):
            return None
        data = await stream.read()
        mime_type = (stream.metadata or {}).get("contentType", "application/octet-stream")
        return data, mime_type
