"""Object storage for document versions."""
import logging
import uuid
from typing import Optional, Protocol

from gridfs.errors import NoFile
from motor.motor_asyncio import AsyncIOMotorDatabase, AsyncIOMotorGridFSBucket
from pymongo.errors import PyMongoError

logger = logging.getLogger(__name__)


class ObjectStorageError(Exception):
    """Generic object storage failure."""


class ObjectNotFoundError(ObjectStorageError):
    """Raised when object is missing."""


class StorageService(Protocol):
    """Storage provider interface."""

    async def upload(self, key: str, data: bytes, content_type: Optional[str]) -> None: ...
    async def download(self, key: str) -> bytes: ...
    async def content_type(self, key: str) -> Optional[str]: ...
    async def delete(self, key: str) -> None: ...


def document_object_key(owner_id: str, document_id: str, extension: str = ".pdf") -> str:
    # Every version gets its own key; nothing is overwritten in place
    return f"{owner_id}/{document_id}/{uuid.uuid4()}{extension}"


def public_file_url(base_url: str, key: str) -> str:
    return f"{base_url.rstrip('/')}/files/{key}"


class GridFSStorageService:
    """GridFS-backed storage, one file per key."""

    def __init__(self, db: AsyncIOMotorDatabase, bucket_name: str = "documents") -> None:
        self.bucket = AsyncIOMotorGridFSBucket(db, bucket_name=bucket_name)

    async def upload(self, key: str, data: bytes, content_type: Optional[str]) -> None:
        try:
            await self.bucket.upload_from_stream(key, data, metadata={"contentType": content_type})
        except PyMongoError as exc:
            raise ObjectStorageError(f"upload failed for {key}") from exc
        logger.info("stored object key=%s bytes=%s", key, len(data))

    async def download(self, key: str) -> bytes:
        try:
            stream = await self.bucket.open_download_stream_by_name(key)
            return await stream.read()
        except NoFile as exc:
            raise ObjectNotFoundError(key) from exc
        except PyMongoError as exc:
            raise ObjectStorageError(f"download failed for {key}") from exc

    async def content_type(self, key: str) -> Optional[str]:
        cursor = self.bucket.find({"filename": key}).sort("uploadDate", -1).limit(1)
        async for grid_out in cursor:
            return (grid_out.metadata or {}).get("contentType")
        raise ObjectNotFoundError(key)

    async def delete(self, key: str) -> None:
        cursor = self.bucket.find({"filename": key})
        found = False
        async for grid_out in cursor:
            found = True
            await self.bucket.delete(grid_out._id)
        if not found:
            raise ObjectNotFoundError(key)
