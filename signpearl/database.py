from typing import Any, Dict, List, Optional
from datetime import datetime, timezone

from bson import ObjectId
from bson.errors import InvalidId
from fastapi import Request
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING

from signpearl.config import Settings

DOCUMENTS = "documents"
RECIPIENTS = "recipients"
FIELDS = "signature_fields"
SIGNATURES = "signatures"
ACCESS_LOGS = "access_logs"

# Rows that hang off a document and go with it on delete
CHILD_COLLECTIONS = (RECIPIENTS, FIELDS, SIGNATURES, ACCESS_LOGS)


def create_client(settings: Settings) -> AsyncIOMotorClient:
    return AsyncIOMotorClient(settings.database_url, tz_aware=False)


def get_db(request: Request) -> AsyncIOMotorDatabase:
    return request.app.state.db


def utcnow() -> datetime:
    # Mongo hands back naive UTC datetimes; keep ours comparable
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_object_id(value: str) -> Optional[ObjectId]:
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        return None


def _timestamps(data: Dict[str, Any]) -> Dict[str, Any]:
    now = utcnow()
    return {
        **data,
        "created_at": data.get("created_at") or now,
        "updated_at": now,
    }


async def ensure_indexes(db: AsyncIOMotorDatabase) -> None:
    await db[RECIPIENTS].create_index("signing_url_token", unique=True)
    await db[DOCUMENTS].create_index([("owner_id", ASCENDING), ("created_at", DESCENDING)])
    for name in CHILD_COLLECTIONS:
        await db[name].create_index("document_id")


async def create_document(db: AsyncIOMotorDatabase, collection_name: str, data: Dict[str, Any]) -> Dict[str, Any]:
    payload = _timestamps(data)
    res = await db[collection_name].insert_one(payload)
    saved = await db[collection_name].find_one({"_id": res.inserted_id})
    return saved or {}


async def create_many(db: AsyncIOMotorDatabase, collection_name: str, items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    if not items:
        return []
    payloads = [_timestamps(item) for item in items]
    res = await db[collection_name].insert_many(payloads)
    cursor = db[collection_name].find({"_id": {"$in": res.inserted_ids}})
    by_id = {doc["_id"]: doc async for doc in cursor}
    return [by_id[i] for i in res.inserted_ids if i in by_id]


async def get_documents(
    db: AsyncIOMotorDatabase,
    collection_name: str,
    filter_dict: Optional[Dict[str, Any]] = None,
    limit: int = 100,
    sort: Optional[List] = None,
) -> List[Dict[str, Any]]:
    q = filter_dict or {}
    cursor = db[collection_name].find(q)
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return [doc async for doc in cursor]
