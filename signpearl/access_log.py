import logging
from dataclasses import dataclass
from typing import List, Optional

from fastapi import Request
from motor.motor_asyncio import AsyncIOMotorDatabase

from signpearl.database import ACCESS_LOGS, RECIPIENTS, create_document, get_documents, parse_object_id, utcnow
from signpearl.schemas import AccessAction, AccessLog

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RequestMeta:
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    location: Optional[str] = None

    def with_location(self, location: Optional[str]) -> "RequestMeta":
        if not location:
            return self
        return RequestMeta(self.ip_address, self.user_agent, location)


def request_meta(request: Request) -> RequestMeta:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        ip = forwarded.split(",")[0].strip()
    else:
        ip = request.client.host if request.client else None
    return RequestMeta(ip_address=ip, user_agent=request.headers.get("user-agent"))


async def log_access(
    db: AsyncIOMotorDatabase,
    document_id: str,
    action: AccessAction,
    recipient_id: Optional[str] = None,
    meta: Optional[RequestMeta] = None,
) -> AccessLog:
    meta = meta or RequestMeta()
    saved = await create_document(
        db,
        ACCESS_LOGS,
        {
            "document_id": document_id,
            "recipient_id": recipient_id,
            "action": action.value,
            "timestamp": utcnow(),
            "ip_address": meta.ip_address,
            "user_agent": meta.user_agent,
            "location": meta.location,
        },
    )
    logger.info("access document_id=%s recipient_id=%s action=%s", document_id, recipient_id, action.value)
    return AccessLog.from_mongo(saved)


async def list_access_logs(db: AsyncIOMotorDatabase, document_id: str, limit: int = 500) -> List[AccessLog]:
    rows = await get_documents(
        db,
        ACCESS_LOGS,
        filter_dict={"document_id": document_id},
        limit=limit,
        sort=[("timestamp", -1), ("_id", -1)],
    )
    recipient_ids = {parse_object_id(r["recipient_id"]) for r in rows if r.get("recipient_id")}
    recipient_ids.discard(None)
    people = {}
    if recipient_ids:
        async for rec in db[RECIPIENTS].find({"_id": {"$in": list(recipient_ids)}}):
            people[str(rec["_id"])] = rec
    logs = []
    for row in rows:
        entry = AccessLog.from_mongo(row)
        person = people.get(entry.recipient_id or "")
        if person:
            entry.recipient_email = person.get("email")
            entry.recipient_name = person.get("name")
        logs.append(entry)
    return logs
