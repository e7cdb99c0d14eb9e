"""Signing-link tokens.

A token is the whole credential of a recipient: it names exactly one
recipient of exactly one document and stops resolving once it expires.
Lookups never tell an unauthenticated caller *why* a link failed; unknown,
expired and mismatched tokens all come back as the same ``NotFound``.
"""
import logging
import secrets
from datetime import datetime, timedelta
from typing import Optional, Tuple

from motor.motor_asyncio import AsyncIOMotorDatabase

from signpearl.config import Settings
from signpearl.database import DOCUMENTS, RECIPIENTS, parse_object_id, utcnow
from signpearl.errors import NotFound
from signpearl.schemas import Document, Recipient

logger = logging.getLogger(__name__)

LINK_NOT_FOUND = "Document not found"


def generate_token() -> str:
    return secrets.token_urlsafe(32)


def token_expiry(settings: Settings, now: Optional[datetime] = None) -> datetime:
    return (now or utcnow()) + timedelta(days=settings.signing_token_ttl_days)


def signing_url(settings: Settings, document_id: str, token: str) -> str:
    return f"{settings.app_base_url.rstrip('/')}/sign/{document_id}/{token}"


async def resolve_token(db: AsyncIOMotorDatabase, token: str) -> Recipient:
    if not token:
        raise NotFound(LINK_NOT_FOUND, context="empty token")
    row = await db[RECIPIENTS].find_one(
        {"signing_url_token": token, "token_expiry": {"$gt": utcnow()}}
    )
    if not row:
        raise NotFound(LINK_NOT_FOUND, context="token unknown or expired")
    return Recipient.from_mongo(row)


async def resolve_signing_session(
    db: AsyncIOMotorDatabase, document_id: str, token: str
) -> Tuple[Document, Recipient]:
    recipient = await resolve_token(db, token)
    if recipient.document_id != document_id:
        logger.warning("token presented for foreign document recipient_id=%s", recipient.id)
        raise NotFound(LINK_NOT_FOUND, context="token does not match document")
    oid = parse_object_id(document_id)
    row = await db[DOCUMENTS].find_one({"_id": oid}) if oid else None
    if not row:
        raise NotFound(LINK_NOT_FOUND, context="document missing")
    document = Document.from_mongo(row)
    if not document.file_url:
        raise NotFound(LINK_NOT_FOUND, context="document has no file")
    return document, recipient
