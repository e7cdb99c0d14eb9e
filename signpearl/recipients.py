"""Recipient and document status transitions.

Recipients move ``pending -> viewed -> signed`` and documents move
``draft -> sent -> signed -> completed``. Neither ever moves backwards. Each
transition is a conditional update keyed on the current status, so two
concurrent requests cannot both win; the loser sees ``Conflict`` (or a no-op
when it asked for a state that has already been reached).
"""
import logging
from typing import Iterable, List, Sequence, Tuple

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument

from signpearl.config import Settings
from signpearl.database import DOCUMENTS, FIELDS, RECIPIENTS, create_many, get_documents, parse_object_id, utcnow
from signpearl.errors import Conflict, InvalidInput
from signpearl.schemas import (
    Document,
    DocumentStatus,
    Recipient,
    RecipientCreate,
    RecipientStatus,
    SignatureField,
)
from signpearl.tokens import generate_token, token_expiry

logger = logging.getLogger(__name__)

RECIPIENT_ORDER = [RecipientStatus.pending, RecipientStatus.viewed, RecipientStatus.signed]
DOCUMENT_ORDER = [DocumentStatus.draft, DocumentStatus.sent, DocumentStatus.signed, DocumentStatus.completed]


def _before(order: Sequence, target) -> List[str]:
    return [s.value for s in order[: order.index(target)]]


def _reached(order: Sequence, current, target) -> bool:
    return order.index(current) >= order.index(target)


async def add_recipients(
    db: AsyncIOMotorDatabase,
    settings: Settings,
    document: Document,
    payloads: Iterable[RecipientCreate],
) -> List[Recipient]:
    payloads = list(payloads)
    if document.status == DocumentStatus.completed:
        raise Conflict("Document is already completed")
    existing = {
        r["email"] for r in await get_documents(db, RECIPIENTS, {"document_id": document.id}, limit=0)
    }
    seen = set()
    items = []
    for p in payloads:
        if p.email in existing or p.email in seen:
            raise InvalidInput(f"Recipient {p.email} already added")
        seen.add(p.email)
        items.append(
            {
                "document_id": document.id,
                "email": p.email,
                "name": p.name,
                "role": p.role or "Signer",
                "status": RecipientStatus.pending.value,
                "signing_url_token": generate_token(),
                "token_expiry": token_expiry(settings),
            }
        )
    saved = await create_many(db, RECIPIENTS, items)
    logger.info("added recipients document_id=%s count=%s", document.id, len(saved))
    return [Recipient.from_mongo(r) for r in saved]


async def list_recipients(db: AsyncIOMotorDatabase, document_id: str) -> List[Recipient]:
    rows = await get_documents(db, RECIPIENTS, {"document_id": document_id}, limit=0, sort=[("created_at", 1)])
    return [Recipient.from_mongo(r) for r in rows]


async def remove_recipient(db: AsyncIOMotorDatabase, document: Document, recipient: Recipient) -> None:
    res = await db[RECIPIENTS].delete_one(
        {"_id": parse_object_id(recipient.id), "status": RecipientStatus.pending.value}
    )
    if res.deleted_count == 0:
        raise Conflict("Only pending recipients can be removed")
    # Fields assigned to them become unassigned
    await db[FIELDS].update_many(
        {"document_id": document.id, "assigned_to": recipient.id},
        {"$set": {"assigned_to": None, "updated_at": utcnow()}},
    )


async def _transition(
    db: AsyncIOMotorDatabase, recipient: Recipient, target: RecipientStatus, stamp: str
) -> Tuple[Recipient, bool]:
    now = utcnow()
    row = await db[RECIPIENTS].find_one_and_update(
        {
            "_id": parse_object_id(recipient.id),
            "status": {"$in": _before(RECIPIENT_ORDER, target)},
            "token_expiry": {"$gt": now},
        },
        {"$set": {"status": target.value, stamp: now}},
        return_document=ReturnDocument.AFTER,
    )
    if row:
        logger.info("recipient_id=%s status -> %s", recipient.id, target.value)
        return Recipient.from_mongo(row), True
    current = await db[RECIPIENTS].find_one({"_id": parse_object_id(recipient.id)})
    if current is None:
        raise Conflict("Recipient no longer exists")
    return Recipient.from_mongo(current), False


async def mark_viewed(db: AsyncIOMotorDatabase, recipient: Recipient) -> Recipient:
    if _reached(RECIPIENT_ORDER, recipient.status, RecipientStatus.viewed):
        return recipient
    # Losing the race to another viewer, or to signing, is fine: status never regresses
    updated, _ = await _transition(db, recipient, RecipientStatus.viewed, "viewed_at")
    return updated


def fields_for_recipient(recipient: Recipient, fields: Iterable[SignatureField]) -> List[SignatureField]:
    return [f for f in fields if f.assigned_to in (None, recipient.id)]


def required_fields_complete(recipient: Recipient, fields: Iterable[SignatureField]) -> bool:
    return all(f.completed for f in fields_for_recipient(recipient, fields) if f.required)


async def mark_signed(db: AsyncIOMotorDatabase, recipient: Recipient, fields: Iterable[SignatureField]) -> Recipient:
    if recipient.status == RecipientStatus.signed:
        raise Conflict("Recipient has already signed")
    if not required_fields_complete(recipient, fields):
        raise InvalidInput("All required fields must be completed before signing")
    updated, changed = await _transition(db, recipient, RecipientStatus.signed, "signed_at")
    if not changed:
        raise Conflict("Recipient status changed concurrently")
    return updated


async def advance_document_status(db: AsyncIOMotorDatabase, document: Document, target: DocumentStatus) -> Document:
    """Move ``document`` forward to ``target``; a no-op if it is already there or past it."""
    if _reached(DOCUMENT_ORDER, document.status, target):
        return document
    row = await db[DOCUMENTS].find_one_and_update(
        {"_id": parse_object_id(document.id), "status": {"$in": _before(DOCUMENT_ORDER, target)}},
        {"$set": {"status": target.value, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if row is None:
        row = await db[DOCUMENTS].find_one({"_id": parse_object_id(document.id)})
        if row is None:
            raise Conflict("Document no longer exists")
    logger.info("document_id=%s status -> %s", document.id, row.get("status"))
    return Document.from_mongo(row)


async def all_signed(db: AsyncIOMotorDatabase, document_id: str) -> bool:
    total = await db[RECIPIENTS].count_documents({"document_id": document_id})
    signed = await db[RECIPIENTS].count_documents(
        {"document_id": document_id, "status": RecipientStatus.signed.value}
    )
    return total > 0 and signed == total
