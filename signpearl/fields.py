import logging
from typing import Any, Dict, Iterable, List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument

from signpearl.access_log import RequestMeta, log_access
from signpearl.database import FIELDS, RECIPIENTS, SIGNATURES, create_document, create_many, get_documents, parse_object_id, utcnow
from signpearl.errors import Conflict, Forbidden, InvalidInput, NotFound
from signpearl.schemas import (
    AccessAction,
    Document,
    DocumentStatus,
    FieldCreate,
    FieldUpdate,
    Recipient,
    RecipientStatus,
    Signature,
    SignatureField,
)

logger = logging.getLogger(__name__)


def _ensure_editable(document: Document) -> None:
    if document.status == DocumentStatus.completed:
        raise Conflict("Document is completed; its fields can no longer change")


async def _check_assignee(db: AsyncIOMotorDatabase, document: Document, assigned_to: Optional[str]) -> None:
    if assigned_to is None:
        return
    oid = parse_object_id(assigned_to)
    row = await db[RECIPIENTS].find_one({"_id": oid, "document_id": document.id}) if oid else None
    if not row:
        raise InvalidInput("Assigned recipient does not belong to this document")


def _field_row(document: Document, payload: FieldCreate) -> Dict[str, Any]:
    return {
        "document_id": document.id,
        "field_type": payload.field_type.value,
        "x_position": payload.x_position,
        "y_position": payload.y_position,
        "width": payload.width,
        "height": payload.height,
        "page_number": payload.page_number,
        "label": payload.label or payload.field_type.value.title(),
        "required": payload.required,
        "assigned_to": payload.assigned_to,
        "signature_data": None,
        "completed_by": None,
        "burned_at": None,
    }


async def place_field(db: AsyncIOMotorDatabase, document: Document, payload: FieldCreate) -> SignatureField:
    _ensure_editable(document)
    await _check_assignee(db, document, payload.assigned_to)
    saved = await create_document(db, FIELDS, _field_row(document, payload))
    return SignatureField.from_mongo(saved)


async def place_fields(db: AsyncIOMotorDatabase, document: Document, payloads: Iterable[FieldCreate]) -> List[SignatureField]:
    _ensure_editable(document)
    payloads = list(payloads)
    for p in payloads:
        await _check_assignee(db, document, p.assigned_to)
    saved = await create_many(db, FIELDS, [_field_row(document, p) for p in payloads])
    logger.info("placed fields document_id=%s count=%s", document.id, len(saved))
    return [SignatureField.from_mongo(s) for s in saved]


async def list_fields(db: AsyncIOMotorDatabase, document_id: str) -> List[SignatureField]:
    rows = await get_documents(
        db,
        FIELDS,
        {"document_id": document_id},
        limit=0,
        sort=[("page_number", 1), ("y_position", 1), ("x_position", 1)],
    )
    return [SignatureField.from_mongo(r) for r in rows]


async def update_field(
    db: AsyncIOMotorDatabase, document: Document, field: SignatureField, payload: FieldUpdate
) -> SignatureField:
    """Move, resize or re-label a placed field.

    Moves are plain coordinate updates; the only checks are the non-negative
    bounds already enforced by ``FieldUpdate``.
    """
    _ensure_editable(document)
    changes = payload.model_dump(exclude_unset=True)
    if "assigned_to" in changes:
        await _check_assignee(db, document, changes["assigned_to"])
    if "field_type" in changes and changes["field_type"] is not None:
        changes["field_type"] = changes["field_type"].value
    changes = {k: v for k, v in changes.items() if v is not None or k == "assigned_to"}
    if not changes:
        return field
    changes["updated_at"] = utcnow()
    row = await db[FIELDS].find_one_and_update(
        {"_id": parse_object_id(field.id), "document_id": document.id},
        {"$set": changes},
        return_document=ReturnDocument.AFTER,
    )
    if row is None:
        raise NotFound("Field not found")
    return SignatureField.from_mongo(row)


async def move_field(
    db: AsyncIOMotorDatabase,
    document: Document,
    field: SignatureField,
    x: float,
    y: float,
    width: Optional[float] = None,
    height: Optional[float] = None,
) -> SignatureField:
    payload = FieldUpdate(x_position=x, y_position=y, width=width, height=height)
    return await update_field(db, document, field, payload)


async def delete_field(db: AsyncIOMotorDatabase, document: Document, field: SignatureField) -> None:
    _ensure_editable(document)
    await db[FIELDS].delete_one({"_id": parse_object_id(field.id), "document_id": document.id})


async def save_field_value(
    db: AsyncIOMotorDatabase,
    document: Document,
    recipient: Recipient,
    field_id: str,
    value: str,
    meta: Optional[RequestMeta] = None,
) -> SignatureField:
    """Store a recipient's value for one field and write the audit trail."""
    if not value or not value.strip():
        raise InvalidInput("A value is required")
    if recipient.status == RecipientStatus.signed:
        raise Conflict("Recipient has already signed")
    _ensure_editable(document)
    oid = parse_object_id(field_id)
    row = await db[FIELDS].find_one({"_id": oid, "document_id": document.id}) if oid else None
    if not row:
        raise NotFound("Field not found")
    field = SignatureField.from_mongo(row)
    if field.assigned_to not in (None, recipient.id):
        raise Forbidden("This field is assigned to another recipient")
    if field.burned_at is not None:
        raise Conflict("Field is already part of the signed document")
    updated = await db[FIELDS].find_one_and_update(
        {"_id": oid, "document_id": document.id, "burned_at": None, "completed_by": {"$in": [None, recipient.id]}},
        {"$set": {"signature_data": value, "completed_by": recipient.id, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise Conflict("Field was completed by another recipient")
    meta = meta or RequestMeta()
    await create_document(
        db,
        SIGNATURES,
        {
            "document_id": document.id,
            "recipient_id": recipient.id,
            "field_id": field.id,
            "signature_data": value,
            "signed_at": utcnow(),
            "ip_address": meta.ip_address,
            "user_agent": meta.user_agent,
            "location": meta.location,
        },
    )
    await log_access(db, document.id, AccessAction.field_completed, recipient.id, meta)
    return SignatureField.from_mongo(updated)


async def list_signatures(db: AsyncIOMotorDatabase, document_id: str) -> List[Signature]:
    rows = await get_documents(db, SIGNATURES, {"document_id": document_id}, limit=0, sort=[("signed_at", -1)])
    return [Signature.from_mongo(r) for r in rows]
