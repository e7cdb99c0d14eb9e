import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from fastapi import Depends, Request
from motor.motor_asyncio import AsyncIOMotorDatabase

from signpearl.auth import CurrentUser, get_current_user
from signpearl.database import DOCUMENTS, FIELDS, RECIPIENTS, get_db, parse_object_id
from signpearl.errors import InvalidInput, NotFound
from signpearl.schemas import Document

logger = logging.getLogger(__name__)

DOCUMENT_NOT_FOUND = "Document not found"

# resource type -> message shown when the row itself is missing
_RESOURCES = {
    DOCUMENTS: DOCUMENT_NOT_FOUND,
    FIELDS: "Field not found",
    RECIPIENTS: "Recipient not found",
}


@dataclass
class OwnedResource:
    document: Document
    row: Dict[str, Any]


def _require_object_id(value: str, what: str):
    oid = parse_object_id(value)
    if oid is None:
        raise InvalidInput(f"Malformed {what} id")
    return oid


async def _owned_document_row(db: AsyncIOMotorDatabase, user: CurrentUser, document_id: str):
    oid = _require_object_id(document_id, "document")
    row = await db[DOCUMENTS].find_one({"_id": oid})
    if not row:
        raise NotFound(DOCUMENT_NOT_FOUND, context=f"document_id={document_id} missing")
    document = Document.from_mongo(row)
    if document.owner_id != user.id:
        # Same outward answer as a missing row
        logger.warning("ownership check failed document_id=%s user_id=%s", document_id, user.id)
        raise NotFound(DOCUMENT_NOT_FOUND, context=f"document_id={document_id} not owned by caller")
    return document, row


async def load_owned_document(db: AsyncIOMotorDatabase, user: CurrentUser, document_id: str) -> Document:
    document, _ = await _owned_document_row(db, user, document_id)
    return document


async def load_owned(db: AsyncIOMotorDatabase, user: CurrentUser, resource: str, resource_id: str) -> OwnedResource:
    if resource == DOCUMENTS:
        document, row = await _owned_document_row(db, user, resource_id)
        return OwnedResource(document=document, row=row)
    oid = _require_object_id(resource_id, resource.rstrip("s"))
    row = await db[resource].find_one({"_id": oid})
    if not row:
        raise NotFound(_RESOURCES[resource], context=f"{resource} id={resource_id} missing")
    try:
        document = await load_owned_document(db, user, str(row["document_id"]))
    except NotFound as exc:
        raise NotFound(_RESOURCES[resource], context=exc.context) from exc
    return OwnedResource(document=document, row=row)


def require_owner(resource: str = DOCUMENTS, id_param: str = "document_id") -> Callable:
    """Dependency that resolves ``resource`` by the path parameter ``id_param``
    and only lets the owner of its parent document through."""
    if resource not in _RESOURCES:
        raise ValueError(f"unsupported resource {resource!r}")

    async def dependency(
        request: Request,
        user: CurrentUser = Depends(get_current_user),
        db: AsyncIOMotorDatabase = Depends(get_db),
    ) -> OwnedResource:
        resource_id: Optional[str] = request.path_params.get(id_param)
        if resource_id is None:
            raise InvalidInput(f"Missing {id_param}")
        return await load_owned(db, user, resource, resource_id)

    return dependency
