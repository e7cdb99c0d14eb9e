import logging
from typing import Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument

from signpearl.access_log import RequestMeta, log_access
from signpearl.auth import CurrentUser
from signpearl.database import CHILD_COLLECTIONS, DOCUMENTS, FIELDS, create_document, create_many, get_documents, parse_object_id, utcnow
from signpearl.errors import Conflict, InvalidInput, UpstreamFailure
from signpearl.fields import list_fields
from signpearl.schemas import AccessAction, Document, DocumentCreate, DocumentStatus, DocumentUpdate
from signpearl.storage import ObjectStorageError, StorageService, document_object_key, public_file_url

logger = logging.getLogger(__name__)

PDF_CONTENT_TYPES = ("application/pdf", "application/x-pdf")


async def create_doc(
    db: AsyncIOMotorDatabase, user: CurrentUser, payload: DocumentCreate, meta: Optional[RequestMeta] = None
) -> Document:
    saved = await create_document(
        db,
        DOCUMENTS,
        {
            "title": payload.title,
            "owner_id": user.id,
            "status": DocumentStatus.draft.value,
            "content": payload.content,
            "file_key": None,
            "file_url": None,
            "is_template": payload.is_template,
            "template_id": None,
        },
    )
    doc = Document.from_mongo(saved)
    await log_access(db, doc.id, AccessAction.document_created, meta=meta)
    return doc


async def list_docs(
    db: AsyncIOMotorDatabase,
    user: CurrentUser,
    status: Optional[DocumentStatus] = None,
    is_template: Optional[bool] = None,
    limit: int = 200,
) -> List[Document]:
    q: Dict = {"owner_id": user.id}
    if status:
        q["status"] = status.value
    if is_template is not None:
        q["is_template"] = is_template
    docs = await get_documents(db, DOCUMENTS, filter_dict=q, limit=limit, sort=[("created_at", -1)])
    return [Document.from_mongo(d) for d in docs]


async def update_doc(db: AsyncIOMotorDatabase, document: Document, payload: DocumentUpdate) -> Document:
    changes = {k: v for k, v in payload.model_dump(exclude_unset=True).items() if v is not None}
    if not changes:
        return document
    if document.status == DocumentStatus.completed:
        raise Conflict("Document is completed and can no longer be edited")
    changes["updated_at"] = utcnow()
    row = await db[DOCUMENTS].find_one_and_update(
        {"_id": parse_object_id(document.id)},
        {"$set": changes},
        return_document=ReturnDocument.AFTER,
    )
    return Document.from_mongo(row)


async def delete_doc(db: AsyncIOMotorDatabase, document: Document) -> Dict[str, int]:
    """Delete a document and every row that references it."""
    removed = {}
    for name in CHILD_COLLECTIONS:
        res = await db[name].delete_many({"document_id": document.id})
        removed[name] = res.deleted_count
    await db[DOCUMENTS].delete_one({"_id": parse_object_id(document.id)})
    logger.info("deleted document_id=%s cascade=%s", document.id, removed)
    return removed


def _looks_like_pdf(data: bytes) -> bool:
    return data[:1024].lstrip().startswith(b"%PDF-")


async def upload_document_file(
    db: AsyncIOMotorDatabase,
    storage: StorageService,
    document: Document,
    data: bytes,
    content_type: Optional[str],
    public_api_url: str,
    max_bytes: int,
) -> Document:
    if document.status != DocumentStatus.draft:
        raise Conflict("The file can only be replaced while the document is a draft")
    if content_type not in PDF_CONTENT_TYPES or not _looks_like_pdf(data):
        raise InvalidInput("Only PDF files are supported")
    if len(data) > max_bytes:
        raise InvalidInput("File is too large")
    key = document_object_key(document.owner_id, document.id)
    try:
        await storage.upload(key, data, "application/pdf")
    except ObjectStorageError as exc:
        raise UpstreamFailure("Failed to upload file", context=str(exc)) from exc
    row = await db[DOCUMENTS].find_one_and_update(
        {"_id": parse_object_id(document.id)},
        {"$set": {"file_key": key, "file_url": public_file_url(public_api_url, key), "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    return Document.from_mongo(row)


async def instantiate_template(
    db: AsyncIOMotorDatabase,
    user: CurrentUser,
    template: Document,
    title: Optional[str] = None,
    meta: Optional[RequestMeta] = None,
) -> Document:
    if not template.is_template:
        raise InvalidInput("Document is not a template")
    title_final = title or f"Document from {template.title}"
    saved = await create_document(
        db,
        DOCUMENTS,
        {
            "title": title_final,
            "owner_id": user.id,
            "status": DocumentStatus.draft.value,
            "content": template.content,
            # Versions are immutable objects, so sharing the template's current one is safe
            "file_key": template.file_key,
            "file_url": template.file_url,
            "is_template": False,
            "template_id": template.id,
        },
    )
    doc = Document.from_mongo(saved)
    fields = await list_fields(db, template.id)
    await create_many(
        db,
        FIELDS,
        [
            {
                "document_id": doc.id,
                "field_type": f.field_type.value,
                "x_position": f.x_position,
                "y_position": f.y_position,
                "width": f.width,
                "height": f.height,
                "page_number": f.page_number,
                "label": f.label,
                "required": f.required,
                "assigned_to": None,
                "signature_data": None,
                "completed_by": None,
                "burned_at": None,
            }
            for f in fields
        ],
    )
    await log_access(db, doc.id, AccessAction.document_created, meta=meta)
    return doc


async def stats(db: AsyncIOMotorDatabase, user: CurrentUser) -> Dict:
    result = {}
    for s in DocumentStatus:
        result[s.value] = await db[DOCUMENTS].count_documents(
            {"owner_id": user.id, "status": s.value, "is_template": {"$ne": True}}
        )
    total = sum(result.values())
    templates = await db[DOCUMENTS].count_documents({"owner_id": user.id, "is_template": True})
    return {
        "total": total,
        "completed": result["completed"],
        "waiting": result["sent"] + result["signed"],
        "attention": result["draft"],
        "templates": templates,
        "breakdown": result,
    }
