import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import APIRouter, Depends, FastAPI, File, Request, Response, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorDatabase

from signpearl import completion, documents, fields as field_ops, recipients as recipient_ops
from signpearl.access_log import list_access_logs, log_access, request_meta
from signpearl.auth import CurrentUser, get_current_user
from signpearl.config import Settings, settings as default_settings
from signpearl.database import FIELDS, RECIPIENTS, create_client, ensure_indexes, get_db, utcnow
from signpearl.errors import Conflict, InvalidInput, NotFound, register_error_handlers
from signpearl.notifications import Mailer, SendGridMailer, send_document
from signpearl.permissions import OwnedResource, require_owner
from signpearl.schemas import (
    AccessAction,
    AccessLog,
    CompleteRequest,
    Document,
    DocumentCreate,
    DocumentStatus,
    DocumentUpdate,
    FieldCreate,
    FieldUpdate,
    FieldValue,
    FinishResult,
    InstantiateRequest,
    Recipient,
    RecipientCreate,
    RecipientOut,
    RecipientStatus,
    SendRequest,
    SendResult,
    Signature,
    SignatureField,
    SigningSession,
)
from signpearl.storage import GridFSStorageService, ObjectNotFoundError, StorageService
from signpearl.tokens import resolve_signing_session, signing_url

logger = logging.getLogger(__name__)

router = APIRouter()


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_storage(request: Request) -> StorageService:
    return request.app.state.storage


def get_mailer(request: Request) -> Mailer:
    return request.app.state.mailer


@asynccontextmanager
async def lifespan(app: FastAPI):
    cfg: Settings = app.state.settings
    client = create_client(cfg)
    db = client[cfg.database_name]
    await ensure_indexes(db)
    app.state.db = db
    app.state.storage = GridFSStorageService(db, bucket_name=cfg.storage_bucket)
    app.state.mailer = SendGridMailer(cfg)
    logger.info("connected database=%s", cfg.database_name)
    try:
        yield
    finally:
        client.close()


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    cfg = settings or default_settings
    logging.basicConfig(
        level=cfg.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    app = FastAPI(title="SignPearl", lifespan=lifespan)
    app.state.settings = cfg
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.cors_origin_list(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_error_handlers(app)
    app.include_router(router)
    return app


def _recipient_out(cfg: Settings, recipient: Recipient) -> RecipientOut:
    return recipient.to_out(signing_url(cfg, recipient.document_id, recipient.signing_url_token))


@router.get("/health")
async def health(db: AsyncIOMotorDatabase = Depends(get_db)):
    # simple round trip query
    await db["health"].insert_one({"ok": True, "ts": utcnow()})
    last = await db["health"].find_one(sort=[("ts", -1)])
    return {"status": "ok", "last": last["ts"].isoformat() if last else None}


# Documents
@router.post("/documents", status_code=201, response_model=Document)
async def create_doc(
    payload: DocumentCreate,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncIOMotorDatabase = Depends(get_db),
):
    return await documents.create_doc(db, user, payload, request_meta(request))


@router.get("/documents", response_model=List[Document])
async def list_docs(
    status: Optional[DocumentStatus] = None,
    is_template: Optional[bool] = None,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncIOMotorDatabase = Depends(get_db),
):
    return await documents.list_docs(db, user, status=status, is_template=is_template)


@router.get("/documents/{document_id}", response_model=Document)
async def get_doc(owned: OwnedResource = Depends(require_owner())):
    return owned.document


@router.patch("/documents/{document_id}", response_model=Document)
async def update_doc(
    payload: DocumentUpdate,
    owned: OwnedResource = Depends(require_owner()),
    db: AsyncIOMotorDatabase = Depends(get_db),
):
    return await documents.update_doc(db, owned.document, payload)


@router.delete("/documents/{document_id}")
async def delete_doc(
    owned: OwnedResource = Depends(require_owner()),
    db: AsyncIOMotorDatabase = Depends(get_db),
):
    removed = await documents.delete_doc(db, owned.document)
    return {"ok": True, "removed": removed}


@router.post("/documents/{document_id}/file", response_model=Document)
async def upload_file(
    file: UploadFile = File(...),
    owned: OwnedResource = Depends(require_owner()),
    db: AsyncIOMotorDatabase = Depends(get_db),
    storage: StorageService = Depends(get_storage),
    cfg: Settings = Depends(get_settings),
):
    data = await file.read()
    return await documents.upload_document_file(
        db, storage, owned.document, data, file.content_type, cfg.public_api_url, cfg.max_upload_bytes
    )


@router.post("/documents/{document_id}/instantiate", status_code=201, response_model=Document)
async def instantiate(
    request: Request,
    payload: Optional[InstantiateRequest] = None,
    owned: OwnedResource = Depends(require_owner()),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncIOMotorDatabase = Depends(get_db),
):
    title = payload.title if payload else None
    return await documents.instantiate_template(db, user, owned.document, title, request_meta(request))


# Recipients
@router.get("/documents/{document_id}/recipients", response_model=List[RecipientOut])
async def list_recipients(
    owned: OwnedResource = Depends(require_owner()),
    db: AsyncIOMotorDatabase = Depends(get_db),
    cfg: Settings = Depends(get_settings),
):
    return [_recipient_out(cfg, r) for r in await recipient_ops.list_recipients(db, owned.document.id)]


@router.post("/documents/{document_id}/recipients", status_code=201, response_model=List[RecipientOut])
async def add_recipients(
    payload: List[RecipientCreate],
    owned: OwnedResource = Depends(require_owner()),
    db: AsyncIOMotorDatabase = Depends(get_db),
    cfg: Settings = Depends(get_settings),
):
    if not payload:
        raise InvalidInput("No recipients provided")
    added = await recipient_ops.add_recipients(db, cfg, owned.document, payload)
    return [_recipient_out(cfg, r) for r in added]


@router.delete("/recipients/{recipient_id}")
async def remove_recipient(
    owned: OwnedResource = Depends(require_owner(RECIPIENTS, "recipient_id")),
    db: AsyncIOMotorDatabase = Depends(get_db),
):
    await recipient_ops.remove_recipient(db, owned.document, Recipient.from_mongo(owned.row))
    return {"ok": True}


# Fields
@router.get("/documents/{document_id}/fields", response_model=List[SignatureField])
async def list_fields(
    owned: OwnedResource = Depends(require_owner()),
    db: AsyncIOMotorDatabase = Depends(get_db),
):
    return await field_ops.list_fields(db, owned.document.id)


@router.post("/documents/{document_id}/fields", status_code=201, response_model=List[SignatureField])
async def place_fields(
    payload: List[FieldCreate],
    owned: OwnedResource = Depends(require_owner()),
    db: AsyncIOMotorDatabase = Depends(get_db),
):
    if not payload:
        raise InvalidInput("No fields provided")
    return await field_ops.place_fields(db, owned.document, payload)


@router.patch("/fields/{field_id}", response_model=SignatureField)
async def update_field(
    payload: FieldUpdate,
    owned: OwnedResource = Depends(require_owner(FIELDS, "field_id")),
    db: AsyncIOMotorDatabase = Depends(get_db),
):
    return await field_ops.update_field(db, owned.document, SignatureField.from_mongo(owned.row), payload)


@router.delete("/fields/{field_id}")
async def delete_field(
    owned: OwnedResource = Depends(require_owner(FIELDS, "field_id")),
    db: AsyncIOMotorDatabase = Depends(get_db),
):
    await field_ops.delete_field(db, owned.document, SignatureField.from_mongo(owned.row))
    return {"ok": True}


# Sending and completion
@router.post("/documents/{document_id}/send", response_model=SendResult)
async def send(
    payload: Optional[SendRequest] = None,
    owned: OwnedResource = Depends(require_owner()),
    db: AsyncIOMotorDatabase = Depends(get_db),
    mailer: Mailer = Depends(get_mailer),
    cfg: Settings = Depends(get_settings),
):
    if payload and payload.recipients:
        await recipient_ops.add_recipients(db, cfg, owned.document, payload.recipients)
    return await send_document(db, cfg, mailer, owned.document)


@router.post("/documents/{document_id}/complete", response_model=Document)
async def complete(
    request: Request,
    payload: Optional[CompleteRequest] = None,
    owned: OwnedResource = Depends(require_owner()),
    db: AsyncIOMotorDatabase = Depends(get_db),
    storage: StorageService = Depends(get_storage),
    cfg: Settings = Depends(get_settings),
):
    payload = payload or CompleteRequest()
    document = owned.document
    if document.status == DocumentStatus.completed:
        raise Conflict("Document is already completed")
    if document.status == DocumentStatus.draft:
        raise Conflict("Send the document before completing it")
    doc_fields = await field_ops.list_fields(db, document.id)
    burned = {f.id for f in doc_fields if f.burned_at is not None}
    if burned & set(payload.values):
        raise Conflict("Some fields are already drawn into the document")
    doc_fields = completion.pending_fields(doc_fields)
    values = completion.collected_values(doc_fields, payload.values)
    strict = cfg.completion_strict_pages if payload.strict is None else payload.strict
    document = await completion.complete_document(
        db, storage, document, doc_fields, values, cfg.public_api_url, strict, cfg.completion_font_size
    )
    if await recipient_ops.all_signed(db, document.id):
        document = await recipient_ops.advance_document_status(db, document, DocumentStatus.completed)
        await log_access(db, document.id, AccessAction.document_completed, meta=request_meta(request))
    return document


# Audit
@router.get("/documents/{document_id}/signatures", response_model=List[Signature])
async def list_signatures(
    owned: OwnedResource = Depends(require_owner()),
    db: AsyncIOMotorDatabase = Depends(get_db),
):
    return await field_ops.list_signatures(db, owned.document.id)


@router.get("/documents/{document_id}/access-logs", response_model=List[AccessLog])
async def access_logs(
    owned: OwnedResource = Depends(require_owner()),
    db: AsyncIOMotorDatabase = Depends(get_db),
):
    return await list_access_logs(db, owned.document.id)


@router.get("/stats")
async def stats(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncIOMotorDatabase = Depends(get_db),
):
    return await documents.stats(db, user)


# Recipient signing links
@router.get("/sign/{document_id}/{token}", response_model=SigningSession)
async def view_for_signing(
    document_id: str,
    token: str,
    request: Request,
    db: AsyncIOMotorDatabase = Depends(get_db),
    cfg: Settings = Depends(get_settings),
):
    document, recipient = await resolve_signing_session(db, document_id, token)
    recipient = await recipient_ops.mark_viewed(db, recipient)
    await log_access(db, document.id, AccessAction.document_viewed, recipient.id, request_meta(request))
    return SigningSession(
        document=document,
        recipient=_recipient_out(cfg, recipient),
        fields=await field_ops.list_fields(db, document.id),
    )


@router.put("/sign/{document_id}/{token}/fields/{field_id}", response_model=SignatureField)
async def save_field_value(
    document_id: str,
    token: str,
    field_id: str,
    payload: FieldValue,
    request: Request,
    db: AsyncIOMotorDatabase = Depends(get_db),
):
    document, recipient = await resolve_signing_session(db, document_id, token)
    meta = request_meta(request).with_location(payload.location)
    return await field_ops.save_field_value(db, document, recipient, field_id, payload.value, meta)


@router.post("/sign/{document_id}/{token}/finish", response_model=FinishResult)
async def finish_signing(
    document_id: str,
    token: str,
    request: Request,
    db: AsyncIOMotorDatabase = Depends(get_db),
    storage: StorageService = Depends(get_storage),
    cfg: Settings = Depends(get_settings),
):
    document, recipient = await resolve_signing_session(db, document_id, token)
    if recipient.status == RecipientStatus.signed:
        raise Conflict("Recipient has already signed")
    doc_fields = await field_ops.list_fields(db, document.id)
    if not recipient_ops.required_fields_complete(recipient, doc_fields):
        raise InvalidInput("All required fields must be completed before signing")

    # A retry after a failed sign step finds its fields already drawn
    own = [f for f in completion.pending_fields(doc_fields) if f.completed_by == recipient.id]
    if own:
        document = await completion.complete_document(
            db,
            storage,
            document,
            own,
            completion.collected_values(own),
            cfg.public_api_url,
            cfg.completion_strict_pages,
            cfg.completion_font_size,
        )
    recipient = await recipient_ops.mark_signed(db, recipient, doc_fields)
    meta = request_meta(request)
    await log_access(db, document.id, AccessAction.document_signed, recipient.id, meta)

    if await recipient_ops.all_signed(db, document.id):
        document = await recipient_ops.advance_document_status(db, document, DocumentStatus.completed)
        await log_access(db, document.id, AccessAction.document_completed, meta=meta)
    else:
        document = await recipient_ops.advance_document_status(db, document, DocumentStatus.signed)
    return FinishResult(document=document, recipient=_recipient_out(cfg, recipient))


# Stored files
@router.get("/files/{key:path}")
async def get_file(key: str, storage: StorageService = Depends(get_storage)):
    try:
        data = await storage.download(key)
        content_type = await storage.content_type(key)
    except ObjectNotFoundError as exc:
        raise NotFound("File not found", context=key) from exc
    return Response(content=data, media_type=content_type or "application/octet-stream")


app = create_app()
