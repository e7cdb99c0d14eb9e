"""Burning field values into a new PDF version.

Field rectangles are stored the way the editor places them: pixels from the
top-left corner of the page. PDF drawing is from the bottom-left, so every
field is drawn with its bottom edge at ``page_height - y - height``.
"""
import base64
import binascii
import logging
from io import BytesIO
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from motor.motor_asyncio import AsyncIOMotorDatabase
from PIL import Image, UnidentifiedImageError
from pymongo import ReturnDocument
from pypdf import PdfReader, PdfWriter
from pypdf.errors import PdfReadError
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas

from signpearl.database import DOCUMENTS, FIELDS, parse_object_id, utcnow
from signpearl.errors import Conflict, InvalidInput, UpstreamFailure
from signpearl.schemas import Document, FieldType, SignatureField
from signpearl.storage import ObjectStorageError, StorageService, document_object_key, public_file_url

logger = logging.getLogger(__name__)

TEXT_FONT = "Helvetica"
DEFAULT_FONT_SIZE = 12

# PNG first (canvas captures), JPEG for uploaded photos
_IMAGE_CODECS = ("PNG", "JPEG")


def field_draw_box(field: SignatureField, page_height: float) -> Tuple[float, float, float, float]:
    draw_y = page_height - field.y_position - field.height
    return field.x_position, draw_y, field.width, field.height


def _decode_base64(value: str) -> bytes:
    data = value
    if value.startswith("data:"):
        _, _, data = value.partition(",")
    try:
        return base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise UpstreamFailure("Failed to decode signature image", context="not base64") from exc


def decode_signature_image(value: str) -> Image.Image:
    raw = _decode_base64(value)
    for codec in _IMAGE_CODECS:
        try:
            img = Image.open(BytesIO(raw), formats=[codec])
            img.load()
            return img.convert("RGBA")
        except (UnidentifiedImageError, OSError) as exc:
            logger.debug("signature image is not %s: %s", codec, exc)
    raise UpstreamFailure("Failed to decode signature image", context="neither PNG nor JPEG")


def draw_field(c, field: SignatureField, value, page_height: float, font_size: int = DEFAULT_FONT_SIZE) -> None:
    x, y, w, h = field_draw_box(field, page_height)
    if field.field_type == FieldType.signature:
        c.drawImage(
            ImageReader(value),
            x,
            y,
            width=w,
            height=h,
            mask="auto",
            preserveAspectRatio=True,
            anchor="nw",
        )
    else:
        c.setFont(TEXT_FONT, font_size)
        c.drawString(x, y, str(value))


def burn_fields(
    pdf_bytes: bytes,
    fields: Iterable[SignatureField],
    values: Mapping[str, str],
    strict: bool = False,
    font_size: int = DEFAULT_FONT_SIZE,
) -> bytes:
    try:
        reader = PdfReader(BytesIO(pdf_bytes))
        pages = list(reader.pages)
    except PdfReadError as exc:
        raise UpstreamFailure("Failed to read document file", context=str(exc)) from exc

    by_page: Dict[int, List[Tuple[SignatureField, object]]] = {}
    for field in fields:
        value = values.get(field.id)
        if not value:
            continue
        index = field.page_number - 1
        if index < 0 or index >= len(pages):
            if strict:
                raise InvalidInput(f"Field {field.id} is on page {field.page_number}, which does not exist")
            logger.warning("skipping field_id=%s on missing page %s", field.id, field.page_number)
            continue
        # Decode everything before touching a page so a bad image aborts cleanly
        drawable = decode_signature_image(value) if field.field_type == FieldType.signature else value
        by_page.setdefault(index, []).append((field, drawable))

    # Overlays merge onto pages owned by the writer
    writer = PdfWriter(clone_from=reader)
    for i, page in enumerate(writer.pages):
        entries = by_page.get(i)
        if entries:
            box = page.mediabox
            w, h = float(box.width), float(box.height)
            buf = BytesIO()
            c = canvas.Canvas(buf, pagesize=(w, h))
            for field, drawable in entries:
                draw_field(c, field, drawable, h, font_size)
            c.save()
            overlay = PdfReader(BytesIO(buf.getvalue()))
            page.merge_page(overlay.pages[0])

    out = BytesIO()
    writer.write(out)
    return out.getvalue()


async def complete_document(
    db: AsyncIOMotorDatabase,
    storage: StorageService,
    document: Document,
    fields: Iterable[SignatureField],
    values: Mapping[str, str],
    public_api_url: str,
    strict: bool = False,
    font_size: int = DEFAULT_FONT_SIZE,
) -> Document:
    """Draw ``values`` onto the current file and make the result the new current version.

    Every field that had a value is stamped with ``burned_at`` afterwards, so
    later runs leave it out.
    """
    fields = list(fields)
    if not document.file_key:
        raise InvalidInput("Document has no file")
    try:
        source = await storage.download(document.file_key)
    except ObjectStorageError as exc:
        raise UpstreamFailure("Failed to load document file", context=str(exc)) from exc

    rendered = burn_fields(source, fields, values, strict=strict, font_size=font_size)

    key = document_object_key(document.owner_id, document.id)
    try:
        await storage.upload(key, rendered, "application/pdf")
    except ObjectStorageError as exc:
        raise UpstreamFailure("Failed to store updated document", context=str(exc)) from exc

    url = public_file_url(public_api_url, key)
    row = await db[DOCUMENTS].find_one_and_update(
        {"_id": parse_object_id(document.id), "file_key": document.file_key},
        {"$set": {"file_key": key, "file_url": url, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if row is None:
        raise Conflict("Document file changed while it was being completed")
    drawn = [parse_object_id(f.id) for f in fields if values.get(f.id)]
    drawn = [oid for oid in drawn if oid is not None]
    if drawn:
        await db[FIELDS].update_many(
            {"_id": {"$in": drawn}, "document_id": document.id},
            {"$set": {"burned_at": utcnow(), "updated_at": utcnow()}},
        )
    logger.info("completed document_id=%s new_key=%s", document.id, key)
    return Document.from_mongo(row)


def collected_values(fields: Iterable[SignatureField], overrides: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    values = {f.id: f.signature_data for f in fields if f.signature_data}
    if overrides:
        values.update({k: v for k, v in overrides.items() if v})
    return values


def pending_fields(fields: Iterable[SignatureField]) -> List[SignatureField]:
    """Fields whose value is not in the current file yet."""
    return [f for f in fields if f.burned_at is None]
