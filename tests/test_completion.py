import base64
import warnings
from io import BytesIO
from unittest.mock import MagicMock

import pytest
from PIL import Image
from pypdf import PdfReader

from conftest import make_pdf, png_data_url
from signpearl.completion import (
    burn_fields,
    collected_values,
    complete_document,
    decode_signature_image,
    draw_field,
    field_draw_box,
    pending_fields,
)
from signpearl.database import DOCUMENTS, FIELDS, create_document
from signpearl.errors import InvalidInput, UpstreamFailure
from signpearl.schemas import Document, FieldType, SignatureField


def _field(field_type=FieldType.signature, page=1, **kwargs) -> SignatureField:
    data = {
        "id": kwargs.pop("id", f"f-{field_type.value}-{page}"),
        "document_id": "doc-1",
        "field_type": field_type,
        "x_position": 150,
        "y_position": 650,
        "width": 200,
        "height": 60,
        "page_number": page,
    }
    data.update(kwargs)
    return SignatureField(**data)


def test_field_draw_box_flips_to_bottom_left():
    assert field_draw_box(_field(), 792) == (150, 82, 200, 60)


def test_signature_field_is_drawn_at_flipped_y():
    c = MagicMock()
    img = Image.new("RGBA", (40, 12))
    draw_field(c, _field(FieldType.signature), img, 792)
    args, kwargs = c.drawImage.call_args
    assert args[1:3] == (150, 82)
    assert kwargs["width"] == 200
    assert kwargs["height"] == 60
    c.drawString.assert_not_called()


def test_text_field_is_drawn_at_flipped_y():
    c = MagicMock()
    draw_field(c, _field(FieldType.text), "Jane Doe", 792, font_size=12)
    c.setFont.assert_called_once_with("Helvetica", 12)
    c.drawString.assert_called_once_with(150, 82, "Jane Doe")
    c.drawImage.assert_not_called()


def test_decode_signature_image_accepts_png_and_jpeg_data_urls():
    assert decode_signature_image(png_data_url()).size == (40, 12)

    buf = BytesIO()
    Image.new("RGB", (30, 10), (255, 255, 255)).save(buf, format="JPEG")
    jpeg = base64.b64encode(buf.getvalue()).decode("ascii")
    assert decode_signature_image(jpeg).size == (30, 10)


@pytest.mark.parametrize("value", ["not base64 at all!!", "aGVsbG8gd29ybGQ="])
def test_decode_signature_image_rejects_garbage(value):
    with pytest.raises(UpstreamFailure):
        decode_signature_image(value)


def test_burn_fields_writes_text_onto_page():
    fields = [_field(FieldType.text, id="name")]
    out = burn_fields(make_pdf(), fields, {"name": "Jane Doe"})
    reader = PdfReader(BytesIO(out))
    assert len(reader.pages) == 1
    assert "Jane Doe" in reader.pages[0].extract_text()


def test_burn_fields_keeps_page_count_and_skips_empty_values():
    fields = [_field(FieldType.signature, id="sig"), _field(FieldType.text, page=2, id="t")]
    out = burn_fields(make_pdf(pages=3), fields, {"sig": png_data_url(), "t": ""})
    assert len(PdfReader(BytesIO(out)).pages) == 3


def test_missing_page_is_skipped_when_lenient():
    fields = [_field(FieldType.text, page=4, id="t")]
    out = burn_fields(make_pdf(), fields, {"t": "Jane"}, strict=False)
    assert len(PdfReader(BytesIO(out)).pages) == 1


def test_missing_page_fails_when_strict():
    fields = [_field(FieldType.text, page=4, id="t")]
    with pytest.raises(InvalidInput):
        burn_fields(make_pdf(), fields, {"t": "Jane"}, strict=True)


def test_collected_values_prefers_overrides():
    fields = [
        _field(FieldType.text, id="a", signature_data="stored"),
        _field(FieldType.text, id="b"),
    ]
    assert collected_values(fields) == {"a": "stored"}
    assert collected_values(fields, {"a": "new", "b": "typed"}) == {"a": "new", "b": "typed"}


async def _stored_document(db, storage, owner="user-a") -> Document:
    await storage.upload("user-a/doc/original.pdf", make_pdf(), "application/pdf")
    row = await create_document(
        db,
        DOCUMENTS,
        {
            "title": "NDA",
            "owner_id": owner,
            "status": "signed",
            "file_key": "user-a/doc/original.pdf",
            "file_url": "http://api.test/files/user-a/doc/original.pdf",
            "is_template": False,
        },
    )
    return Document.from_mongo(row)


async def test_complete_document_stores_new_version(db, storage):
    document = await _stored_document(db, storage)
    fields = [_field(FieldType.signature, id="sig")]

    updated = await complete_document(db, storage, document, fields, {"sig": png_data_url()}, "http://api.test")

    assert updated.file_key != document.file_key
    assert updated.file_url == f"http://api.test/files/{updated.file_key}"
    assert set(storage.objects) == {document.file_key, updated.file_key}
    assert storage.objects[document.file_key] != storage.objects[updated.file_key]


async def test_bad_signature_image_aborts_before_upload(db, storage):
    document = await _stored_document(db, storage)
    fields = [_field(FieldType.signature, id="sig"), _field(FieldType.text, id="t", y_position=10, height=20)]

    with pytest.raises(UpstreamFailure):
        await complete_document(db, storage, document, fields, {"sig": "aGVsbG8=", "t": "Jane"}, "http://api.test")

    assert list(storage.objects) == [document.file_key]
    stored = await db[DOCUMENTS].find_one({"title": "NDA"})
    assert stored["file_key"] == document.file_key


async def test_missing_source_object_is_upstream_failure(db, storage):
    document = await _stored_document(db, storage)
    storage.objects.clear()
    with pytest.raises(UpstreamFailure):
        await complete_document(db, storage, document, [], {}, "http://api.test")


def test_burn_fields_merges_through_the_writer():
    fields = [_field(FieldType.text, id="t"), _field(FieldType.signature, page=2, id="sig")]
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        burn_fields(make_pdf(pages=2), fields, {"t": "Jane", "sig": png_data_url()})
    assert not [w for w in caught if "not assigned to a writer" in str(w.message)]


async def test_complete_document_marks_drawn_fields(db, storage):
    document = await _stored_document(db, storage)
    row = await create_document(
        db,
        FIELDS,
        {
            "document_id": document.id,
            "field_type": "text",
            "x_position": 150,
            "y_position": 650,
            "width": 200,
            "height": 60,
            "page_number": 1,
            "signature_data": "Jane",
            "burned_at": None,
        },
    )
    field = SignatureField.from_mongo(row)
    assert pending_fields([field]) == [field]

    await complete_document(db, storage, document, [field], collected_values([field]), "http://api.test")

    stored = SignatureField.from_mongo(await db[FIELDS].find_one({"_id": row["_id"]}))
    assert stored.burned_at is not None
    assert stored.completed is True
    assert pending_fields([stored]) == []
