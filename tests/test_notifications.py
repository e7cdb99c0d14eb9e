import json
from datetime import timedelta

import httpx
import pytest

from conftest import TEST_SETTINGS
from signpearl.config import Settings
from signpearl.database import ACCESS_LOGS, utcnow
from signpearl.errors import UpstreamFailure
from signpearl.notifications import SendGridMailer, render_signing_email, render_template
from signpearl.schemas import Document, Recipient

JANE = {"email": "jane@x.com", "name": "Jane Doe"}
BOB = {"email": "bob@x.com", "name": "Bob Roe"}


def _doc_and_recipient(title="NDA", name="Jane Doe"):
    document = Document(id="d1", title=title, owner_id="user-a")
    recipient = Recipient(
        id="r1",
        document_id="d1",
        email="jane@x.com",
        name=name,
        signing_url_token="tok",
        token_expiry=utcnow() + timedelta(days=30),
    )
    return document, recipient


def test_render_signing_email_escapes_html_only():
    document, recipient = _doc_and_recipient(title="Terms <b>& Conditions</b>")
    subject, text, html = render_signing_email(document, recipient, "http://app.test/sign/d1/tok")
    assert subject == "Document Signature Request - Terms <b>& Conditions</b>"
    assert "Terms <b>& Conditions</b>" in text
    assert "Terms &lt;b&gt;&amp; Conditions&lt;/b&gt;" in html
    assert 'href="http://app.test/sign/d1/tok"' in html


async def test_sendgrid_mailer_posts_v3_payload():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(202)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        mailer = SendGridMailer(TEST_SETTINGS, client=http)
        await mailer.send("jane@x.com", "Subject", "text body", "<p>html body</p>")

    assert seen["url"] == TEST_SETTINGS.sendgrid_api_url
    assert seen["auth"] == "Bearer SG.test"
    body = seen["body"]
    assert body["personalizations"] == [{"to": [{"email": "jane@x.com"}]}]
    assert body["from"] == {"email": TEST_SETTINGS.email_from}
    assert [c["type"] for c in body["content"]] == ["text/plain", "text/html"]


async def test_sendgrid_error_status_is_upstream_failure():
    transport = httpx.MockTransport(lambda request: httpx.Response(401, text="bad key"))
    async with httpx.AsyncClient(transport=transport) as http:
        mailer = SendGridMailer(TEST_SETTINGS, client=http)
        with pytest.raises(UpstreamFailure):
            await mailer.send("jane@x.com", "s", "t", "h")


async def test_sendgrid_transport_error_is_upstream_failure():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        mailer = SendGridMailer(TEST_SETTINGS, client=http)
        with pytest.raises(UpstreamFailure):
            await mailer.send("jane@x.com", "s", "t", "h")


async def test_missing_api_key_is_upstream_failure():
    mailer = SendGridMailer(Settings(sendgrid_api_key=None))
    with pytest.raises(UpstreamFailure):
        await mailer.send("jane@x.com", "s", "t", "h")


async def test_partial_send_still_marks_document_sent(client, db, mailer, make_document):
    doc, _ = await make_document(recipients=[JANE, BOB])
    mailer.fail_for.add("bob@x.com")

    res = await client.post(f"/documents/{doc['id']}/send")

    assert res.status_code == 200
    body = res.json()
    assert body["sent"] == ["jane@x.com"]
    assert body["failed"] == ["bob@x.com"]
    assert body["document"]["status"] == "sent"
    actions = [row["action"] async for row in db[ACCESS_LOGS].find({"document_id": doc["id"]})]
    assert actions.count("email_sent") == 1
    assert actions.count("email_failed") == 1


async def test_send_can_add_recipients_inline(client, mailer, make_document):
    doc, _ = await make_document()
    res = await client.post(f"/documents/{doc['id']}/send", json={"recipients": [JANE]})
    assert res.status_code == 200
    assert [m["to"] for m in mailer.messages] == ["jane@x.com"]


async def test_send_requires_file_and_recipients(client, make_document):
    no_file, _ = await make_document(upload=False, recipients=[JANE])
    assert (await client.post(f"/documents/{no_file['id']}/send")).status_code == 400

    no_people, _ = await make_document()
    assert (await client.post(f"/documents/{no_people['id']}/send")).status_code == 400


def test_render_template_blanks_unknown_variables():
    assert render_template("Hi {{ name }}{{missing}}!", {"name": "Jane"}) == "Hi Jane!"
