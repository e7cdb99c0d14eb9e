import html
import logging
import re
from typing import Dict, List, Optional, Protocol, Tuple

import httpx
from motor.motor_asyncio import AsyncIOMotorDatabase

from signpearl.access_log import log_access
from signpearl.config import Settings
from signpearl.errors import Conflict, InvalidInput, UpstreamFailure
from signpearl.recipients import advance_document_status, list_recipients
from signpearl.schemas import AccessAction, Document, DocumentStatus, Recipient, RecipientStatus, SendResult
from signpearl.tokens import signing_url

logger = logging.getLogger(__name__)

# Template variables look like {{name}}
VARIABLE_PATTERN = re.compile(r"\{\{\s*(\w+)\s*\}\}")

_SUBJECT = "Document Signature Request - {{ title }}"

_TEXT = """Hello {{ name }},

You have been requested to sign the document: {{ title }}

Review and sign it here:
{{ url }}

This link is unique to you and will expire on {{ expires }}. If you have any
questions, please contact the sender.

Powered by SignPearl - Secure Digital Document Signing
"""

_HTML = """<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
  <h1 style="margin: 0;">SignPearl</h1>
  <p>Hello {{ name }},</p>
  <p>You have been requested to sign the document: <strong>{{ title }}</strong></p>
  <p><a href="{{ url }}">Review &amp; Sign Document</a></p>
  <p style="color: #999; font-size: 14px;">
    This link is unique to you and will expire on {{ expires }}. If you have any
    questions, please contact the sender.
  </p>
  <p style="color: #999; font-size: 12px;">Powered by SignPearl - Secure Digital Document Signing</p>
</div>
"""


class Mailer(Protocol):
    async def send(self, to: str, subject: str, text: str, html: str) -> None: ...


class SendGridMailer:
    """Sends one message per call through the SendGrid v3 mail API."""

    def __init__(self, settings: Settings, client: Optional[httpx.AsyncClient] = None) -> None:
        self.api_key = settings.sendgrid_api_key
        self.api_url = settings.sendgrid_api_url
        self.sender = settings.email_from
        self.timeout = settings.email_timeout_seconds
        self._client = client

    async def send(self, to: str, subject: str, text: str, html: str) -> None:
        if not self.api_key:
            raise UpstreamFailure("Failed to send email", context="SENDGRID_API_KEY is not configured")
        body = {
            "personalizations": [{"to": [{"email": to}]}],
            "from": {"email": self.sender},
            "subject": subject,
            "content": [
                {"type": "text/plain", "value": text},
                {"type": "text/html", "value": html},
            ],
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}
        try:
            if self._client is not None:
                response = await self._client.post(self.api_url, json=body, headers=headers, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(self.api_url, json=body, headers=headers)
        except httpx.HTTPError as exc:
            raise UpstreamFailure("Failed to send email", context=f"transport error: {exc}") from exc
        if response.status_code >= 300:
            raise UpstreamFailure(
                "Failed to send email",
                context=f"SendGrid responded {response.status_code}: {response.text[:200]}",
            )


def render_template(template: str, variables: Dict[str, str], escape: bool = False) -> str:
    """Replace {{name}} placeholders; unknown names render as an empty string."""

    def replace_var(match: re.Match) -> str:
        value = variables.get(match.group(1), "")
        return html.escape(value, quote=True) if escape else value

    return VARIABLE_PATTERN.sub(replace_var, template)


def render_signing_email(document: Document, recipient: Recipient, url: str) -> Tuple[str, str, str]:
    variables = {
        "title": document.title,
        "name": recipient.name,
        "url": url,
        "expires": recipient.token_expiry.strftime("%B %d, %Y"),
    }
    subject = render_template(_SUBJECT, variables)
    text = render_template(_TEXT, variables)
    body = render_template(_HTML, variables, escape=True)
    return subject, text, body


async def send_document(
    db: AsyncIOMotorDatabase,
    settings: Settings,
    mailer: Mailer,
    document: Document,
) -> SendResult:
    """Email a signing link to every recipient who has not signed yet.

    Delivery is not transactional: a failure for one recipient does not undo
    the messages already sent, and the document still moves to ``sent``.
    """
    if not document.file_url:
        raise InvalidInput("Upload a document file before sending")
    if document.status == DocumentStatus.completed:
        raise Conflict("Document is already completed")
    recipients = [r for r in await list_recipients(db, document.id) if r.status != RecipientStatus.signed]
    if not recipients:
        raise InvalidInput("Add at least one recipient before sending")

    sent: List[str] = []
    failed: List[str] = []
    for recipient in recipients:
        url = signing_url(settings, document.id, recipient.signing_url_token)
        subject, text, html = render_signing_email(document, recipient, url)
        try:
            await mailer.send(recipient.email, subject, text, html)
        except UpstreamFailure as exc:
            logger.error("email to recipient_id=%s failed: %s", recipient.id, exc)
            failed.append(recipient.email)
            await log_access(db, document.id, AccessAction.email_failed, recipient.id)
            continue
        sent.append(recipient.email)
        await log_access(db, document.id, AccessAction.email_sent, recipient.id)

    document = await advance_document_status(db, document, DocumentStatus.sent)
    if failed:
        logger.warning("partial send document_id=%s sent=%s failed=%s", document.id, len(sent), len(failed))
    return SendResult(document=document, sent=sent, failed=failed)
