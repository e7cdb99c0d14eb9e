from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field, computed_field, field_validator
from datetime import datetime


class DocumentStatus(str, Enum):
    draft = "draft"
    sent = "sent"
    signed = "signed"
    completed = "completed"


class RecipientStatus(str, Enum):
    pending = "pending"
    viewed = "viewed"
    signed = "signed"


class FieldType(str, Enum):
    signature = "signature"
    text = "text"
    date = "date"
    name = "name"
    email = "email"
    phone = "phone"
    custom = "custom"


class AccessAction(str, Enum):
    document_created = "document_created"
    document_viewed = "document_viewed"
    field_completed = "field_completed"
    document_signed = "document_signed"
    document_completed = "document_completed"
    email_sent = "email_sent"
    email_failed = "email_failed"


def _str_id(value: Any) -> Optional[str]:
    return str(value) if value is not None else None


# Stored rows. ``from_mongo`` is the only place raw records are read; defaults
# for missing keys are filled there once.

class Document(BaseModel):
    id: str
    title: str
    owner_id: str
    status: DocumentStatus = DocumentStatus.draft
    content: Optional[str] = None
    file_key: Optional[str] = None
    file_url: Optional[str] = None
    is_template: bool = False
    template_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_mongo(cls, doc: Dict[str, Any]) -> "Document":
        return cls(
            id=str(doc["_id"]),
            title=doc.get("title") or "Untitled Document",
            owner_id=str(doc["owner_id"]),
            status=doc.get("status") or DocumentStatus.draft,
            content=doc.get("content"),
            file_key=doc.get("file_key"),
            file_url=doc.get("file_url"),
            is_template=bool(doc.get("is_template", False)),
            template_id=_str_id(doc.get("template_id")),
            created_at=doc.get("created_at"),
            updated_at=doc.get("updated_at"),
        )


class Recipient(BaseModel):
    id: str
    document_id: str
    email: str
    name: str
    role: str = "Signer"
    status: RecipientStatus = RecipientStatus.pending
    signing_url_token: str
    token_expiry: datetime
    viewed_at: Optional[datetime] = None
    signed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_mongo(cls, doc: Dict[str, Any]) -> "Recipient":
        return cls(
            id=str(doc["_id"]),
            document_id=str(doc["document_id"]),
            email=doc["email"],
            name=doc.get("name") or doc["email"],
            role=doc.get("role") or "Signer",
            status=doc.get("status") or RecipientStatus.pending,
            signing_url_token=doc["signing_url_token"],
            token_expiry=doc["token_expiry"],
            viewed_at=doc.get("viewed_at"),
            signed_at=doc.get("signed_at"),
            created_at=doc.get("created_at"),
        )

    def to_out(self, signing_url: Optional[str] = None) -> "RecipientOut":
        data = self.model_dump(exclude={"signing_url_token"})
        return RecipientOut(**data, signing_url=signing_url)


class RecipientOut(BaseModel):
    """Recipient as shown to the owner; the token itself stays server-side."""

    id: str
    document_id: str
    email: str
    name: str
    role: str
    status: RecipientStatus
    token_expiry: datetime
    signing_url: Optional[str] = None
    viewed_at: Optional[datetime] = None
    signed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class SignatureField(BaseModel):
    id: str
    document_id: str
    field_type: FieldType
    x_position: float
    y_position: float
    width: float
    height: float
    page_number: int = 1
    label: str = ""
    required: bool = True
    assigned_to: Optional[str] = None
    signature_data: Optional[str] = None
    completed_by: Optional[str] = None
    # Set once the value has been drawn into the current file
    burned_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @computed_field
    @property
    def completed(self) -> bool:
        return bool(self.signature_data) or self.burned_at is not None

    @classmethod
    def from_mongo(cls, doc: Dict[str, Any]) -> "SignatureField":
        return cls(
            id=str(doc["_id"]),
            document_id=str(doc["document_id"]),
            field_type=doc.get("field_type") or FieldType.signature,
            x_position=float(doc.get("x_position") or 0),
            y_position=float(doc.get("y_position") or 0),
            width=float(doc.get("width") or 0),
            height=float(doc.get("height") or 0),
            page_number=int(doc.get("page_number") or 1),
            label=doc.get("label") or "",
            required=bool(doc.get("required", True)),
            assigned_to=_str_id(doc.get("assigned_to")),
            signature_data=doc.get("signature_data") or None,
            completed_by=_str_id(doc.get("completed_by")),
            burned_at=doc.get("burned_at"),
            created_at=doc.get("created_at"),
            updated_at=doc.get("updated_at"),
        )


class Signature(BaseModel):
    id: str
    document_id: str
    recipient_id: str
    field_id: Optional[str] = None
    signature_data: Optional[str] = None
    signed_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    location: Optional[str] = None

    @classmethod
    def from_mongo(cls, doc: Dict[str, Any]) -> "Signature":
        return cls(
            id=str(doc["_id"]),
            document_id=str(doc["document_id"]),
            recipient_id=str(doc["recipient_id"]),
            field_id=_str_id(doc.get("field_id")),
            signature_data=doc.get("signature_data"),
            signed_at=doc.get("signed_at") or doc.get("created_at"),
            ip_address=doc.get("ip_address"),
            user_agent=doc.get("user_agent"),
            location=doc.get("location"),
        )


class AccessLog(BaseModel):
    id: str
    document_id: str
    recipient_id: Optional[str] = None
    action: str
    timestamp: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    location: Optional[str] = None
    recipient_email: Optional[str] = None
    recipient_name: Optional[str] = None

    @classmethod
    def from_mongo(cls, doc: Dict[str, Any]) -> "AccessLog":
        return cls(
            id=str(doc["_id"]),
            document_id=str(doc["document_id"]),
            recipient_id=_str_id(doc.get("recipient_id")),
            action=doc["action"],
            timestamp=doc.get("timestamp") or doc.get("created_at"),
            ip_address=doc.get("ip_address"),
            user_agent=doc.get("user_agent"),
            location=doc.get("location"),
        )


# Request payloads

class DocumentCreate(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    content: Optional[str] = None
    is_template: bool = False


class DocumentUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=255)
    content: Optional[str] = None
    is_template: Optional[bool] = None


class RecipientCreate(BaseModel):
    email: str = Field(min_length=3, max_length=320)
    name: str = Field(min_length=1, max_length=255)
    role: str = "Signer"

    @field_validator("email")
    @classmethod
    def _email_shape(cls, v: str) -> str:
        v = v.strip().lower()
        local, _, domain = v.partition("@")
        if not local or "." not in domain:
            raise ValueError("invalid email address")
        return v


class FieldCreate(BaseModel):
    field_type: FieldType = FieldType.signature
    page_number: int = Field(default=1, ge=1)
    x_position: float = Field(ge=0)
    y_position: float = Field(ge=0)
    width: float = Field(gt=0)
    height: float = Field(gt=0)
    label: str = ""
    required: bool = True
    assigned_to: Optional[str] = None


class FieldUpdate(BaseModel):
    x_position: Optional[float] = Field(default=None, ge=0)
    y_position: Optional[float] = Field(default=None, ge=0)
    width: Optional[float] = Field(default=None, gt=0)
    height: Optional[float] = Field(default=None, gt=0)
    page_number: Optional[int] = Field(default=None, ge=1)
    field_type: Optional[FieldType] = None
    label: Optional[str] = None
    required: Optional[bool] = None
    assigned_to: Optional[str] = None


class FieldValue(BaseModel):
    value: str
    location: Optional[str] = None


class SendRequest(BaseModel):
    recipients: List[RecipientCreate] = []


class SendResult(BaseModel):
    document: Document
    sent: List[str] = []
    failed: List[str] = []


class CompleteRequest(BaseModel):
    values: Dict[str, str] = {}
    strict: Optional[bool] = None


class InstantiateRequest(BaseModel):
    title: Optional[str] = None


class SigningSession(BaseModel):
    document: Document
    recipient: RecipientOut
    fields: List[SignatureField]


class FinishResult(BaseModel):
    document: Document
    recipient: RecipientOut
