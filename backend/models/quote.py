"""
AgencyDesk CRM - Quote models

Request schemas only check the SHAPE of the payload (types, enums, dates).
Business rules (non-empty title, at least one item, non-negative amounts)
are enforced by services.quote_builder so that they raise domain errors.

Money fields are integers in minor units.
"""

from datetime import date
from enum import Enum
from typing import List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class QuoteStatus(str, Enum):
    DRAFT = "draft"
    SENT = "sent"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"  # read-time overlay, never stored


TERMINAL_STATUSES = [QuoteStatus.APPROVED.value, QuoteStatus.REJECTED.value]


class RecipientKind(str, Enum):
    CLIENT = "client"
    LEAD = "lead"


class PriceType(str, Enum):
    """Informational only, does not change the arithmetic."""
    FIXED = "fixed"
    HOURLY = "hourly"
    MONTHLY = "monthly"


class LineItemInput(BaseModel):
    model_config = ConfigDict(extra="ignore")  # a client-computed "total" is ignored

    product_id: Optional[str] = None
    name: str
    description: str = ""
    quantity: int
    unit_price: int
    price_type: PriceType = PriceType.FIXED


class QuoteCreate(BaseModel):
    model_config = ConfigDict(extra="ignore")

    title: str
    description: Optional[str] = None
    recipient_id: str
    recipient_kind: RecipientKind = RecipientKind.CLIENT
    valid_until: date
    items: List[LineItemInput]
    notes: Optional[str] = None
    terms: Optional[str] = None
    email_message: Optional[str] = None


class QuoteUpdate(BaseModel):
    model_config = ConfigDict(extra="ignore")

    title: Optional[str] = None
    description: Optional[str] = None
    recipient_id: Optional[str] = None
    recipient_kind: Optional[RecipientKind] = None
    valid_until: Optional[date] = None
    items: Optional[List[LineItemInput]] = None
    notes: Optional[str] = None
    terms: Optional[str] = None
    email_message: Optional[str] = None


class QuoteSendRequest(BaseModel):
    email_message: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("email_message", "emailMessage")
    )
    attach_pdf: bool = True


class ApprovalRequest(BaseModel):
    """Body of POST /quotes/{id}/approve. The IP address is taken from the request."""
    signature: str
    user_agent: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("user_agent", "userAgent")
    )


class RejectRequest(BaseModel):
    reason: Optional[str] = None


# ==================== RESPONSES ====================

class SignatureArtifact(BaseModel):
    image: str
    signed_at: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


class PublicRecipient(BaseModel):
    name: str = ""
    company: str = ""


class PublicAgency(BaseModel):
    name: str = ""
    logo: Optional[str] = None
    pdf_color: str = "#0066cc"


class PublicLineItem(BaseModel):
    name: str
    description: str = ""
    quantity: int
    unit_price: int
    price_type: str = PriceType.FIXED.value
    total: int


class QuoteView(BaseModel):
    """Sanitized quote for the unauthenticated approval page."""
    id: str
    quote_number: str
    title: str
    description: Optional[str] = None
    recipient: PublicRecipient
    agency: PublicAgency
    items: List[PublicLineItem]
    subtotal: int
    vat_amount: int
    vat_rate_bp: int
    total_amount: int
    currency: str
    valid_until: str
    created_at: str
    notes: Optional[str] = None
    terms: Optional[str] = None
    status: str
    is_expired: bool
    can_respond: bool
    approved_at: Optional[str] = None
    rejected_at: Optional[str] = None
    signed: bool = False


class QuoteListResponse(BaseModel):
    quotes: List[dict]
    count: int
