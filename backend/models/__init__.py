"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  AgencyDesk CRM - Models Package                                             ║
║                                                                              ║
║  Exports the models for easy import                                          ║
║  from models import QuoteCreate, QuoteStatus, AgencyBranding, etc.           ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

# Quote
from .quote import (
    QuoteStatus,
    TERMINAL_STATUSES,
    RecipientKind,
    PriceType,
    LineItemInput,
    QuoteCreate,
    QuoteUpdate,
    QuoteSendRequest,
    ApprovalRequest,
    RejectRequest,
    SignatureArtifact,
    QuoteView,
    QuoteListResponse,
)

# Money
from .money import (
    MAX_SAFE_AMOUNT,
    Totals,
    compute_totals,
    format_amount,
    line_total,
    to_minor_units,
)

# Agency branding
from .agency import (
    DEFAULT_PDF_COLOR,
    TemplateName,
    AgencyBranding,
    PdfSettingsUpdate,
)

# Recipient (client OR lead)
from .recipient import (
    RecipientSnapshot,
    RECIPIENT_COLLECTIONS,
)

__all__ = [
    # Quote
    "QuoteStatus",
    "TERMINAL_STATUSES",
    "RecipientKind",
    "PriceType",
    "LineItemInput",
    "QuoteCreate",
    "QuoteUpdate",
    "QuoteSendRequest",
    "ApprovalRequest",
    "RejectRequest",
    "SignatureArtifact",
    "QuoteView",
    "QuoteListResponse",
    # Money
    "MAX_SAFE_AMOUNT",
    "Totals",
    "compute_totals",
    "format_amount",
    "line_total",
    "to_minor_units",
    # Agency
    "DEFAULT_PDF_COLOR",
    "TemplateName",
    "AgencyBranding",
    "PdfSettingsUpdate",
    # Recipient
    "RecipientSnapshot",
    "RECIPIENT_COLLECTIONS",
]
