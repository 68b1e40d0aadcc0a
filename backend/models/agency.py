"""
AgencyDesk CRM - Agency branding (document rendering context)
"""

import re
from enum import Enum
from typing import Optional

from pydantic import BaseModel, field_validator

DEFAULT_PDF_COLOR = "#0066cc"

_HEX_COLOR_RE = re.compile(r"^#[0-9a-fA-F]{6}$")


class TemplateName(str, Enum):
    MODERN = "modern"
    CLASSIC = "classic"
    MINIMAL = "minimal"


def is_valid_hex_color(value: str) -> bool:
    return bool(value and _HEX_COLOR_RE.match(value))


class AgencyBranding(BaseModel):
    """Branding used by the PDF renderer and the public approval page."""
    name: str = ""
    email: str = ""
    phone: str = ""
    address: str = ""
    logo: Optional[str] = None  # data URI or http(s) URL
    pdf_template: str = TemplateName.MODERN.value
    pdf_color: str = DEFAULT_PDF_COLOR

    @classmethod
    def from_document(cls, agency: Optional[dict]) -> "AgencyBranding":
        agency = agency or {}
        color = agency.get("pdf_color") or DEFAULT_PDF_COLOR
        return cls(
            name=agency.get("name") or "",
            email=agency.get("email") or "",
            phone=agency.get("phone") or "",
            address=agency.get("address") or "",
            logo=agency.get("logo") or None,
            pdf_template=agency.get("pdf_template") or TemplateName.MODERN.value,
            pdf_color=color if is_valid_hex_color(color) else DEFAULT_PDF_COLOR,
        )


class PdfSettingsUpdate(BaseModel):
    pdf_template: Optional[TemplateName] = None
    pdf_color: Optional[str] = None

    @field_validator('pdf_color')
    @classmethod
    def validate_color(cls, v):
        if v is not None and not is_valid_hex_color(v):
            raise ValueError(f"Invalid colour (expected #RRGGBB): {v}")
        return v
