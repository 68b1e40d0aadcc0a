"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  AgencyDesk CRM - Quote PDF Renderer                                         ║
║                                                                              ║
║  Two stages:                                                                 ║
║    layout_quote()  -> list[Page]   pure: positioned text/rect/line/image ops ║
║    paint_pages()   -> bytes        reportlab canvas                          ║
║                                                                              ║
║  Templates (modern / classic / minimal) are entries of TEMPLATE_LAYOUTS.     ║
║  Unknown template names fall back to "modern", never fail.                   ║
║                                                                              ║
║  Section order is FIXED: header, number/date, title, description,            ║
║  recipient, validity, items, totals, notes, terms, acceptance, footer.       ║
║  Every amount goes through models.money.format_amount.                       ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import base64
import io
import logging
import unicodedata
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Callable, Dict, List, NamedTuple, Optional

from bidi.algorithm import get_display
from reportlab.lib.colors import HexColor
from reportlab.lib.pagesizes import A4
from reportlab.lib.utils import ImageReader, simpleSplit
from reportlab.pdfbase import pdfmetrics
from reportlab.pdfbase.ttfonts import TTFont
from reportlab.pdfgen import canvas

from config import BUSINESS_TIMEZONE, PDF_FONT_PATH
from models.agency import DEFAULT_PDF_COLOR, AgencyBranding, TemplateName, is_valid_hex_color
from models.money import currency_symbol, format_amount, format_vat_rate, pdf_currency_label
from models.quote import QuoteStatus
from models.recipient import RecipientSnapshot
from services.quote_errors import RenderError

logger = logging.getLogger("quote_pdf")

PAGE_WIDTH, PAGE_HEIGHT = A4
ML = 50                       # left margin
MR = PAGE_WIDTH - 50          # right edge
UW = MR - ML                  # usable width
TOP = PAGE_HEIGHT - 50
BOTTOM = 70                   # footer lives below this line

BLACK = "#000000"
WHITE = "#FFFFFF"
GRAY = "#555555"
LIGHT_GRAY = "#F2F2F2"
RULE_GRAY = "#CCCCCC"

# (label, x, width, align) - Item | Qty | Unit price | Total
COLS = [
    ("Item", ML, 255, "left"),
    ("Qty", ML + 255, 50, "right"),
    ("Unit price", ML + 305, 95, "right"),
    ("Total", ML + 400, 95, "right"),
]

CUSTOM_FONT_NAME = "QuoteFont"
_custom_font_registered = False


# ════════════════════════════════════════════════════════════════════════════
# DRAWING OPERATIONS
# ════════════════════════════════════════════════════════════════════════════

@dataclass
class TextOp:
    x: float
    y: float
    text: str
    font: str
    size: float
    color: str = BLACK
    align: str = "left"
    role: str = ""  # e.g. "line_total", "subtotal", "vat", "total"


@dataclass
class RectOp:
    x: float
    y: float
    width: float
    height: float
    fill: Optional[str] = None
    stroke: Optional[str] = None


@dataclass
class LineOp:
    x1: float
    y1: float
    x2: float
    y2: float
    color: str = BLACK
    width: float = 0.5


@dataclass
class ImageOp:
    x: float
    y: float
    width: float
    height: float
    data: bytes = b""
    role: str = ""


@dataclass
class Page:
    number: int
    ops: List = field(default_factory=list)

    def texts(self, role: Optional[str] = None) -> List[TextOp]:
        return [op for op in self.ops if isinstance(op, TextOp) and (role is None or op.role == role)]


# ════════════════════════════════════════════════════════════════════════════
# TEMPLATES
# ════════════════════════════════════════════════════════════════════════════

class TemplateStyle(NamedTuple):
    font: str
    bold: str
    header: Callable
    filled_table_header: bool
    zebra_rows: bool


def resolve_template(name) -> TemplateName:
    """Any unknown / empty template name renders as "modern"."""
    if isinstance(name, TemplateName):
        return name
    try:
        return TemplateName((name or "").strip().lower())
    except ValueError:
        logger.info(f"[PDF] Unknown template {name!r}, using modern")
        return TemplateName.MODERN


def _header_modern(cursor: "_PageCursor", branding: AgencyBranding, logo: Optional[bytes]):
    band_h = 70
    cursor.add(RectOp(0, PAGE_HEIGHT - band_h, PAGE_WIDTH, band_h, fill=cursor.accent))
    text_x = ML
    if logo:
        cursor.add(ImageOp(ML, PAGE_HEIGHT - band_h + 10, 100, 50, data=logo, role="logo"))
        text_x = ML + 110
    cursor.add(TextOp(text_x, PAGE_HEIGHT - 40, visual(branding.name), cursor.bold, 18, WHITE))
    contact = _contact_line(branding)
    if contact:
        cursor.add(TextOp(text_x, PAGE_HEIGHT - 56, visual(contact), cursor.font, 8.5, WHITE))
    cursor.y = PAGE_HEIGHT - band_h - 30


def _header_classic(cursor: "_PageCursor", branding: AgencyBranding, logo: Optional[bytes]):
    y = TOP
    if logo:
        cursor.add(ImageOp(PAGE_WIDTH / 2 - 50, y - 50, 100, 50, data=logo, role="logo"))
        y -= 62
    cursor.add(TextOp(PAGE_WIDTH / 2, y - 14, visual(branding.name), cursor.bold, 20, cursor.accent, "center"))
    contact = _contact_line(branding)
    if contact:
        cursor.add(TextOp(PAGE_WIDTH / 2, y - 30, visual(contact), cursor.font, 9, GRAY, "center"))
    cursor.add(LineOp(ML, y - 40, MR, y - 40, cursor.accent, 1.5))
    cursor.add(LineOp(ML, y - 44, MR, y - 44, cursor.accent, 0.5))
    cursor.y = y - 70


def _header_minimal(cursor: "_PageCursor", branding: AgencyBranding, logo: Optional[bytes]):
    y = TOP
    if logo:
        cursor.add(ImageOp(MR - 80, y - 40, 80, 40, data=logo, role="logo"))
    cursor.add(TextOp(ML, y - 12, visual(branding.name), cursor.bold, 12, BLACK))
    contact = _contact_line(branding)
    if contact:
        cursor.add(TextOp(ML, y - 26, visual(contact), cursor.font, 8, GRAY))
    cursor.add(LineOp(ML, y - 48, MR, y - 48, cursor.accent, 0.75))
    cursor.y = y - 72


TEMPLATE_LAYOUTS: Dict[TemplateName, TemplateStyle] = {
    TemplateName.MODERN: TemplateStyle("Helvetica", "Helvetica-Bold", _header_modern, True, True),
    TemplateName.CLASSIC: TemplateStyle("Times-Roman", "Times-Bold", _header_classic, False, False),
    TemplateName.MINIMAL: TemplateStyle("Helvetica", "Helvetica-Bold", _header_minimal, False, False),
}


# ════════════════════════════════════════════════════════════════════════════
# HELPERS
# ════════════════════════════════════════════════════════════════════════════

def _register_custom_font() -> bool:
    """Register PDF_FONT_PATH once (needed for Hebrew and the ₪ sign)."""
    global _custom_font_registered
    if not PDF_FONT_PATH:
        return False
    if not _custom_font_registered:
        pdfmetrics.registerFont(TTFont(CUSTOM_FONT_NAME, PDF_FONT_PATH))
        _custom_font_registered = True
        logger.info(f"[PDF] Registered font {PDF_FONT_PATH}")
    return True


def is_rtl(text: Optional[str]) -> bool:
    return any(unicodedata.bidirectional(ch) in ("R", "AL") for ch in text or "")


def visual(text: Optional[str]) -> str:
    """Logical -> visual order (reportlab draws glyphs left to right). Latin text is returned as is."""
    text = text or ""
    return get_display(text) if is_rtl(text) else text


def needs_unicode_font(texts) -> bool:
    """True when some text cannot be drawn with the built-in (cp1252) fonts."""
    for text in texts:
        try:
            (text or "").encode("cp1252")
        except UnicodeEncodeError:
            return True
    return False


def _contact_line(branding: AgencyBranding) -> str:
    return "  |  ".join(part for part in (branding.email, branding.phone, branding.address) if part)


def format_date(value) -> str:
    """ISO date/datetime (or date object) -> DD/MM/YYYY in the business timezone."""
    if not value:
        return ""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        return value.strftime("%d/%m/%Y")
    elif len(value) == 10:
        return date.fromisoformat(value).strftime("%d/%m/%Y")
    else:
        parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(BUSINESS_TIMEZONE)
    return parsed.strftime("%d/%m/%Y")


def format_datetime(value: str) -> str:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(BUSINESS_TIMEZONE)
    return parsed.strftime("%d/%m/%Y %H:%M")


def decode_data_uri(data_uri: Optional[str]) -> Optional[bytes]:
    if not data_uri or not data_uri.startswith("data:") or "," not in data_uri:
        return None
    return base64.b64decode(data_uri.split(",", 1)[1])


class _PageCursor:
    """Tracks the write position and opens new pages when a block does not fit."""

    def __init__(self, style: TemplateStyle, accent: str):
        self.style = style
        self.font = style.font
        self.bold = style.bold
        self.accent = accent
        self.pages: List[Page] = []
        self.on_new_page: Optional[Callable] = None
        self.y = TOP
        self.new_page()

    @property
    def page(self) -> Page:
        return self.pages[-1]

    def add(self, op):
        self.page.ops.append(op)

    def new_page(self):
        self.pages.append(Page(number=len(self.pages) + 1))
        self.y = TOP
        if self.on_new_page:
            self.on_new_page()

    def room(self) -> float:
        return self.y - BOTTOM

    def ensure(self, height: float):
        if self.room() < height:
            self.new_page()

    def paragraph(self, text: str, font: str, size: float, color: str = BLACK, width: float = UW,
                  leading: float = None):
        leading = leading or size + 3
        for raw_line in (text or "").splitlines() or [""]:
            for line in simpleSplit(raw_line, font, size, width) or [""]:
                self.ensure(leading)
                self.y -= leading
                if is_rtl(line):
                    self.add(TextOp(ML + width, self.y, visual(line), font, size, color, "right"))
                else:
                    self.add(TextOp(ML, self.y, line, font, size, color))

    def heading(self, text: str, size: float = 11):
        self.ensure(size + 30)
        self.y -= 12
        self.y -= size
        self.add(TextOp(ML, self.y, text, self.bold, size, self.accent))
        self.y -= 4


# ════════════════════════════════════════════════════════════════════════════
# LAYOUT
# ════════════════════════════════════════════════════════════════════════════

def _table_header(cursor: _PageCursor):
    row_h = 20
    cursor.ensure(row_h)
    top = cursor.y
    if cursor.style.filled_table_header:
        cursor.add(RectOp(ML, top - row_h, UW, row_h, fill=cursor.accent))
        color = WHITE
    else:
        cursor.add(LineOp(ML, top - row_h, MR, top - row_h, cursor.accent, 1))
        color = BLACK
    for label, x, width, align in COLS:
        cursor.add(_cell_text(label, x, width, align, top - 14, cursor.bold, 9, color))
    cursor.y = top - row_h


def _cell_text(text, x, width, align, y, font, size, color=BLACK, role="") -> TextOp:
    if align == "right":
        return TextOp(x + width - 4, y, text, font, size, color, "right", role)
    return TextOp(x + 4, y, text, font, size, color, "left", role)


def _items_table(cursor: _PageCursor, quote: dict, money: Callable[[int], str]):
    _table_header(cursor)
    cursor.on_new_page = lambda: _table_header(cursor)

    _, desc_x, desc_w, _ = COLS[0]
    for index, item in enumerate(quote.get("items", [])):
        lines = [(line, cursor.bold, 9.5, 12) for line in simpleSplit(item["name"], cursor.bold, 9.5, desc_w - 8)]
        lines += [
            (line, cursor.font, 8.5, 10)
            for line in simpleSplit(item.get("description") or "", cursor.font, 8.5, desc_w - 8)
        ]
        first_chunk = True
        while lines:
            # Row chunk: as many wrapped lines as fit, the row continues on the next page
            available = cursor.room() - 8
            take, used = 0, 0
            for _, _, _, leading in lines:
                if used + leading > available:
                    break
                take += 1
                used += leading
            if take == 0:
                cursor.new_page()
                continue
            chunk, lines = lines[:take], lines[take:]
            row_h = max(20, used + 8)
            row_y = cursor.y - row_h
            if cursor.style.zebra_rows and index % 2 == 1:
                cursor.add(RectOp(ML, row_y, UW, row_h, fill=LIGHT_GRAY))
            baseline = cursor.y - 13
            if first_chunk:
                for (value, role), (_, x, width, align) in zip(
                    [(str(item["quantity"]), "quantity"),
                     (money(item["unit_price"]), "unit_price"),
                     (money(item["total"]), "line_total")],
                    COLS[1:],
                ):
                    cursor.add(_cell_text(value, x, width, align, baseline, cursor.font, 9, BLACK, role))
            y = cursor.y - 1
            for text, font, size, leading in chunk:
                y -= leading
                color = BLACK if size > 9 else GRAY
                if is_rtl(text):
                    cursor.add(TextOp(desc_x + desc_w - 4, y + 2, visual(text), font, size, color, "right"))
                else:
                    cursor.add(TextOp(desc_x + 4, y + 2, text, font, size, color))
            cursor.add(LineOp(ML, row_y, MR, row_y, RULE_GRAY, 0.3))
            cursor.y = row_y
            first_chunk = False
            if lines:
                cursor.new_page()

    cursor.on_new_page = None


def _totals_block(cursor: _PageCursor, quote: dict, money: Callable[[int], str]):
    cursor.ensure(70)
    label_x = MR - 200
    rows = [
        ("Subtotal", money(quote["subtotal"]), "subtotal", cursor.font),
        (f"VAT ({format_vat_rate(quote.get('vat_rate_bp', 1800))})", money(quote["vat_amount"]), "vat",
         cursor.font),
        ("Total", money(quote["total_amount"]), "total", cursor.bold),
    ]
    cursor.y -= 8
    for label, value, role, font in rows:
        cursor.y -= 16
        if role == "total":
            cursor.add(LineOp(label_x, cursor.y + 13, MR, cursor.y + 13, cursor.accent, 1))
            cursor.y -= 2
        size = 11 if role == "total" else 9.5
        cursor.add(TextOp(label_x, cursor.y, label, font, size))
        cursor.add(TextOp(MR - 4, cursor.y, value, font, size, BLACK, "right", role))


def _acceptance_block(cursor: _PageCursor, quote: dict, recipient: RecipientSnapshot):
    signature = quote.get("signature") or {}
    image = decode_data_uri(signature.get("image"))
    cursor.ensure(130)
    cursor.heading("Accepted")
    if image:
        cursor.add(ImageOp(ML, cursor.y - 64, 160, 60, data=image, role="signature"))
        cursor.y -= 68
    cursor.add(LineOp(ML, cursor.y, ML + 200, cursor.y, GRAY, 0.5))
    cursor.y -= 14
    signed_at = signature.get("signed_at") or quote.get("approved_at")
    cursor.add(TextOp(ML, cursor.y, visual(f"Signed by: {recipient.name}"), cursor.font, 9))
    if signed_at:
        cursor.y -= 12
        cursor.add(TextOp(ML, cursor.y, f"Signed on: {format_datetime(signed_at)}", cursor.font, 9))


def _footer(pages: List[Page], branding: AgencyBranding, font: str, quote_number: str):
    total = len(pages)
    for page in pages:
        page.ops.append(LineOp(ML, BOTTOM - 20, MR, BOTTOM - 20, RULE_GRAY, 0.5))
        page.ops.append(TextOp(ML, BOTTOM - 34, visual(f"{branding.name}  ·  {quote_number}"), font, 8, GRAY))
        page.ops.append(TextOp(MR, BOTTOM - 34, f"Page {page.number} of {total}", font, 8, GRAY, "right",
                               "page_number"))


def _quote_texts(quote: dict, recipient: RecipientSnapshot, branding: AgencyBranding) -> List[str]:
    texts = [quote.get(key) for key in ("title", "description", "notes", "terms")]
    texts += [recipient.name, recipient.company, branding.name, branding.address]
    for item in quote.get("items", []):
        texts += [item.get("name"), item.get("description")]
    return [text for text in texts if text]


def layout_quote(
    quote: dict,
    recipient: RecipientSnapshot,
    branding: AgencyBranding,
    template=TemplateName.MODERN,
    logo: Optional[bytes] = None,
) -> List[Page]:
    """Pure layout: the quote as positioned drawing operations, page by page."""
    style = TEMPLATE_LAYOUTS[resolve_template(template)]
    currency = quote.get("currency", "ILS")
    if _register_custom_font():
        style = style._replace(font=CUSTOM_FONT_NAME, bold=CUSTOM_FONT_NAME)
        symbol = currency_symbol(currency)
    else:
        symbol = pdf_currency_label(currency)
        if needs_unicode_font(_quote_texts(quote, recipient, branding)):
            logger.warning(
                f"[PDF] Quote {quote.get('quote_number')} has non-Latin text but PDF_FONT_PATH is not set: "
                f"those glyphs will not render"
            )

    def money(minor: int) -> str:
        return format_amount(minor, currency, symbol=symbol)

    accent = branding.pdf_color if is_valid_hex_color(branding.pdf_color) else DEFAULT_PDF_COLOR
    cursor = _PageCursor(style, accent)

    # 1. branding header
    style.header(cursor, branding, logo)

    # 2. quote number + issue date
    cursor.add(TextOp(ML, cursor.y, f"QUOTE {quote['quote_number']}", cursor.bold, 13, cursor.accent,
                      role="quote_number"))
    cursor.add(TextOp(MR, cursor.y, f"Date: {format_date(quote.get('created_at'))}", cursor.font, 9.5,
                      align="right"))
    cursor.y -= 8

    # 3-4. title + description
    cursor.y -= 8
    cursor.paragraph(quote["title"], cursor.bold, 16, leading=20)
    if quote.get("description"):
        cursor.y -= 4
        cursor.paragraph(quote["description"], cursor.font, 10, GRAY)

    # 5. recipient
    cursor.heading("Prepared for")
    for line in (recipient.name, recipient.company, recipient.email, recipient.phone):
        if line:
            cursor.paragraph(line, cursor.font, 10)

    # 6. validity (prominent)
    cursor.ensure(36)
    cursor.y -= 28
    cursor.add(RectOp(ML, cursor.y - 6, UW, 22, stroke=cursor.accent))
    cursor.add(TextOp(ML + 8, cursor.y + 1, f"Valid until: {format_date(quote['valid_until'])}",
                      cursor.bold, 11, cursor.accent, role="valid_until"))
    cursor.y -= 24

    # 7-8. items + totals
    _items_table(cursor, quote, money)
    _totals_block(cursor, quote, money)

    # 9-10. notes, terms
    if quote.get("notes"):
        cursor.heading("Notes")
        cursor.paragraph(quote["notes"], cursor.font, 9.5)
    if quote.get("terms"):
        cursor.heading("Terms & conditions")
        cursor.paragraph(quote["terms"], cursor.font, 8.5, GRAY)

    # 11. acceptance
    if quote.get("status") == QuoteStatus.APPROVED.value and quote.get("signature"):
        _acceptance_block(cursor, quote, recipient)

    # 12. footer
    _footer(cursor.pages, branding, cursor.font, quote["quote_number"])
    return cursor.pages


# ════════════════════════════════════════════════════════════════════════════
# PAINT
# ════════════════════════════════════════════════════════════════════════════

def paint_pages(pages: List[Page], title: str = "Quote") -> bytes:
    buffer = io.BytesIO()
    c = canvas.Canvas(buffer, pagesize=A4)
    c.setTitle(title)
    for page in pages:
        for op in page.ops:
            if isinstance(op, RectOp):
                if op.fill:
                    c.setFillColor(HexColor(op.fill))
                if op.stroke:
                    c.setStrokeColor(HexColor(op.stroke))
                c.rect(op.x, op.y, op.width, op.height, fill=1 if op.fill else 0, stroke=1 if op.stroke else 0)
            elif isinstance(op, LineOp):
                c.setStrokeColor(HexColor(op.color))
                c.setLineWidth(op.width)
                c.line(op.x1, op.y1, op.x2, op.y2)
            elif isinstance(op, TextOp):
                c.setFont(op.font, op.size)
                c.setFillColor(HexColor(op.color))
                if op.align == "right":
                    c.drawRightString(op.x, op.y, op.text)
                elif op.align == "center":
                    c.drawCentredString(op.x, op.y, op.text)
                else:
                    c.drawString(op.x, op.y, op.text)
            elif isinstance(op, ImageOp):
                image = ImageReader(io.BytesIO(op.data))
                c.drawImage(image, op.x, op.y, width=op.width, height=op.height,
                            preserveAspectRatio=True, mask="auto")
        c.showPage()
    c.save()
    return buffer.getvalue()


def render_quote_pdf(
    quote: dict,
    branding: AgencyBranding,
    logo: Optional[bytes] = None,
) -> bytes:
    """Full render. Any failure becomes RenderError (never partial bytes)."""
    if logo:
        try:
            ImageReader(io.BytesIO(logo)).getSize()
        except Exception as e:
            logger.warning(f"[PDF] Logo ignored for quote {quote.get('id')}: {e}")
            logo = None
    try:
        recipient = RecipientSnapshot(**(quote.get("recipient") or {}))
        pages = layout_quote(quote, recipient, branding, branding.pdf_template, logo)
        pdf = paint_pages(pages, title=f"Quote {quote['quote_number']}")
    except Exception as e:
        logger.exception(f"[PDF] Render failed for quote {quote.get('id')}")
        raise RenderError(f"Could not render quote PDF: {e}", quote_id=quote.get("id")) from e
    logger.info(f"[PDF] Rendered {quote['quote_number']} | pages={len(pages)} bytes={len(pdf)}")
    return pdf
