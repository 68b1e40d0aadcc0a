"""
AgencyDesk CRM - Signature capture

Server-side model of the approval page's drawing pad:
  - pointer input (mouse OR touch) normalized to one PointerEvent
  - a stroke state machine: idle -> drawing -> idle
  - rasterization to a PNG data URI (transparent background, black round strokes)

Also the checks the approval endpoint runs on a submitted signature:
decode_signature() and is_blank_signature().
"""

import base64
import binascii
import io
import logging
from typing import List, NamedTuple, Tuple

from PIL import Image, ImageChops, ImageDraw, UnidentifiedImageError

from config import MAX_SIGNATURE_BYTES
from services.quote_errors import EmptySignatureError

logger = logging.getLogger("signature_pad")

ACCEPTED_MIME_TYPES = ("image/png", "image/jpeg")
STROKE_WIDTH = 3


class PointerEvent(NamedTuple):
    """Position in canvas pixels, whatever the input device."""
    x: float
    y: float
    pressure: float = 0.5


class CanvasRect(NamedTuple):
    """On-screen bounding box of the canvas (getBoundingClientRect)."""
    left: float
    top: float
    width: float
    height: float


def _to_canvas(x: float, y: float, rect: CanvasRect, size: Tuple[int, int]) -> Tuple[float, float]:
    # The canvas may be displayed scaled: map CSS pixels to canvas pixels
    scale_x = size[0] / rect.width if rect.width else 1
    scale_y = size[1] / rect.height if rect.height else 1
    return (x - rect.left) * scale_x, (y - rect.top) * scale_y


def from_mouse(client_x: float, client_y: float, rect: CanvasRect, size: Tuple[int, int] = (400, 200)) -> PointerEvent:
    x, y = _to_canvas(client_x, client_y, rect, size)
    return PointerEvent(x, y)


def from_touch(touch_x: float, touch_y: float, rect: CanvasRect, size: Tuple[int, int] = (400, 200),
               force: float = None) -> PointerEvent:
    x, y = _to_canvas(touch_x, touch_y, rect, size)
    return PointerEvent(x, y, force if force else 0.5)


class SignaturePad:
    IDLE = "idle"
    DRAWING = "drawing"

    def __init__(self, width: int = 400, height: int = 200):
        self.width = width
        self.height = height
        self.state = self.IDLE
        self.strokes: List[List[PointerEvent]] = []

    @property
    def size(self) -> Tuple[int, int]:
        return self.width, self.height

    @property
    def is_empty(self) -> bool:
        return not any(self.strokes)

    def start_stroke(self, point: PointerEvent):
        self.strokes.append([point])
        self.state = self.DRAWING

    def continue_stroke(self, point: PointerEvent):
        # A move without a press (hover) draws nothing
        if self.state != self.DRAWING:
            return
        self.strokes[-1].append(point)

    def end_stroke(self):
        self.state = self.IDLE

    def clear(self):
        self.strokes = []
        self.state = self.IDLE

    def render(self) -> Image.Image:
        image = Image.new("RGBA", self.size, (0, 0, 0, 0))
        draw = ImageDraw.Draw(image)
        for stroke in self.strokes:
            points = [(p.x, p.y) for p in stroke]
            if len(points) == 1:
                x, y = points[0]
                r = STROKE_WIDTH / 2
                draw.ellipse((x - r, y - r, x + r, y + r), fill=(0, 0, 0, 255))
            else:
                draw.line(points, fill=(0, 0, 0, 255), width=STROKE_WIDTH, joint="curve")
        return image

    def export(self) -> str:
        """PNG data URI of the drawing. An untouched pad cannot be exported."""
        if self.is_empty:
            raise EmptySignatureError("Please sign before approving")
        buffer = io.BytesIO()
        self.render().save(buffer, format="PNG")
        return "data:image/png;base64," + base64.b64encode(buffer.getvalue()).decode("ascii")


# ════════════════════════════════════════════════════════════════════════════
# SUBMITTED SIGNATURE CHECKS
# ════════════════════════════════════════════════════════════════════════════

def decode_signature(data_uri: str) -> Image.Image:
    """Decode a PNG/JPEG data URI. Anything else is an EmptySignatureError."""
    if not data_uri or not isinstance(data_uri, str) or not data_uri.startswith("data:"):
        raise EmptySignatureError("Signature is missing")
    header, _, payload = data_uri.partition(",")
    mime = header[5:].split(";")[0].lower()
    if mime not in ACCEPTED_MIME_TYPES or ";base64" not in header:
        raise EmptySignatureError(f"Unsupported signature format: {mime or 'unknown'}")
    if len(payload) > MAX_SIGNATURE_BYTES * 4 // 3 + 4:
        raise EmptySignatureError("Signature image is too large")
    try:
        raw = base64.b64decode(payload, validate=True)
        image = Image.open(io.BytesIO(raw))
        image.load()
    except (binascii.Error, ValueError, UnidentifiedImageError, OSError) as e:
        raise EmptySignatureError(f"Signature image could not be read: {e}")
    return image


def is_blank_signature(data_uri: str) -> bool:
    """True when no pixel differs from the background (transparent or white)."""
    image = decode_signature(data_uri).convert("RGBA")
    # Flatten on white so transparent and white backgrounds look the same
    background = Image.new("RGBA", image.size, (255, 255, 255, 255))
    flattened = Image.alpha_composite(background, image).convert("L")
    inked = ImageChops.invert(flattened).point(lambda value: 255 if value > 16 else 0)
    return inked.getbbox() is None


def validate_signature(data_uri: str) -> str:
    """Used before an approval: the signature must contain drawn content."""
    if is_blank_signature(data_uri):
        logger.info("[SIGNATURE] Blank signature refused")
        raise EmptySignatureError("Please sign before approving")
    return data_uri
