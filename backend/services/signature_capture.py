"""
Signature Capture - drawing surfaces and the sign transition.

A capture is opened for one pending request, collects freehand strokes (or
receives a raster drawn in the browser) and is committed exactly once.
Commit appends the SignatureRecord to the client's history and removes the
request from the pending set in a single store update. If that write fails
the surface stays open with its image, ready for an immediate retry.
"""
import base64
import binascii
import io
import logging
from datetime import datetime, timezone
from typing import List, Optional, Sequence, Tuple

from PIL import Image, ImageDraw, ImageOps, UnidentifiedImageError

from models import ClientRecord, SignatureRecord, SignatureRequest
from services.client_records import client_records
from services.portal_errors import EmptyInputError, ValidationError

logger = logging.getLogger(__name__)

CANVAS_SIZE = (500, 200)
STROKE_WIDTH = 3
MAX_IMAGE_BYTES = 2 * 1024 * 1024
PNG_DATA_URL_PREFIX = "data:image/png;base64,"

Point = Tuple[float, float]


def encode_png_data_url(png_bytes: bytes) -> str:
    return PNG_DATA_URL_PREFIX + base64.b64encode(png_bytes).decode("ascii")


def decode_image_data_url(data_url: str) -> bytes:
    """Raw image bytes from a `data:image/...;base64,` URL (or bare base64)."""
    payload = (data_url or "").strip()
    if payload.startswith("data:"):
        header, _, payload = payload.partition(",")
        if ";base64" not in header:
            raise ValidationError("Signature image must be base64 encoded")
    try:
        raw = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError):
        raise ValidationError("Signature image is not valid base64")
    if len(raw) > MAX_IMAGE_BYTES:
        raise ValidationError("Signature image is too large")
    return raw


def load_raster(raw: bytes) -> Image.Image:
    try:
        img = Image.open(io.BytesIO(raw))
        img.load()
    except (UnidentifiedImageError, OSError):
        raise ValidationError("Signature image could not be read")
    return img.convert("RGBA")


def raster_is_blank(img: Image.Image) -> bool:
    """True when nothing but transparent or white pixels were drawn."""
    background = Image.new("RGBA", img.size, (255, 255, 255, 255))
    flat = Image.alpha_composite(background, img).convert("L")
    return ImageOps.invert(flat).getbbox() is None


def render_png_from_strokes(
    strokes: Sequence[Sequence[Point]],
    size: Tuple[int, int] = CANVAS_SIZE,
    stroke_width: int = STROKE_WIDTH,
) -> bytes:
    """Convert freehand strokes into a transparent PNG."""
    img = Image.new("RGBA", size, (0, 0, 0, 0))
    drw = ImageDraw.Draw(img)
    radius = max(1, stroke_width // 2)
    for poly in strokes:
        points = [(float(x), float(y)) for x, y in poly]
        if len(points) >= 2:
            drw.line(points, fill=(0, 0, 0, 255), width=stroke_width, joint="curve")
        elif len(points) == 1:
            x, y = points[0]
            drw.ellipse((x - radius, y - radius, x + radius, y + radius), fill=(0, 0, 0, 255))
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


class CaptureSurface:
    """A drawing surface scoped to one pending request."""

    def __init__(self, request: SignatureRequest, size: Tuple[int, int] = CANVAS_SIZE):
        self.request = request
        self.size = size
        self.strokes: List[List[Point]] = []
        self.image: Optional[str] = None  # Last committed-or-attempted image, kept for retry
        self.closed = False

    @property
    def has_strokes(self) -> bool:
        return any(len(stroke) > 0 for stroke in self.strokes)

    def add_strokes(self, strokes: Sequence[Sequence[Point]]) -> None:
        self._ensure_open()
        width, height = self.size
        for stroke in strokes:
            clipped = [
                (min(max(float(x), 0.0), width), min(max(float(y), 0.0), height))
                for x, y in stroke
            ]
            if clipped:
                self.strokes.append(clipped)
        self.image = None

    def clear(self) -> None:
        self._ensure_open()
        self.strokes = []
        self.image = None

    def cancel(self) -> None:
        self.strokes = []
        self.image = None
        self.closed = True

    def rasterize(self, raster_image: Optional[str] = None) -> str:
        """The PNG data URL to commit; EmptyInputError when nothing was drawn."""
        if raster_image:
            img = load_raster(decode_image_data_url(raster_image))
            if raster_is_blank(img):
                raise EmptyInputError("Please sign before confirming")
            buf = io.BytesIO()
            img.save(buf, format="PNG")
            return encode_png_data_url(buf.getvalue())
        if self.image:
            return self.image
        if not self.has_strokes:
            raise EmptyInputError("Please sign before confirming")
        return encode_png_data_url(render_png_from_strokes(self.strokes, self.size))

    def _ensure_open(self) -> None:
        if self.closed:
            raise ValidationError("This signature capture is closed")


class SignatureCaptureService:

    def begin_capture(self, request: SignatureRequest) -> CaptureSurface:
        logger.debug(f"Capture opened for request {request.id}")
        return CaptureSurface(request)

    async def commit(
        self,
        client: ClientRecord,
        surface: CaptureSurface,
        signer: str,
        raster_image: Optional[str] = None,
    ) -> Optional[SignatureRecord]:
        """Sign the surface's request.

        Returns the new SignatureRecord, or None when the request had already
        been resolved (signed or cancelled) and nothing was written.
        Raises EmptyInputError before any remote call when nothing was drawn;
        RemoteWriteError leaves the request pending and the surface open.
        """
        surface._ensure_open()
        image = surface.rasterize(raster_image)
        surface.image = image

        request = surface.request
        record = SignatureRecord(
            signer=signer,
            signed_at=datetime.now(timezone.utc).isoformat(),
            image=image,
            doc_name=request.name,
            doc_id=request.id,
        )

        if client.is_legacy_quote(request.id):
            committed = await client_records.commit_legacy_signature(client.client_id, request.id, record)
        else:
            committed = await client_records.commit_signature(client.client_id, request.id, record)

        surface.closed = True
        if not committed:
            logger.info(f"Request {request.id} for {client.client_id} was already resolved; nothing signed")
            return None

        logger.info(f"Request {request.id} ({request.name!r}) signed by {signer}")
        return record


signature_capture = SignatureCaptureService()
