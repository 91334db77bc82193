"""Certificate of Signature - printable proof for one SignatureRecord.

Rendering is pure: the same record always yields the same PDF bytes
(reportlab invariant mode pins the creation date and document id).
"""
import io
import os
import re
import logging
from datetime import datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from reportlab.lib.colors import HexColor
from reportlab.lib.pagesizes import A4
from reportlab.lib.units import mm
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas

from models import SignatureRecord
from services.signature_capture import decode_image_data_url

logger = logging.getLogger(__name__)

PORTAL_TIMEZONE = os.getenv("PORTAL_TIMEZONE", "Europe/Paris")
SIGNED_AT_FORMAT = "%d/%m/%Y %H:%M:%S"
CERTIFICATE_TITLE = "Certificate of Signature"
ISSUER = "Evans Renovation"

SLATE_900 = HexColor("#0F172A")
SLATE_500 = HexColor("#64748B")
SLATE_300 = HexColor("#CBD5E1")

# Layout (mm from the top-left corner of an A4 page)
TITLE_Y = 20
DOC_NAME_Y = 40
SIGNER_Y = 50
SIGNED_AT_Y = 60
TEXT_X = 20
IMAGE_X, IMAGE_Y = 20, 80
IMAGE_W, IMAGE_H = 80, 40


def _portal_zone():
    try:
        return ZoneInfo(PORTAL_TIMEZONE)
    except ZoneInfoNotFoundError:
        logger.warning(f"Unknown PORTAL_TIMEZONE {PORTAL_TIMEZONE!r}, using UTC")
        return timezone.utc


def format_signed_at(signed_at: str) -> str:
    """Signed-at timestamp in the portal's local time."""
    try:
        moment = datetime.fromisoformat(signed_at.replace("Z", "+00:00"))
    except (AttributeError, ValueError):
        return "Unknown"
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(_portal_zone()).strftime(SIGNED_AT_FORMAT)


def _slug(value: str) -> str:
    return re.sub(r"[^A-Za-z0-9]+", "_", value or "").strip("_")


def certificate_filename(signer: str, doc_name: str) -> str:
    """e.g. ("smith@evans-portal.com", "Deck Quote") -> "Certificate_smith_Deck_Quote.pdf"."""
    local_part = _slug((signer or "").split("@")[0]) or "client"
    return f"Certificate_{local_part}_{_slug(doc_name) or 'Document'}.pdf"


def render_certificate(client_id: str, record: SignatureRecord) -> bytes:
    """Render the certificate PDF for one history entry."""
    page_w, page_h = A4
    buf = io.BytesIO()
    pdf = canvas.Canvas(buf, pagesize=A4, invariant=1)
    pdf.setTitle(f"{CERTIFICATE_TITLE} - {record.doc_name or 'Document'}")
    pdf.setAuthor(ISSUER)
    pdf.setSubject(client_id)

    def top(y_mm: float) -> float:
        return page_h - y_mm * mm

    pdf.setFillColor(SLATE_900)
    pdf.setFont("Helvetica-Bold", 20)
    pdf.drawCentredString(page_w / 2, top(TITLE_Y), CERTIFICATE_TITLE)

    pdf.setFont("Helvetica", 12)
    pdf.drawString(TEXT_X * mm, top(DOC_NAME_Y), f"Document: {record.doc_name or 'Document'}")
    pdf.drawString(TEXT_X * mm, top(SIGNER_Y), f"Signer: {record.signer}")
    pdf.drawString(TEXT_X * mm, top(SIGNED_AT_Y), f"Date: {format_signed_at(record.signed_at)}")

    image = ImageReader(io.BytesIO(decode_image_data_url(record.image)))
    pdf.drawImage(
        image,
        IMAGE_X * mm,
        top(IMAGE_Y + IMAGE_H),
        width=IMAGE_W * mm,
        height=IMAGE_H * mm,
        mask="auto",
    )
    pdf.setStrokeColor(SLATE_300)
    pdf.rect(IMAGE_X * mm, top(IMAGE_Y + IMAGE_H), IMAGE_W * mm, IMAGE_H * mm, stroke=1, fill=0)

    pdf.setFont("Helvetica", 8)
    pdf.setFillColor(SLATE_500)
    reference = record.doc_id or "-"
    pdf.drawString(TEXT_X * mm, 15 * mm, f"Issued by {ISSUER} client portal. Reference: {reference}")

    pdf.showPage()
    pdf.save()
    return buf.getvalue()
