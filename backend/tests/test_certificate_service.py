"""
Certificate of Signature rendering.
"""
import io

from PIL import Image

from models import SignatureRecord
from services.certificate_service import certificate_filename, format_signed_at, render_certificate
from services.signature_capture import encode_png_data_url


def _record():
    buf = io.BytesIO()
    Image.new("RGBA", (40, 20), (0, 0, 0, 255)).save(buf, format="PNG")
    return SignatureRecord(
        signer="smith@evans-portal.com",
        signed_at="2024-03-01T12:00:00+00:00",
        image=encode_png_data_url(buf.getvalue()),
        doc_name="Deck Quote",
        doc_id="1700000000000-abcdef12",
    )


def test_certificate_is_a_pdf():
    pdf = render_certificate("smith@evans-portal.com", _record())
    assert pdf.startswith(b"%PDF")


def test_certificate_is_byte_identical_across_renders():
    record = _record()
    assert render_certificate("smith@evans-portal.com", record) == render_certificate(
        "smith@evans-portal.com", record
    )


def test_filename_uses_signer_local_part_and_doc_name():
    assert certificate_filename("smith@evans-portal.com", "Deck Quote") == "Certificate_smith_Deck_Quote.pdf"


def test_signed_at_is_localized():
    # Europe/Paris is UTC+1 in March
    assert format_signed_at("2024-03-01T12:00:00+00:00") == "01/03/2024 13:00:00"
    assert format_signed_at("not a date") == "Unknown"
