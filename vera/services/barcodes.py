"""
Ticket barcode rendering
"""

import logging
from io import BytesIO

import qrcode
from qrcode.constants import ERROR_CORRECT_M

logger = logging.getLogger(__name__)


def render_barcode_png(barcode_value: str, box_size: int = 10, border: int = 4) -> bytes:
    """Render a ticket's barcode value as a QR code PNG"""
    try:
        qr = qrcode.QRCode(
            version=None,
            error_correction=ERROR_CORRECT_M,
            box_size=box_size,
            border=border,
        )
        qr.add_data(barcode_value)
        qr.make(fit=True)

        img = qr.make_image(fill_color="black", back_color="white")
        buffer = BytesIO()
        img.save(buffer, format="PNG")
        return buffer.getvalue()
    except Exception as e:
        logger.error(f"Error generating ticket barcode: {e}")
        raise
