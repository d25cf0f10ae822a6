# pdfforge/qr.py
import base64
from io import BytesIO

import qrcode
from PIL import Image


def qr_png(text: str, size: int = 300, border: int = 2) -> bytes:
    """Square PNG QR code with medium error correction."""
    qr = qrcode.QRCode(
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=10,
        border=border,
    )
    qr.add_data(text)
    qr.make(fit=True)

    img = qr.make_image(fill_color="black", back_color="white").resize(
        (size, size), Image.Resampling.NEAREST
    )
    output = BytesIO()
    img.save(output, format="PNG")
    return output.getvalue()


def qr_data_url(text: str, size: int = 300) -> str:
    return "data:image/png;base64," + base64.b64encode(qr_png(text, size=size)).decode("ascii")
