import base64
import io

import qrcode
from qrcode.constants import ERROR_CORRECT_Q


def render_png(payload: str, *, box_size: int = 10, border: int = 4) -> bytes:
    qr = qrcode.QRCode(error_correction=ERROR_CORRECT_Q, box_size=box_size, border=border)
    qr.add_data(payload)
    qr.make(fit=True)
    img = qr.make_image()
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def render_base64(payload: str) -> str:
    return base64.b64encode(render_png(payload)).decode("utf-8")
