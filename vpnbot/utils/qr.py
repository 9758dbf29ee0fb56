# vpnbot/utils/qr.py
import io

import segno


def make_qr_png(text: str, scale: int = 8) -> bytes:
    """QR-код (уровень коррекции H) в PNG."""
    qr = segno.make(text, error="h")
    buf = io.BytesIO()
    qr.save(buf, kind="png", scale=scale, border=4)
    return buf.getvalue()
