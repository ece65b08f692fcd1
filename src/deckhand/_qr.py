"""Terminal rendering of provisioning QR payloads.

``qrcode`` is imported lazily so that headless deployments never pay
for it unless ``--show-qr`` is used.
"""

from __future__ import annotations

import io


def render_qr(payload: str) -> str:
    """Return *payload* as an ASCII-art QR code.

    Raises:
        RuntimeError: If the ``qrcode`` package is not installed.
    """
    try:
        import qrcode  # noqa: PLC0415
    except ModuleNotFoundError as exc:
        msg = "qrcode is required to render provisioning QR codes"
        raise RuntimeError(msg) from exc

    qr = qrcode.QRCode(border=1, error_correction=qrcode.constants.ERROR_CORRECT_M)
    qr.add_data(payload)
    qr.make(fit=True)
    out = io.StringIO()
    qr.print_ascii(out=out, invert=True)
    return out.getvalue()
