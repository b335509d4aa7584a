"""Rendering of pairing artifacts for display.

Scannable codes become PNG data URLs (for browsers) or Unicode block
art (for terminals). Textual pairing codes are grouped for readability.
"""

import base64
import io

import qrcode
from qrcode.main import QRCode

from devlink.formatting import format_pairing_code


def _create_qr(value: str) -> QRCode:
    """Create QR code object for a raw artifact value."""
    qr = qrcode.QRCode(
        version=None,  # Auto-size
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=10,
        border=4,
    )
    qr.add_data(value)
    qr.make(fit=True)
    return qr


def qr_to_data_url(value: str) -> str:
    """Render a scannable-code value as a PNG data URL.

    Args:
        value: Raw QR payload from the protocol client.

    Returns:
        "data:image/png;base64,..." string suitable for an <img> src.
    """
    img = _create_qr(value).make_image(fill_color="black", back_color="white")

    buffer = io.BytesIO()
    img.save(buffer, format="PNG")
    img_b64 = base64.b64encode(buffer.getvalue()).decode("ascii")
    return f"data:image/png;base64,{img_b64}"


def qr_to_terminal(value: str) -> str:
    """Render a scannable-code value as ASCII art."""
    output = io.StringIO()
    _create_qr(value).print_ascii(out=output, invert=True)
    return output.getvalue()


def render_artifact(kind: str, value: str, group_size: int = 4) -> str:
    """Render an artifact into its display payload.

    Args:
        kind: "qr" or "code".
        value: Raw artifact value.
        group_size: Grouping for pairing codes.

    Returns:
        Display-ready payload.

    Raises:
        ValueError: If kind is unknown or value is empty.
    """
    if not value:
        raise ValueError("Empty artifact")
    if kind == "qr":
        return qr_to_data_url(value)
    if kind == "code":
        return format_pairing_code(value, group_size)
    raise ValueError(f"Unknown artifact kind: {kind}")
