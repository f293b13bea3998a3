# app/attendance/tools/qr_verifier.py

import base64
import io
import json
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

import qrcode

from ..db.db_client import AsyncPostgresClient
from ..models.db_models import SessionQRToken

QR_INVALID = "QR invalid."
QR_EXPIRED = "QR expired."


@dataclass
class TokenCheck:
    valid: bool
    reason: Optional[str] = None


async def validate_qr_token(db_client: AsyncPostgresClient, session_id: UUID, token: str, now: datetime) -> TokenCheck:
    """
    Checks a submitted QR token against the tokens issued for this session.

    The token is not consumed: every student scanning the same code inside its
    window gets a valid result. Duplicate attendance is prevented by the
    attendance record constraint, not here.
    """
    stored = await db_client.get_qr_token(session_id, token)
    if stored is None:
        return TokenCheck(valid=False, reason=QR_INVALID)
    if now > stored.valid_until:
        return TokenCheck(valid=False, reason=QR_EXPIRED)
    return TokenCheck(valid=True)


def new_qr_token(session_id: UUID, now: datetime, valid_for: timedelta) -> SessionQRToken:
    """A fresh 256-bit token valid from `now` for `valid_for`."""
    return SessionQRToken(
        token=secrets.token_hex(32),
        session_id=session_id,
        valid_from=now,
        valid_until=now + valid_for,
    )


def qr_payload(token: SessionQRToken) -> str:
    """The string encoded in the QR image. Only `token` and `sessionId` matter to verification."""
    return json.dumps({
        "token": token.token,
        "sessionId": str(token.session_id),
        "timestamp": int(token.valid_from.timestamp() * 1000),
    })


def render_qr_data_url(token: SessionQRToken) -> str:
    """Renders the QR payload as a PNG data URL for direct use in an <img> tag."""
    qr = qrcode.QRCode(border=2, box_size=10)
    qr.add_data(qr_payload(token))
    qr.make(fit=True)
    image = qr.make_image(fill_color="black", back_color="white")

    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    encoded = base64.b64encode(buffer.getvalue()).decode("ascii")
    return f"data:image/png;base64,{encoded}"
