import base64
import json
import uuid
from dataclasses import dataclass
from datetime import datetime
from io import BytesIO
from typing import Optional

import qrcode

from constants import RENDER_QR, SESSION_TTL_SECONDS
from errors import SessionNotFound
from logging_config import get_logger

logger = get_logger(__name__)


def build_join_payload(session_id: str, server_url: str) -> dict:
    return {"type": "connect", "sessionId": session_id, "serverUrl": server_url}


def render_qr_code(data: str) -> str:
    """Render ``data`` as a PNG QR code and return it as a data URL."""
    qr = qrcode.QRCode(
        version=1,
        error_correction=qrcode.constants.ERROR_CORRECT_L,
        box_size=10,
        border=4,
    )
    qr.add_data(data)
    qr.make(fit=True)

    img = qr.make_image(fill_color="black", back_color="white")
    buffered = BytesIO()
    img.save(buffered, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buffered.getvalue()).decode()


@dataclass
class Session:
    id: str
    created_at: str
    join_payload: dict
    qr_code: Optional[str] = None

    def to_record(self) -> dict:
        return {
            "id": self.id,
            "createdAt": self.created_at,
            "joinPayload": self.join_payload,
            "qrCode": self.qr_code,
        }

    @classmethod
    def from_record(cls, record: dict) -> "Session":
        return cls(
            id=record["id"],
            created_at=record.get("createdAt", ""),
            join_payload=record.get("joinPayload", {}),
            qr_code=record.get("qrCode"),
        )


class SessionRegistry:
    def __init__(self, backend, ttl_seconds: int = SESSION_TTL_SECONDS, render_qr: bool = RENDER_QR):
        self.backend = backend
        self.ttl_seconds = ttl_seconds
        self.render_qr = render_qr

    def create_session(self, server_url: str) -> Session:
        session_id = str(uuid.uuid4())
        join_payload = build_join_payload(session_id, server_url)
        qr_code = render_qr_code(json.dumps(join_payload)) if self.render_qr else None
        session = Session(
            id=session_id,
            created_at=datetime.now().isoformat(),
            join_payload=join_payload,
            qr_code=qr_code,
        )
        self.backend.put(session_id, session.to_record(), ttl=self.ttl_seconds)
        logger.info(f"Session {session_id} created for {server_url}, expires in {self.ttl_seconds}s")
        return session

    def lookup_session(self, session_id: str) -> Session:
        record = self.backend.get(session_id)
        if not record:
            logger.debug(f"Session {session_id} not found")
            raise SessionNotFound(f"Session {session_id} not found")
        return Session.from_record(record)
