from fastapi import APIRouter, HTTPException, Request

from constants import PUBLIC_URL
from errors import SessionNotFound
from logging_config import get_logger
from schemas.sessions import SessionCreatedResponse, SessionRecordResponse

logger = get_logger(__name__)

sessions_router = APIRouter(prefix="/session", tags=["session"])


def public_server_url(request: Request) -> str:
    return PUBLIC_URL or str(request.base_url).rstrip('/')


@sessions_router.get("", response_model=SessionCreatedResponse)
async def create_session(request: Request):
    # Response 200: { "sessionId": "...", "joinPayload": { "type": "connect", "sessionId": "...", "serverUrl": "http://host:8000" }, "qrCode": "data:image/png;base64,..." }
    client_host = request.client.host if request.client else 'unknown'
    logger.info(f"Session creation request from {client_host}")
    registry = request.app.state.hub.registry
    try:
        session = registry.create_session(public_server_url(request))
    except Exception as e:
        logger.error(f"Error creating session: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to create session")
    return SessionCreatedResponse(
        session_id=session.id,
        join_payload=session.join_payload,
        qr_code=session.qr_code,
    )


@sessions_router.get("/{session_id}", response_model=SessionRecordResponse)
async def get_session(session_id: str, request: Request):
    registry = request.app.state.hub.registry
    try:
        session = registry.lookup_session(session_id)
    except SessionNotFound:
        logger.warning(f"Session lookup failed: {session_id} not found")
        raise HTTPException(status_code=404, detail="Session not found")
    return SessionRecordResponse(
        id=session.id,
        created_at=session.created_at,
        join_payload=session.join_payload,
        qr_code=session.qr_code,
    )
