from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from typing import Optional


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class JoinPayload(CamelModel):
    type: str = "connect"
    session_id: str
    server_url: str

class SessionCreatedResponse(CamelModel):
    session_id: str
    join_payload: JoinPayload
    qr_code: Optional[str] = None

class SessionRecordResponse(CamelModel):
    id: str
    created_at: str
    join_payload: JoinPayload
    qr_code: Optional[str] = None
