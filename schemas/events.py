from typing import Annotated, Literal, Optional, Union

from pydantic import Field, TypeAdapter

from schemas.sessions import CamelModel


class CreateSessionEvent(CamelModel):
    type: Literal["create-session"]
    role: Optional[str] = None
    server_url: Optional[str] = None

class JoinSessionEvent(CamelModel):
    type: Literal["join-session"]
    session_id: str
    role: Optional[str] = None

class FileMetaEvent(CamelModel):
    type: Literal["file-meta"]
    session_id: str
    file_name: str
    file_size: int
    file_type: Optional[str] = None

class FileChunkEvent(CamelModel):
    type: Literal["file-chunk"]
    session_id: str
    file_name: str
    chunk: str = ""  # base64
    is_last: bool = False
    index: Optional[int] = None

class FileReceivedEvent(CamelModel):
    type: Literal["file-received"]
    session_id: str
    file_name: str


InboundEvent = Annotated[
    Union[CreateSessionEvent, JoinSessionEvent, FileMetaEvent, FileChunkEvent, FileReceivedEvent],
    Field(discriminator="type"),
]

inbound_event_adapter = TypeAdapter(InboundEvent)
