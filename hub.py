import base64
import binascii
import json
import uuid
from dataclasses import dataclass
from typing import Dict, Optional

import redis
from pydantic import ValidationError

from constants import MAX_FILE_SIZE
from errors import ChannelError, InvalidMessage, PairingRejected, RelayError
from logging_config import get_logger
from registry import SessionRegistry
from relay import ChunkRelay, TransferMetadata, TransferMetadataStore
from rendezvous import Connection, PairingRendezvous
from schemas.events import (
    CreateSessionEvent,
    FileChunkEvent,
    FileMetaEvent,
    FileReceivedEvent,
    JoinSessionEvent,
    inbound_event_adapter,
)
from storage import FileStorage

logger = get_logger(__name__)


@dataclass
class _Spool:
    transfer_id: str
    session_id: str
    busy: bool = False
    aborted: bool = False


class SessionHub:
    """Owns every piece of relay state for one process.

    Each inbound event mutates rooms and transfer metadata synchronously
    before the first await, so events are applied one at a time.
    """

    def __init__(self, registry: SessionRegistry, storage: Optional[FileStorage] = None,
                 max_file_size: int = MAX_FILE_SIZE):
        self.registry = registry
        self.rendezvous = PairingRendezvous()
        self.store = TransferMetadataStore()
        self.relay = ChunkRelay(self.rendezvous, self.store, max_file_size=max_file_size)
        self.storage = storage
        self.connections: Dict[str, Connection] = {}
        # {transfer_id: _Spool} for transfers being written to storage
        self._spools: Dict[str, _Spool] = {}

    def connect(self, server_url: Optional[str] = None) -> Connection:
        connection = Connection(connection_id=str(uuid.uuid4()), server_url=server_url)
        self.connections[connection.connection_id] = connection
        logger.info(f"Connection {connection.connection_id} attached ({len(self.connections)} active)")
        return connection

    def disconnect(self, connection: Connection):
        if self.connections.pop(connection.connection_id, None) is None:
            return
        session_id = connection.session_id
        self.rendezvous.leave(connection)
        if session_id is not None:
            # the transfer cannot complete without both peers
            metadata = self.relay.abort(session_id)
            if metadata is not None:
                self._abort_spool(metadata.transfer_id)
        connection.close()
        logger.info(f"Connection {connection.connection_id} detached ({len(self.connections)} active)")

    async def handle(self, connection: Connection, raw: str):
        try:
            try:
                event = inbound_event_adapter.validate_python(json.loads(raw))
            except (json.JSONDecodeError, ValidationError) as e:
                raise InvalidMessage(f"Malformed event: {e}") from e
            await self.dispatch(connection, event)
        except RelayError as e:
            logger.warning(f"Rejected event from {connection.connection_id}: [{e.code}] {e.message}")
            connection.send(e.to_message())
        except redis.RedisError as e:
            logger.error(f"Session store error while handling event from {connection.connection_id}: {e}", exc_info=True)
            connection.send(ChannelError("Session store unavailable, try again").to_message())
        except Exception as e:
            logger.error(f"Error handling event from {connection.connection_id}: {e}", exc_info=True)
            connection.send(ChannelError("Relay failed to process the event").to_message())

    async def dispatch(self, connection: Connection, event):
        if isinstance(event, CreateSessionEvent):
            self.create_session(connection, event)
        elif isinstance(event, JoinSessionEvent):
            self.join_session(connection, event)
        elif isinstance(event, FileMetaEvent):
            metadata = self.relay.announce(connection, event.session_id, event.file_name, event.file_type,
                                           event.file_size)
            await self._spool(connection, metadata, start=True)
        elif isinstance(event, FileChunkEvent):
            try:
                payload = base64.b64decode(event.chunk, validate=True)
            except (binascii.Error, ValueError) as e:
                raise InvalidMessage(f"Chunk is not valid base64: {e}") from e
            current = self.store.get(event.session_id)
            try:
                metadata = self.relay.relay_chunk(connection, event.session_id, event.file_name, payload,
                                                  event.is_last, event.index)
            except RelayError:
                if current is not None and self.store.get(event.session_id) is not current:
                    # the relay dropped the transfer
                    self._abort_spool(current.transfer_id)
                raise
            await self._spool(connection, metadata, data=payload, finish=event.is_last)
        elif isinstance(event, FileReceivedEvent):
            self.relay.acknowledge(connection, event.session_id, event.file_name)

    def create_session(self, connection: Connection, event: CreateSessionEvent):
        if connection.session_id is not None:
            # checked up front so a rejected create does not mint an orphan session
            raise PairingRejected(f"Connection already joined session {connection.session_id}")
        connection.device = event.role or "mobile"
        server_url = event.server_url or connection.server_url or "http://localhost:8000"
        session = self.registry.create_session(server_url)
        self.rendezvous.join(connection, session.id)
        connection.send({
            "type": "session-created",
            "sessionId": session.id,
            "joinPayload": session.join_payload,
            "qrCode": session.qr_code,
        })

    def join_session(self, connection: Connection, event: JoinSessionEvent):
        self.registry.lookup_session(event.session_id)
        if connection.session_id is None:
            connection.device = event.role or "web"
        self.rendezvous.join(connection, event.session_id)

    def _abort_spool(self, transfer_id: str):
        spool = self._spools.get(transfer_id)
        if spool is None:
            return
        spool.aborted = True
        # a write still running in the executor discards the file when it returns
        if not spool.busy:
            self._spools.pop(transfer_id, None)
            self.storage.discard(transfer_id)

    async def _spool(self, connection: Connection, metadata: TransferMetadata, data: Optional[bytes] = None,
                     start: bool = False, finish: bool = False):
        if self.storage is None:
            return
        transfer_id = metadata.transfer_id
        if start:
            self._spools[transfer_id] = _Spool(transfer_id=transfer_id, session_id=metadata.session_id)
        spool = self._spools.get(transfer_id)
        if spool is None or spool.aborted:
            return

        spool.busy = True
        try:
            if start:
                await self.storage.start(transfer_id)
            if data and not spool.aborted:
                await self.storage.append(transfer_id, data)
            if finish and not spool.aborted:
                stored_name = await self.storage.finalize(transfer_id, metadata.file_name)
                self._spools.pop(transfer_id, None)
                notice = {"type": "file-stored", "fileName": metadata.file_name, "storedName": stored_name,
                          "url": f"/files/{stored_name}"}
                for member in self.rendezvous.members(metadata.session_id):
                    member.send(notice)
        except RelayError as e:
            spool.aborted = True
            connection.send(e.to_message())
        finally:
            spool.busy = False
            if spool.aborted:
                self._spools.pop(transfer_id, None)
                self.storage.discard(transfer_id)
