import base64
import uuid
from dataclasses import dataclass, field
from typing import Dict, Optional

from constants import DEFAULT_FILE_TYPE, MAX_FILE_SIZE
from errors import InvalidMessage, NotPaired, OversizeFile, TransferInProgress, TransferNotFound
from logging_config import get_logger
from rendezvous import Connection, PairingRendezvous

logger = get_logger(__name__)


@dataclass
class TransferMetadata:
    session_id: str
    file_name: str
    file_type: str
    total_size: int
    sender_id: str
    bytes_relayed: int = 0
    next_index: int = 0
    transfer_id: str = field(default_factory=lambda: uuid.uuid4().hex)


class TransferMetadataStore:
    """At most one in-flight transfer per session."""

    def __init__(self):
        self._transfers: Dict[str, TransferMetadata] = {}

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._transfers

    def __len__(self):
        return len(self._transfers)

    def get(self, session_id: str) -> Optional[TransferMetadata]:
        return self._transfers.get(session_id)

    def begin(self, metadata: TransferMetadata) -> TransferMetadata:
        current = self._transfers.get(metadata.session_id)
        if current is not None:
            raise TransferInProgress(
                f"Transfer of {current.file_name} is still in progress for session {metadata.session_id}"
            )
        self._transfers[metadata.session_id] = metadata
        return metadata

    def require(self, session_id: str) -> TransferMetadata:
        metadata = self._transfers.get(session_id)
        if metadata is None:
            raise TransferNotFound(f"No transfer announced for session {session_id}")
        return metadata

    def complete(self, session_id: str) -> Optional[TransferMetadata]:
        return self._transfers.pop(session_id, None)

    discard = complete


class ChunkRelay:
    def __init__(self, rendezvous: PairingRendezvous, store: Optional[TransferMetadataStore] = None,
                 max_file_size: int = MAX_FILE_SIZE):
        self.rendezvous = rendezvous
        self.store = store if store is not None else TransferMetadataStore()
        self.max_file_size = max_file_size

    def _peer_for(self, sender: Connection, session_id: str) -> Connection:
        if sender.session_id != session_id:
            raise InvalidMessage(f"Connection is not a member of session {session_id}")
        peer = self.rendezvous.peer_of(sender)
        if peer is None:
            raise NotPaired(f"Session {session_id} has no paired peer")
        return peer

    def announce(self, sender: Connection, session_id: str, file_name: str, file_type: Optional[str],
                 total_size: int) -> TransferMetadata:
        peer = self._peer_for(sender, session_id)
        if total_size < 0:
            raise InvalidMessage(f"Invalid file size {total_size}")
        if total_size > self.max_file_size:
            logger.warning(f"Rejected {file_name} ({total_size} bytes) in session {session_id}: limit is {self.max_file_size}")
            raise OversizeFile(f"File {file_name} is {total_size} bytes, maximum is {self.max_file_size}")

        metadata = self.store.begin(TransferMetadata(
            session_id=session_id,
            file_name=file_name,
            file_type=file_type or DEFAULT_FILE_TYPE,
            total_size=total_size,
            sender_id=sender.connection_id,
        ))
        peer.send({
            "type": "file-incoming",
            "fileName": file_name,
            "fileSize": total_size,
            "fileType": metadata.file_type,
            "from": sender.device,
        })
        logger.info(f"File {file_name} ({total_size} bytes) announced in session {session_id} by {sender.connection_id}")
        return metadata

    def relay_chunk(self, sender: Connection, session_id: str, file_name: str, payload: bytes, is_last: bool,
                    index: Optional[int] = None) -> TransferMetadata:
        peer = self._peer_for(sender, session_id)
        metadata = self.store.require(session_id)
        if metadata.sender_id != sender.connection_id:
            raise TransferInProgress(f"Session {session_id} is receiving {metadata.file_name} from the other peer")
        if file_name != metadata.file_name:
            raise InvalidMessage(f"Chunk for {file_name} does not match announced file {metadata.file_name}")
        if index is not None and index != metadata.next_index:
            raise InvalidMessage(f"Chunk {index} out of order, expected {metadata.next_index}")

        if metadata.bytes_relayed + len(payload) > metadata.total_size:
            self.store.discard(session_id)
            peer.send({"type": "file-error", "fileName": file_name, "message": "Transfer aborted: file exceeds announced size"})
            raise OversizeFile(f"Chunk exceeds announced size {metadata.total_size} for {file_name}")

        metadata.bytes_relayed += len(payload)
        peer.send({
            "type": "file-chunk",
            "fileName": file_name,
            "chunk": base64.b64encode(payload).decode("ascii"),
            "isLast": is_last,
            "fileType": metadata.file_type,
            "index": metadata.next_index,
        })
        metadata.next_index += 1
        logger.debug(f"Relayed chunk {metadata.next_index - 1} of {file_name} ({len(payload)} bytes) in session {session_id}")

        if is_last:
            self.store.complete(session_id)
            if metadata.bytes_relayed != metadata.total_size:
                logger.warning(
                    f"Transfer of {file_name} in session {session_id} finished with {metadata.bytes_relayed} bytes, "
                    f"announced {metadata.total_size}"
                )
            logger.info(f"Transfer of {file_name} completed in session {session_id} after {metadata.next_index} chunks")
        return metadata

    def acknowledge(self, sender: Connection, session_id: str, file_name: str):
        peer = self._peer_for(sender, session_id)
        peer.send({"type": "file-sent", "fileName": file_name})
        logger.info(f"Receipt of {file_name} acknowledged in session {session_id}")

    def abort(self, session_id: str) -> Optional[TransferMetadata]:
        metadata = self.store.discard(session_id)
        if metadata is not None:
            logger.info(f"Dropped in-flight transfer of {metadata.file_name} for session {session_id}")
        return metadata
