import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from errors import PairingRejected
from logging_config import get_logger

logger = get_logger(__name__)

ROOM_CAPACITY = 2


class PeerRole(str, Enum):
    INITIATOR = "initiator"
    JOINER = "joiner"


@dataclass(eq=False)
class Connection:
    """One attached peer. Outbound messages go through ``outbox``; a writer
    task owned by the transport drains it onto the socket."""

    connection_id: str
    device: str = "web"
    server_url: Optional[str] = None
    session_id: Optional[str] = None
    peer_role: Optional[PeerRole] = None
    paired_with: Optional[str] = None
    closed: bool = False
    outbox: asyncio.Queue = field(default_factory=asyncio.Queue)

    def send(self, message: dict) -> bool:
        if self.closed:
            logger.debug(f"Dropping {message.get('type')} for closed connection {self.connection_id}")
            return False
        self.outbox.put_nowait(message)
        return True

    def close(self):
        if not self.closed:
            self.closed = True
            # sentinel stops the writer task
            self.outbox.put_nowait(None)


class PairingRendezvous:
    def __init__(self):
        # {session_id: {connection_id: Connection}}
        self.rooms: Dict[str, Dict[str, Connection]] = {}

    def members(self, session_id: str) -> List[Connection]:
        return list(self.rooms.get(session_id, {}).values())

    def peer_of(self, connection: Connection) -> Optional[Connection]:
        if connection.session_id is None or connection.paired_with is None:
            return None
        return self.rooms.get(connection.session_id, {}).get(connection.paired_with)

    def join(self, connection: Connection, session_id: str) -> bool:
        """Add ``connection`` to the room for ``session_id``.

        Returns True when this join completed a pair. A full room or a
        connection that already belongs to a room raises PairingRejected and
        leaves all state untouched.
        """
        if connection.session_id is not None:
            raise PairingRejected(f"Connection already joined session {connection.session_id}")
        room = self.rooms.get(session_id, {})
        if len(room) >= ROOM_CAPACITY:
            logger.warning(f"Join rejected for {connection.connection_id}: session {session_id} is full")
            raise PairingRejected(f"Session {session_id} already has two peers")

        role = PeerRole.INITIATOR if not room else PeerRole.JOINER
        room[connection.connection_id] = connection
        self.rooms[session_id] = room
        connection.session_id = session_id
        connection.peer_role = role
        logger.info(f"Connection {connection.connection_id} joined session {session_id} as {role.value} ({len(room)}/{ROOM_CAPACITY})")
        connection.send({"type": "session-joined", "sessionId": session_id, "role": role.value})

        if len(room) < ROOM_CAPACITY:
            return False

        first, second = room.values()
        first.paired_with = second.connection_id
        second.paired_with = first.connection_id
        for member in (first, second):
            member.send({
                "type": "connection-established",
                "sessionId": session_id,
                "message": "Connection established! You can now share files.",
            })
        logger.info(f"Session {session_id} paired: {first.connection_id} <-> {second.connection_id}")
        return True

    def leave(self, connection: Connection) -> Optional[Connection]:
        """Remove ``connection`` from its room and notify the remaining peer.

        Returns the remaining peer, if any. Safe to call more than once.
        """
        session_id = connection.session_id
        room = self.rooms.get(session_id) if session_id else None
        if room is None or connection.connection_id not in room:
            return None

        del room[connection.connection_id]
        connection.paired_with = None
        remaining = next(iter(room.values()), None)
        if remaining is not None:
            remaining.paired_with = None
            remaining.send({"type": "peer-disconnected", "sessionId": session_id})
            logger.info(f"Connection {connection.connection_id} left session {session_id}, notified {remaining.connection_id}")
        else:
            del self.rooms[session_id]
            logger.info(f"Connection {connection.connection_id} left session {session_id}, room closed")
        return remaining
