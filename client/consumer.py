import base64
import binascii
import inspect
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Union

from constants import DEFAULT_FILE_TYPE
from errors import InvalidMessage, SizeMismatchOnReassembly
from logging_config import get_logger

logger = get_logger(__name__)

PROGRESS_CEILING = 0.9
PROGRESS_STEP = 0.1


@dataclass
class ReceivedFile:
    file_name: str
    file_type: str
    data: bytes
    sender: Optional[str] = None

    @property
    def size(self) -> int:
        return len(self.data)


async def _maybe_await(result):
    if inspect.isawaitable(result):
        await result


class ChunkConsumer:
    """Reassembles one incoming file at a time from ``file-incoming`` and
    ``file-chunk`` messages."""

    def __init__(self, deliver: Optional[Callable[[ReceivedFile], Union[Awaitable[None], None]]] = None,
                 acknowledge: Optional[Callable[[str], Union[Awaitable[None], None]]] = None):
        self.deliver = deliver
        self.acknowledge = acknowledge
        self.reset()

    def reset(self):
        self.chunks: List[bytes] = []
        self.file_name: Optional[str] = None
        self.file_type: str = DEFAULT_FILE_TYPE
        self.sender: Optional[str] = None
        self.expected_size: Optional[int] = None
        self.bytes_received = 0
        self.progress = 0.0

    @property
    def receiving(self) -> bool:
        return self.file_name is not None or bool(self.chunks)

    def on_file_incoming(self, message: dict):
        self.reset()
        self.file_name = message.get("fileName")
        self.file_type = message.get("fileType") or DEFAULT_FILE_TYPE
        self.sender = message.get("from")
        self.expected_size = message.get("fileSize")
        logger.info(f"Incoming {self.file_name} ({self.expected_size} bytes) from {self.sender}")

    def _update_progress(self):
        if self.expected_size:
            self.progress = min(self.bytes_received / self.expected_size, PROGRESS_CEILING)
        else:
            self.progress = min(len(self.chunks) * PROGRESS_STEP, PROGRESS_CEILING)

    async def on_chunk(self, message: dict) -> Optional[ReceivedFile]:
        """Accumulate one chunk. Returns the reassembled file on the last one."""
        index = message.get("index")
        if index is not None and index != len(self.chunks):
            expected = len(self.chunks)
            self.reset()
            raise InvalidMessage(f"Chunk {index} arrived out of order, expected {expected}")
        try:
            payload = base64.b64decode(message.get("chunk") or "", validate=True)
        except (binascii.Error, ValueError) as e:
            self.reset()
            raise InvalidMessage(f"Chunk is not valid base64: {e}") from e

        self.chunks.append(payload)
        self.bytes_received += len(payload)
        if self.file_name is None:
            self.file_name = message.get("fileName")
        if message.get("fileType"):
            self.file_type = message["fileType"]
        self._update_progress()
        logger.debug(f"Chunk {len(self.chunks) - 1} of {self.file_name}: {len(payload)} bytes, progress {self.progress:.0%}")

        if not message.get("isLast"):
            return None
        return await self._reassemble()

    async def _reassemble(self) -> ReceivedFile:
        data = b"".join(self.chunks)
        expected = self.expected_size
        file_name = self.file_name
        if expected is not None and len(data) != expected:
            self.reset()
            logger.error(f"Reassembled {file_name} is {len(data)} bytes, announced {expected}")
            raise SizeMismatchOnReassembly(f"{file_name}: received {len(data)} bytes, expected {expected}")

        received = ReceivedFile(file_name=file_name, file_type=self.file_type, data=data, sender=self.sender)
        self.reset()
        logger.info(f"Reassembled {received.file_name} ({received.size} bytes)")
        if self.deliver is not None:
            await _maybe_await(self.deliver(received))
        if self.acknowledge is not None:
            await _maybe_await(self.acknowledge(received.file_name))
        return received
