import asyncio
import base64
import math
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterator, Optional

from constants import CHUNK_SIZE, DEFAULT_FILE_TYPE, MAX_FILE_SIZE
from errors import OversizeFile, TransferCancelled
from logging_config import get_logger

logger = get_logger(__name__)

LARGE_FILE_THRESHOLD = 1024 * 1024
CHUNK_DELAY = 0.01
LARGE_FILE_CHUNK_DELAY = 0.025


@dataclass
class Chunk:
    index: int
    offset: int
    payload: bytes
    is_last: bool


def count_chunks(total_size: int, chunk_size: int = CHUNK_SIZE) -> int:
    # an empty file still travels as one empty last chunk
    if total_size == 0:
        return 1
    return math.ceil(total_size / chunk_size)


def iter_chunks(data: bytes, chunk_size: int = CHUNK_SIZE) -> Iterator[Chunk]:
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    total = len(data)
    if total == 0:
        yield Chunk(index=0, offset=0, payload=b"", is_last=True)
        return
    for index, offset in enumerate(range(0, total, chunk_size)):
        yield Chunk(
            index=index,
            offset=offset,
            payload=data[offset:offset + chunk_size],
            is_last=offset + chunk_size >= total,
        )


def pacing_delay(total_size: int) -> float:
    return LARGE_FILE_CHUNK_DELAY if total_size > LARGE_FILE_THRESHOLD else CHUNK_DELAY


class ChunkProducer:
    """Sends one file as a ``file-meta`` announcement followed by ordered
    ``file-chunk`` messages, pausing between chunks (open-loop pacing)."""

    def __init__(self, send: Callable[[dict], Awaitable[None]], session_id: str,
                 chunk_size: int = CHUNK_SIZE, max_file_size: Optional[int] = MAX_FILE_SIZE,
                 delay: Optional[float] = None):
        self.send = send
        self.session_id = session_id
        self.chunk_size = chunk_size
        self.max_file_size = max_file_size
        self.delay = delay
        self._cancelled = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self):
        if not self._cancelled.is_set():
            logger.info(f"Cancelling transfer in session {self.session_id}")
            self._cancelled.set()

    async def _pause(self, seconds: float):
        try:
            await asyncio.wait_for(self._cancelled.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    def _check_cancelled(self, file_name: str):
        if self._cancelled.is_set():
            raise TransferCancelled(f"Transfer of {file_name} cancelled")

    async def send_file(self, file_name: str, data: bytes, file_type: Optional[str] = None) -> int:
        """Announce and stream ``data``. Returns the number of chunks sent."""
        total_size = len(data)
        if self.max_file_size is not None and total_size > self.max_file_size:
            raise OversizeFile(f"File {file_name} is {total_size} bytes, maximum is {self.max_file_size}")
        self._check_cancelled(file_name)

        delay = self.delay if self.delay is not None else pacing_delay(total_size)
        num_chunks = count_chunks(total_size, self.chunk_size)
        logger.info(f"Sending {file_name} ({total_size} bytes) as {num_chunks} chunks")

        await self.send({
            "type": "file-meta",
            "sessionId": self.session_id,
            "fileName": file_name,
            "fileSize": total_size,
            "fileType": file_type or DEFAULT_FILE_TYPE,
        })

        sent = 0
        for chunk in iter_chunks(data, self.chunk_size):
            self._check_cancelled(file_name)
            await self.send({
                "type": "file-chunk",
                "sessionId": self.session_id,
                "fileName": file_name,
                "chunk": base64.b64encode(chunk.payload).decode("ascii"),
                "isLast": chunk.is_last,
                "index": chunk.index,
            })
            sent += 1
            if not chunk.is_last and delay > 0:
                await self._pause(delay)
        logger.info(f"Finished sending {file_name}: {sent} chunks")
        return sent
