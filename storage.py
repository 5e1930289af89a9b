import asyncio
import os
import re
import time
from pathlib import Path
from typing import Optional

from errors import StorageError
from logging_config import get_logger

logger = get_logger(__name__)

PARTIAL_DIR = ".partial"


def sanitize_filename(name: str) -> str:
    name = os.path.basename(name.replace("\\", "/"))
    name = re.sub(r'[<>:"/\\|?*\x00-\x1f]', "_", name).strip(" .")
    return name or "file"


class FileStorage:
    """Transient on-disk copies of relayed files.

    Chunks are appended to ``<dir>/.partial/<transfer>.part`` and renamed to
    ``<epoch-ms>-<name>`` when the last chunk arrives. All disk work runs in the
    default executor so the event loop never blocks on it.
    """

    def __init__(self, directory):
        self.directory = Path(directory)
        self.partial_dir = self.directory / PARTIAL_DIR
        self.partial_dir.mkdir(parents=True, exist_ok=True)
        logger.info(f"Durable storage enabled in {self.directory}")

    def _partial_path(self, transfer_id: str) -> Path:
        return self.partial_dir / f"{transfer_id}.part"

    async def _run(self, fn, *args):
        loop = asyncio.get_event_loop()
        try:
            return await loop.run_in_executor(None, fn, *args)
        except OSError as e:
            logger.error(f"Storage operation {fn.__name__} failed: {e}", exc_info=True)
            raise StorageError(f"Storage failed: {e.strerror or e}") from e

    def _start(self, transfer_id: str):
        self._partial_path(transfer_id).write_bytes(b"")

    def _append(self, transfer_id: str, data: bytes):
        with open(self._partial_path(transfer_id), "ab") as f:
            f.write(data)

    def _finalize(self, transfer_id: str, file_name: str) -> str:
        stored_name = f"{int(time.time() * 1000)}-{sanitize_filename(file_name)}"
        partial = self._partial_path(transfer_id)
        if not partial.exists():
            partial.write_bytes(b"")
        os.replace(partial, self.directory / stored_name)
        return stored_name

    async def start(self, transfer_id: str):
        await self._run(self._start, transfer_id)

    async def append(self, transfer_id: str, data: bytes):
        await self._run(self._append, transfer_id, data)

    async def finalize(self, transfer_id: str, file_name: str) -> str:
        stored_name = await self._run(self._finalize, transfer_id, file_name)
        logger.info(f"Stored {file_name} from transfer {transfer_id} as {stored_name}")
        return stored_name

    def discard(self, transfer_id: str):
        try:
            self._partial_path(transfer_id).unlink()
            logger.debug(f"Discarded partial file for transfer {transfer_id}")
        except FileNotFoundError:
            pass

    def resolve(self, name: str) -> Optional[Path]:
        if not name or name != os.path.basename(name) or name.startswith("."):
            return None
        path = self.directory / name
        return path if path.is_file() else None
