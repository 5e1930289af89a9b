from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import FileResponse

from logging_config import get_logger

logger = get_logger(__name__)

files_router = APIRouter(prefix="/files", tags=["files"])


@files_router.get("/{name}")
async def get_file(name: str, request: Request):
    """Serve a file kept by durable-storage mode. Always 404 in pure-relay mode."""
    storage = request.app.state.hub.storage
    path = storage.resolve(name) if storage is not None else None
    if path is None:
        logger.warning(f"File {name} not found")
        raise HTTPException(status_code=404, detail="File not found")
    return FileResponse(path)
