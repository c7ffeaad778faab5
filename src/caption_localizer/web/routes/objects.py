from __future__ import annotations

from pathlib import Path

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import FileResponse

from caption_localizer.pipeline.collaborators import LocalObjectStorage
from caption_localizer.web.deps import get_services

router = APIRouter()

_MEDIA_TYPES = {
    ".mp4": "video/mp4",
    ".vtt": "text/vtt",
    ".srt": "application/x-subrip",
}


@router.get("/objects/{shard}/{name}")
async def get_object(request: Request, shard: str, name: str, download: str | None = None):
    storage = get_services(request).storage
    if not isinstance(storage, LocalObjectStorage):
        raise HTTPException(status_code=404, detail="Objects are served by the storage backend")
    path = storage.path_for(f"{shard}/{name}")
    if path is None:
        raise HTTPException(status_code=404, detail="Object not found")
    media_type = _MEDIA_TYPES.get(path.suffix.lower(), "application/octet-stream")
    if download:
        return FileResponse(path, media_type=media_type, filename=Path(download).name)
    return FileResponse(path, media_type=media_type)
