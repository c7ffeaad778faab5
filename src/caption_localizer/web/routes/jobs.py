from __future__ import annotations

import shutil
from pathlib import Path
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse
from sse_starlette.sse import EventSourceResponse
from starlette.datastructures import UploadFile

from caption_localizer.errors import FileTooLarge, InvalidRequest
from caption_localizer.events.projector import EventQuery, query_events
from caption_localizer.events.stream import JobEventStream
from caption_localizer.jobs.models import EventType, JobInput, new_id
from caption_localizer.pipeline.factory import Services
from caption_localizer.render.executor import quality_preset
from caption_localizer.utils.io import ensure_dir
from caption_localizer.utils.log import logger
from caption_localizer.web.deps import client_id, get_services, require_api_token, require_job_id

router = APIRouter()

_ALLOWED_UPLOAD_MIME = {
    "video/mp4",
    "video/quicktime",
    "video/x-matroska",
    "video/webm",
    "application/octet-stream",
}
_ALLOWED_UPLOAD_EXTS = {".mp4", ".mkv", ".mov", ".webm", ".m4v"}
_CHUNK = 1024 * 1024


def _uploads_dir(services: Services) -> Path:
    return ensure_dir(services.runner.work_dir / "uploads")


async def _save_upload(upload: UploadFile, dest_dir: Path, max_bytes: int) -> tuple[Path, int]:
    ctype = (upload.content_type or "").lower().strip()
    if ctype and ctype not in _ALLOWED_UPLOAD_MIME:
        raise InvalidRequest(f"Unsupported upload content-type: {ctype}")
    name = Path(upload.filename or "").name
    ext = (Path(name).suffix or ".mp4").lower()[:8]
    if ext not in _ALLOWED_UPLOAD_EXTS:
        raise InvalidRequest(f"Unsupported file extension: {ext}")
    ensure_dir(dest_dir)
    dest = dest_dir / f"source{ext}"
    written = 0
    with dest.open("wb") as f:
        while True:
            chunk = await upload.read(_CHUNK)
            if not chunk:
                break
            written += len(chunk)
            if max_bytes > 0 and written > max_bytes:
                raise FileTooLarge(
                    f"Upload exceeds {max_bytes} bytes",
                    details={"limit_bytes": max_bytes},
                )
            f.write(chunk)
    if written == 0:
        raise InvalidRequest("Uploaded file is empty")
    return dest, written


def _flag(value: Any) -> bool:
    return str(value or "").strip().lower() not in {"", "0", "false", "off", "no"}


@router.post("/api/jobs", dependencies=[Depends(require_api_token)])
async def create_job(request: Request) -> JSONResponse:
    services = get_services(request)
    cid = client_id(request)
    admission = services.runner.admission
    # concurrency is checked before any byte of the upload is stored
    admission.check(cid)

    upload_dir: Path | None = None
    ctype = (request.headers.get("content-type") or "").lower()
    try:
        if ctype.startswith("application/json"):
            body = await request.json()
            if not isinstance(body, dict):
                raise InvalidRequest("JSON body must be an object")
            fields: dict[str, Any] = body
            source_ref = str(body.get("source_url") or "").strip()
            filename = Path(source_ref).name
            size_bytes = int(body.get("size_bytes") or 0)
            if not source_ref:
                raise InvalidRequest("source_url is required")
        else:
            form = await request.form()
            fields = dict(form)
            upload = form.get("file")
            if isinstance(upload, UploadFile):
                upload_dir = _uploads_dir(services) / new_id()
                path, size_bytes = await _save_upload(
                    upload, upload_dir, int(admission.limits.max_upload_bytes)
                )
                source_ref = str(path)
                filename = Path(upload.filename or path.name).name
            else:
                source_ref = str(form.get("source_url") or "").strip()
                filename = Path(source_ref).name
                size_bytes = 0
                if not source_ref:
                    raise InvalidRequest("Provide file or source_url")

        target = str(fields.get("target_language") or "").strip().lower()
        if not target:
            raise InvalidRequest("target_language is required")
        quality = str(fields.get("quality") or "medium").strip().lower()
        quality_preset(quality)
        options: dict[str, Any] = {}
        if fields.get("expected_language"):
            options["expected_language"] = str(fields["expected_language"]).strip().lower()
        if fields.get("vertical"):
            options["vertical"] = str(fields["vertical"]).strip().lower()
        inp = JobInput(
            target_language=target,
            source_ref=source_ref,
            source_language=str(fields.get("source_language") or "en").strip().lower(),
            filename=filename,
            quality=quality,
            size_bytes=size_bytes,
            options=options,
        )
        job = services.runner.submit(inp, client_id=cid)
    except Exception:
        if upload_dir is not None:
            shutil.rmtree(upload_dir, ignore_errors=True)
        raise

    logger.info("job_submitted", job_id=job.id, client_id=cid, target_language=job.input.target_language)
    return JSONResponse(
        status_code=202,
        content={
            "job": job.to_dict(),
            "links": {
                "self": f"/api/jobs/{job.id}",
                "events": f"/api/jobs/{job.id}/events",
                "stream": f"/api/jobs/{job.id}/events?stream=true",
            },
        },
    )


@router.get("/api/jobs/{job_id}")
async def get_job(request: Request, job_id: str = Depends(require_job_id)) -> dict[str, Any]:
    services = get_services(request)
    return services.store.get(job_id).to_dict()


@router.post("/api/jobs/{job_id}/cancel", dependencies=[Depends(require_api_token)])
async def cancel_job(request: Request, job_id: str = Depends(require_job_id)) -> dict[str, Any]:
    services = get_services(request)
    return services.runner.cancel(job_id, reason="cancelled_by_client").to_dict()


@router.delete("/api/jobs/{job_id}", dependencies=[Depends(require_api_token)])
async def delete_job(request: Request, job_id: str = Depends(require_job_id)) -> dict[str, Any]:
    services = get_services(request)
    job = services.store.get(job_id)
    if not job.is_terminal:
        services.runner.cancel(job_id, reason="deleted")
    services.store.delete(job_id)
    return {"ok": True, "job_id": job_id}


@router.get("/api/jobs/{job_id}/events")
async def job_events(
    request: Request,
    job_id: str = Depends(require_job_id),
    event_type: str | None = Query(default=None, alias="type"),
    severity: str | None = None,
    category: str | None = None,
    language: str | None = None,
    phase: str | None = None,
    tags: str | None = None,
    since: str | None = None,
    until: str | None = None,
    limit: int | None = Query(default=None, ge=0),
    offset: int | None = Query(default=None, ge=0),
    include_progress: str | None = None,
    include_samples: str | None = None,
    stream: str | None = None,
):
    services = get_services(request)
    job = services.store.get(job_id)
    query = EventQuery.build(
        type=event_type,
        severity=severity,
        category=category,
        language=language,
        phase=phase,
        tags=tags,
        since=since,
        until=until,
        include_progress=_flag(include_progress),
        include_samples=_flag(include_samples),
        limit=limit,
        offset=offset,
    )

    if _flag(stream):
        es = JobEventStream(services.store, job_id, query)

        async def gen():
            try:
                async for frame in es.frames():
                    if await request.is_disconnected():
                        return
                    yield frame.to_sse()
            finally:
                await es.close()

        return EventSourceResponse(gen())

    page = query_events(job, query)
    body = page.to_dict()
    body["job_status"] = job.status.value
    body["metadata"] = {
        "job_id": job.id,
        "available_event_types": [e.value for e in EventType],
    }
    return JSONResponse(
        content=body,
        headers={
            "Cache-Control": "public, max-age=2, stale-while-revalidate=5",
            "ETag": f'"events-{job.id}-{job.updated_at}"',
        },
    )
