from __future__ import annotations

import hmac

from fastapi import HTTPException, Request

from caption_localizer.config import get_settings
from caption_localizer.errors import InvalidJobId
from caption_localizer.jobs.models import is_valid_job_id
from caption_localizer.pipeline.factory import Services


def get_services(request: Request) -> Services:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=500, detail="Services not initialized")
    return services


def require_job_id(job_id: str) -> str:
    # rejected before any lookup
    if not is_valid_job_id(job_id):
        raise InvalidJobId("Job ID must be a valid UUID", details={"job_id": job_id})
    return job_id


def client_id(request: Request) -> str:
    cid = (request.headers.get("x-client-id") or "").strip()
    if cid:
        return cid[:128]
    return request.client.host if request.client else "anonymous"


def require_api_token(request: Request) -> None:
    """
    Optional shared-token gate for mutating routes; open when API_TOKEN is unset.
    """
    token = get_settings().api_token
    expected = token.get_secret_value() if token is not None else ""
    if not expected:
        return
    auth = request.headers.get("authorization") or ""
    supplied = auth.split(" ", 1)[1].strip() if auth.lower().startswith("bearer ") else ""
    if not supplied or not hmac.compare_digest(supplied, expected):
        raise HTTPException(status_code=401, detail="Invalid or missing API token")
