from __future__ import annotations

import io
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile, status
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.concurrency import run_in_threadpool

from ...domain.errors import DevBeaverError
from ...domain.site_models import ChatRequest, ImageUpload, OperationResult, PublishResult
from ...infrastructure.user_store import validate_user_id
from ...security.rate_limit import RateLimitExceeded, rate_limit_action
from ...services.orchestrator import SiteOrchestrator, get_orchestrator
from ...services.publisher import GitSitePublisher, get_publisher
from ...services.site_bundle import build_site_zip

router = APIRouter(tags=["site"])

_STATUS_BY_KIND: Dict[str, int] = {
    "validation": status.HTTP_400_BAD_REQUEST,
    "upstream": status.HTTP_502_BAD_GATEWAY,
    "malformed_response": status.HTTP_502_BAD_GATEWAY,
    "lock_timeout": status.HTTP_503_SERVICE_UNAVAILABLE,
    "storage": status.HTTP_500_INTERNAL_SERVER_ERROR,
}

_LOCK_RETRY_AFTER_SECONDS = 5


def _respond(result: OperationResult[Any]) -> JSONResponse:
    body = result.model_dump(mode="json", by_alias=True)
    if result.ok:
        return JSONResponse(status_code=status.HTTP_200_OK, content=body)
    kind = result.error.kind if result.error else "storage"
    headers = {"Retry-After": str(_LOCK_RETRY_AFTER_SECONDS)} if kind == "lock_timeout" else None
    return JSONResponse(status_code=_STATUS_BY_KIND.get(kind, 500), content=body, headers=headers)


def _checked_user_id(user_id: str) -> str:
    try:
        return validate_user_id(user_id)
    except DevBeaverError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.message) from exc


def _limit(action: str, user_id: str, *, default_limit: int) -> None:
    upper = action.upper()
    try:
        rate_limit_action(
            action,
            user_id,
            limit_env=f"DEVBEAVER_{upper}_LIMIT",
            window_env=f"DEVBEAVER_{upper}_WINDOW_SEC",
            default_limit=default_limit,
            default_window_seconds=60,
        )
    except RateLimitExceeded as exc:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many requests. Please try again later.",
            headers={"Retry-After": str(exc.retry_after_seconds)},
        ) from exc


@router.post("/chat")
def chat(req: ChatRequest, orchestrator: SiteOrchestrator = Depends(get_orchestrator)) -> JSONResponse:
    _limit("chat", req.user_id, default_limit=30)
    return _respond(orchestrator.chat(req.user_id, req.message))


@router.post("/users/{user_id}/images")
async def upload_images(
    user_id: str,
    images: List[UploadFile] = File(...),
    text: str = Form(""),
    orchestrator: SiteOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    uploads: List[ImageUpload] = []
    for image in images:
        try:
            content = await image.read()
        finally:
            await image.close()
        uploads.append(ImageUpload(original_name=image.filename or "image", data=content, mime_type=image.content_type))
    result = await run_in_threadpool(orchestrator.ingest_images, user_id, uploads, text)
    return _respond(result)


@router.post("/users/{user_id}/site/regenerate")
def regenerate_site(user_id: str, orchestrator: SiteOrchestrator = Depends(get_orchestrator)) -> JSONResponse:
    _limit("regenerate", user_id, default_limit=10)
    return _respond(orchestrator.regenerate_site(user_id))


@router.post("/users/{user_id}/reset")
def reset_user(user_id: str, orchestrator: SiteOrchestrator = Depends(get_orchestrator)) -> JSONResponse:
    return _respond(orchestrator.reset(user_id))


@router.get("/users/{user_id}/state")
def get_state(user_id: str, orchestrator: SiteOrchestrator = Depends(get_orchestrator)) -> JSONResponse:
    return _respond(orchestrator.snapshot(user_id))


@router.get("/users/{user_id}/site.zip")
def download_site(user_id: str, orchestrator: SiteOrchestrator = Depends(get_orchestrator)):
    uid = _checked_user_id(user_id)
    try:
        blob = build_site_zip(orchestrator.store, uid)
    except DevBeaverError as exc:
        raise HTTPException(status_code=_STATUS_BY_KIND.get(exc.kind, 500), detail=exc.message) from exc
    headers = {"Content-Disposition": f'attachment; filename="{uid}-site.zip"'}
    return StreamingResponse(io.BytesIO(blob), media_type="application/zip", headers=headers)


@router.post("/users/{user_id}/publish", response_model=PublishResult)
def publish_site(user_id: str, publisher: GitSitePublisher = Depends(get_publisher)):
    uid = _checked_user_id(user_id)
    result = publisher.publish(uid)
    if not result.ok:
        return JSONResponse(status_code=status.HTTP_502_BAD_GATEWAY, content=result.model_dump())
    return result
