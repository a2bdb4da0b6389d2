import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import APIRouter, Body, Depends, FastAPI, Header, HTTPException, Path, Request

from docpages.access.models import PageUrl, Role
from docpages.cache.models import Document
from docpages.conversion.models import BatchProgress, BatchResult, ConversionResult
from docpages.errors import DocPagesError, ErrorKind
from docpages.recovery.classifier import user_message
from docpages.recovery.models import PageError
from docpages.service import DocumentPageService, build_service
from docpages.settings import settings
from docpages.viewer.session import PageView, SessionView

log = logging.getLogger(__name__)

_STATUS_FOR_KIND = {
    ErrorKind.PERMISSION_DENIED: 403,
    ErrorKind.STORAGE_NOT_FOUND: 404,
    ErrorKind.CONVERSION_FAILED: 422,
    ErrorKind.NETWORK_TIMEOUT: 504,
}


def _page_error_response(error: PageError) -> HTTPException:
    return HTTPException(status_code=_STATUS_FOR_KIND.get(error.kind, 503), detail=error.model_dump(mode="json"))


def _domain_error_response(exc: DocPagesError) -> HTTPException:
    # internal messages stay in the logs
    log.warning("request failed: %r", exc)
    return HTTPException(
        status_code=_STATUS_FOR_KIND.get(exc.kind, 503),
        detail={"kind": exc.kind.value, "message": user_message(exc.kind)},
    )


def get_service(request: Request) -> DocumentPageService:
    return request.app.state.service


router = APIRouter()


@router.get("/healthz")
async def healthz(svc: DocumentPageService = Depends(get_service)):
    """
    Health endpoint checks basic reachability of the storage API.
    Not a full readiness check.
    """
    storage_ok = False
    async with httpx.AsyncClient(timeout=3.0) as client:
        try:
            r = await client.get(f"{svc.config.storage_url}/status")
            storage_ok = r.status_code < 500
        except httpx.HTTPError:
            storage_ok = False

    return {
        "status": "ok" if storage_ok else "degraded",
        "storage_ok": storage_ok,
        "active_jobs": svc.active_jobs(),
        "cache": svc.cache_stats.model_dump(),
        "env": svc.config.app_env,
    }


@router.put("/documents/{document_id}", response_model=Document)
async def register_document(
    request: Request,
    document_id: str,
    svc: DocumentPageService = Depends(get_service),
):
    """Upload (or re-upload) the source PDF as the raw request body."""
    source = await request.body()
    if not source:
        raise HTTPException(status_code=400, detail="Empty upload")
    try:
        return await svc.register_document(document_id, source)
    except DocPagesError as exc:
        raise _domain_error_response(exc) from exc


@router.post("/documents/{document_id}/pages", response_model=ConversionResult)
async def ensure_pages(document_id: str, svc: DocumentPageService = Depends(get_service)):
    result = await svc.ensure_pages(document_id)
    if result.error is not None:
        raise _page_error_response(result.error)
    return result


@router.delete("/documents/{document_id}/pages")
async def invalidate(document_id: str, svc: DocumentPageService = Depends(get_service)):
    removed = await svc.invalidate(document_id)
    return {"document_id": document_id, "removed": removed}


@router.get("/documents/{document_id}/pages/{page_number}", response_model=PageUrl)
async def get_page(
    document_id: str,
    page_number: int = Path(..., ge=1),
    x_role: Role = Header(Role.ANONYMOUS),
    x_user_id: str | None = Header(None),
    svc: DocumentPageService = Depends(get_service),
):
    res = await svc.get_page(document_id, page_number, x_role, user_id=x_user_id)
    if isinstance(res, PageError):
        raise _page_error_response(res)
    return res


@router.post("/documents/{document_id}/pages/{page_number}/refresh", response_model=PageUrl)
async def refresh_page_url(
    document_id: str,
    page_number: int = Path(..., ge=1),
    reason: ErrorKind = Body(ErrorKind.URL_EXPIRED, embed=True),
    x_role: Role = Header(Role.ANONYMOUS),
    x_user_id: str | None = Header(None),
    svc: DocumentPageService = Depends(get_service),
):
    res = await svc.refresh_page_url(document_id, page_number, x_role, reason=reason, user_id=x_user_id)
    if isinstance(res, PageError):
        raise _page_error_response(res)
    return res


@router.get("/jobs")
async def jobs(svc: DocumentPageService = Depends(get_service)):
    return {"active": svc.active_jobs(), "jobs": [j.model_dump(mode="json") for j in svc.job_statuses()]}


@router.post("/conversion/batch", response_model=BatchResult)
async def ensure_batch(
    document_ids: list[str] = Body(..., embed=True, min_length=1),
    max_concurrent: int | None = Body(None, embed=True, ge=1),
    svc: DocumentPageService = Depends(get_service),
):
    return await svc.ensure_batch(document_ids, max_concurrent=max_concurrent)


@router.get("/conversion/batch/{batch_id}", response_model=BatchProgress)
async def batch_progress(batch_id: str, svc: DocumentPageService = Depends(get_service)):
    try:
        return svc.batch_progress(batch_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=f"Unknown batch {batch_id}") from exc


@router.post("/sessions", response_model=SessionView)
async def open_session(
    document_id: str = Body(..., embed=True),
    start_page: int = Body(1, embed=True, ge=1),
    x_role: Role = Header(Role.ANONYMOUS),
    x_user_id: str | None = Header(None),
    svc: DocumentPageService = Depends(get_service),
):
    try:
        handle = await svc.open_session(document_id, x_role, user_id=x_user_id, start_page=start_page)
    except DocPagesError as exc:
        raise _domain_error_response(exc) from exc
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return svc.session_view(handle)


@router.get("/sessions/{handle}", response_model=SessionView)
async def session_view(handle: str, svc: DocumentPageService = Depends(get_service)):
    try:
        return svc.session_view(handle)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=f"Unknown session {handle}") from exc


@router.post("/sessions/{handle}/navigate", response_model=PageView)
async def navigate(
    handle: str,
    page_number: int = Body(..., embed=True),
    svc: DocumentPageService = Depends(get_service),
):
    try:
        return await svc.navigate(handle, page_number)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=f"Unknown session {handle}") from exc
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


@router.delete("/sessions/{handle}")
async def close_session(handle: str, svc: DocumentPageService = Depends(get_service)):
    svc.close_session(handle)
    return {"closed": True}


def create_app(service: DocumentPageService | None = None) -> FastAPI:
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        svc = service if service is not None else build_service(settings)
        app.state.service = svc
        svc.start()
        try:
            yield
        finally:
            await svc.stop()

    app = FastAPI(title="docpages API", version="0.1.0", lifespan=lifespan)
    app.include_router(router)
    return app


app = create_app()
