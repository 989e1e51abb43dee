from __future__ import annotations

import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from omegaconf import DictConfig
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException

from .artifact_store import LocalArtifactStore
from .configuration import load_config
from .errors import AccountDisabledError, AuthenticationError, PdfServiceError, ValidationError
from .job_manager import JobManager
from .logging_config import setup_logging
from .middleware import RateLimiter, RateLimitMiddleware, client_ip
from .models import Caller, JobResponse, MergeResponse, SplitResponse, UploadedFile, User
from .services import Services, build_services

UPLOAD_CHUNK_SIZE = 1024 * 1024


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_job_manager(services: Services = Depends(get_services)) -> JobManager:
    return services.job_manager


def _bearer_token(request: Request) -> Optional[str]:
    header = request.headers.get("authorization", "")
    parts = header.split(" ")
    if len(parts) == 2 and parts[0].lower() == "bearer" and parts[1]:
        return parts[1]
    return None


def get_current_user(request: Request, services: Services = Depends(get_services)) -> Optional[User]:
    """Resolve the bearer token if one is sent; no token means a guest."""
    token = _bearer_token(request)
    if token is None:
        return None
    user = services.accounts.authenticate(token)
    if user is None:
        raise AuthenticationError("Invalid or expired session")
    if not user.is_active:
        raise AccountDisabledError("Account is deactivated")
    return user


def require_user(user: Optional[User] = Depends(get_current_user)) -> User:
    if user is None:
        raise AuthenticationError("Access token required")
    return user


def get_caller(
    request: Request,
    user: Optional[User] = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> Caller:
    return Caller(
        user=user,
        ip_address=client_ip(request, services.config.app.trusted_proxy_hops),
        user_agent=request.headers.get("user-agent"),
    )


async def _read_upload(upload: UploadFile, max_bytes: int) -> UploadedFile:
    """Read an upload in chunks, refusing it as soon as it passes ``max_bytes``."""
    name = upload.filename or "document.pdf"
    buffer = bytearray()
    try:
        if upload.size is not None and upload.size > max_bytes:
            raise ValidationError("File too large", {"file": name, "max_file_size": max_bytes})
        while chunk := await upload.read(min(UPLOAD_CHUNK_SIZE, max_bytes + 1 - len(buffer))):
            buffer.extend(chunk)
            if len(buffer) > max_bytes:
                raise ValidationError("File too large", {"file": name, "max_file_size": max_bytes})
    finally:
        await upload.close()
    return UploadedFile(name=name, content_type=upload.content_type or "", data=bytes(buffer))


def _parse_options(raw: Optional[str]) -> Dict[str, Any]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValidationError("Invalid options JSON", {"details": str(exc)}) from exc
    if not isinstance(parsed, dict):
        raise ValidationError("Options must be a JSON object")
    return parsed


router = APIRouter(prefix="/pdf")


@router.get("/status")
def pdf_status() -> Dict[str, Any]:
    return {
        "status": "PDF routes active",
        "available_endpoints": [
            "POST /pdf/merge",
            "POST /pdf/split",
            "GET /pdf/jobs/{job_id}",
        ],
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.post("/merge", response_model=MergeResponse)
async def merge_pdfs(
    files: Optional[List[UploadFile]] = File(None),
    bracket_files: Optional[List[UploadFile]] = File(None, alias="files[]"),
    platform: Optional[str] = Form(None),
    options: Optional[str] = Form(None),
    caller: Caller = Depends(get_caller),
    manager: JobManager = Depends(get_job_manager),
) -> MergeResponse:
    parts = files or bracket_files or []
    manager.check_file_count(len(parts))
    uploads = [await _read_upload(part, manager.limits.max_file_size) for part in parts]
    parsed_options = _parse_options(options)
    return await run_in_threadpool(manager.merge, caller, uploads, platform, parsed_options)


@router.post("/split", response_model=SplitResponse)
async def split_pdf(
    file: Optional[UploadFile] = File(None),
    platform: Optional[str] = Form(None),
    split_mode: str = Form("all", alias="splitMode"),
    page_ranges: Optional[str] = Form(None, alias="pageRanges"),
    interval_pages: Optional[str] = Form(None, alias="intervalPages"),
    caller: Caller = Depends(get_caller),
    manager: JobManager = Depends(get_job_manager),
) -> SplitResponse:
    upload = await _read_upload(file, manager.limits.max_file_size) if file is not None else None
    return await run_in_threadpool(
        manager.split, caller, upload, platform, split_mode, page_ranges, interval_pages
    )


@router.get("/jobs/{job_id}", response_model=JobResponse)
def get_job(
    job_id: str,
    user: User = Depends(require_user),
    manager: JobManager = Depends(get_job_manager),
) -> JobResponse:
    job = manager.get_job(job_id, user.id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return JobResponse(job=job)


def create_app(services: Optional[Services] = None, config: Optional[DictConfig] = None) -> FastAPI:
    """
    Build the API application.

    Args:
        services: Pre-built collaborators; built from ``config`` if omitted
        config: Configuration; loaded from defaults and environment if omitted
    """
    if services is None:
        services = build_services(config or load_config())
    config = services.config
    setup_logging(config.logging.level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        app.state.services.close()

    app = FastAPI(title=config.app.title, version=config.app.version, lifespan=lifespan)
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(config.app.cors_origins),
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Requested-With"],
    )
    if config.rate_limit.enabled:
        app.add_middleware(
            RateLimitMiddleware,
            limiter=RateLimiter(
                max_requests=config.rate_limit.max_requests,
                window_seconds=config.rate_limit.window_seconds,
            ),
            path_prefix="/pdf",
            proxy_hops=config.app.trusted_proxy_hops,
        )

    @app.exception_handler(PdfServiceError)
    async def service_error_handler(request: Request, exc: PdfServiceError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=exc.to_payload())

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)

    @app.get("/healthz")
    def healthcheck() -> Dict[str, str]:
        return {"status": "ok"}

    app.include_router(router)

    store = services.store
    if isinstance(store, LocalArtifactStore) and store.public_base_url.startswith("/"):
        app.mount(store.public_base_url, StaticFiles(directory=store.output_dir), name="outputs")

    return app


app = create_app()
