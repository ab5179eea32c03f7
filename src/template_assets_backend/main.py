from __future__ import annotations

import logging
import secrets
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import Body, Depends, FastAPI, File, Form, Header, HTTPException, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from .configuration import get_settings
from .database import Database
from .entities import CurrentUser, TemplateAsset
from .errors import TemplateAssetError
from .importer import TemplateAssetService, format_opts
from .job_manager import ImportJobManager
from .key_manager import APIKeyRecord, KeyManager
from .markdown import convert
from .middleware import RateLimiter
from .models import (
    APIKeyCreate,
    ExportRequest,
    ImportResult,
    JobDetail,
    JobSummary,
    MarkdownRequest,
    MarkdownResponse,
    PreImportResult,
    PublicTemplateAsset,
    PublicTemplateDownload,
    TemplateAssetSummary,
    TemplateAssetUpdate,
)
from .storage import build_storage

settings = get_settings()
logging.basicConfig(
    level=str(settings.logging.level).upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title=settings.app.name, version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

database = Database(Path(settings.database.path))
storage = build_storage(settings)
service = TemplateAssetService(
    database, storage, settings.importer, signed_url_expiration=int(settings.storage.signed_url_expiration)
)
job_manager = ImportJobManager(service, database, max_workers=int(settings.jobs.max_workers))
key_manager = KeyManager(settings.database.path)
rate_limiter = RateLimiter(requests_per_minute=int(settings.security.requests_per_minute))


@app.exception_handler(TemplateAssetError)
def handle_template_asset_error(_request, exc: TemplateAssetError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# --- dependencies ----------------------------------------------------------


def get_service() -> TemplateAssetService:
    return service


def get_job_manager() -> ImportJobManager:
    return job_manager


def require_master_key(x_api_key: str = Header(...)) -> None:
    master_key = str(settings.security.master_key or "")
    if not master_key or not secrets.compare_digest(x_api_key, master_key):
        raise HTTPException(status_code=401, detail="Invalid master key")


def get_api_key(x_api_key: Optional[str] = Header(None)) -> APIKeyRecord:
    record = key_manager.validate_key(x_api_key or "")
    if record is None:
        raise HTTPException(status_code=401, detail="Invalid or missing API key")
    return record


def get_current_user(record: APIKeyRecord = Depends(get_api_key)) -> CurrentUser:
    return record.user


def enforce_import_limits(
    template_asset_id: str,
    record: APIKeyRecord = Depends(get_api_key),
    svc: TemplateAssetService = Depends(get_service),
) -> APIKeyRecord:
    """Rate limit, then charge one import once the template asset is known to exist."""
    if not rate_limiter.is_allowed(record.id):
        raise HTTPException(status_code=429, detail="Rate limit exceeded")
    svc.get_importable_template_asset(template_asset_id, record.user)
    if not key_manager.increment_usage(record.id):
        raise HTTPException(status_code=403, detail="Import quota exceeded for this API key")
    return record


def _summary(template_asset: TemplateAsset) -> TemplateAssetSummary:
    return TemplateAssetSummary(**template_asset.to_dict())


def _zip_response(file_name: str, content: bytes) -> Response:
    return Response(
        content=content,
        media_type="application/zip",
        headers={"Content-Disposition": f'attachment; filename="{file_name}"'},
    )


# --- health and admin ------------------------------------------------------


@app.get("/healthz")
def healthcheck() -> Dict[str, str]:
    return {"status": "ok"}


@app.post("/admin/keys", status_code=201, dependencies=[Depends(require_master_key)])
def create_api_key(payload: APIKeyCreate) -> Dict[str, Any]:
    raw_key, record = key_manager.create_key(payload.owner, payload.organisation_id, payload.max_imports)
    return {"api_key": raw_key, "record": record}


@app.get("/admin/keys", dependencies=[Depends(require_master_key)])
def list_api_keys() -> List[Dict[str, Any]]:
    return key_manager.list_keys()


@app.delete("/admin/keys/{key_id}", dependencies=[Depends(require_master_key)])
def revoke_api_key(key_id: str) -> Dict[str, str]:
    if not key_manager.revoke_key(key_id):
        raise HTTPException(status_code=404, detail="API key not found")
    return {"status": "revoked"}


@app.post(
    "/admin/public_templates",
    response_model=TemplateAssetSummary,
    status_code=201,
    dependencies=[Depends(require_master_key)],
)
async def publish_template_asset(
    file: UploadFile = File(...),
    name: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    svc: TemplateAssetService = Depends(get_service),
) -> TemplateAssetSummary:
    content = await file.read()
    await file.close()
    template_asset = await run_in_threadpool(
        lambda: svc.publish_template_asset(
            name=name, description=description, file_name=Path(file.filename or "template.zip").name, zip_bytes=content
        )
    )
    return _summary(template_asset)


# --- template assets -------------------------------------------------------


async def _read_upload(file: Optional[UploadFile], zip_url: Optional[str], svc: TemplateAssetService):
    if file is not None and file.filename:
        content = await file.read()
        await file.close()
        return file.filename, content
    if zip_url:
        return await run_in_threadpool(svc.fetch_zip_from_url, zip_url)
    raise HTTPException(status_code=400, detail="Provide a zip file upload or a zip_url")


@app.post("/template_assets", response_model=TemplateAssetSummary, status_code=201)
async def create_template_asset(
    file: Optional[UploadFile] = File(None),
    zip_url: Optional[str] = Form(None),
    name: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    user: CurrentUser = Depends(get_current_user),
    svc: TemplateAssetService = Depends(get_service),
) -> TemplateAssetSummary:
    file_name, content = await _read_upload(file, zip_url, svc)
    template_asset = await run_in_threadpool(
        lambda: svc.create_template_asset(
            user, name=name, description=description, file_name=Path(file_name).name, zip_bytes=content
        )
    )
    return _summary(template_asset)


@app.get("/template_assets", response_model=List[TemplateAssetSummary])
def list_template_assets(
    user: CurrentUser = Depends(get_current_user), svc: TemplateAssetService = Depends(get_service)
) -> List[TemplateAssetSummary]:
    return [_summary(template_asset) for template_asset in svc.list_template_assets(user)]


@app.post("/template_assets/pre_import", response_model=PreImportResult)
async def pre_import(
    file: UploadFile = File(...),
    user: CurrentUser = Depends(get_current_user),
    svc: TemplateAssetService = Depends(get_service),
) -> PreImportResult:
    content = await file.read()
    await file.close()
    return PreImportResult(**svc.pre_import_template(content))


@app.get("/template_assets/public", response_model=List[PublicTemplateAsset])
def public_template_assets(
    user: CurrentUser = Depends(get_current_user), svc: TemplateAssetService = Depends(get_service)
) -> List[PublicTemplateAsset]:
    return [PublicTemplateAsset(**item) for item in svc.public_template_asset_index()]


@app.get("/template_assets/public/{template_name}/download", response_model=PublicTemplateDownload)
def download_public_template(
    template_name: str,
    user: CurrentUser = Depends(get_current_user),
    svc: TemplateAssetService = Depends(get_service),
) -> PublicTemplateDownload:
    return PublicTemplateDownload(zip_file_url=svc.download_public_template(template_name))


@app.post("/template_assets/export")
def export_template(
    payload: ExportRequest,
    user: CurrentUser = Depends(get_current_user),
    svc: TemplateAssetService = Depends(get_service),
) -> Response:
    file_name, content = svc.export_template(user, payload)
    return _zip_response(file_name, content)


@app.get("/template_assets/{template_asset_id}", response_model=TemplateAssetSummary)
def show_template_asset(
    template_asset_id: str,
    user: CurrentUser = Depends(get_current_user),
    svc: TemplateAssetService = Depends(get_service),
) -> TemplateAssetSummary:
    return _summary(svc.get_template_asset(template_asset_id, user))


@app.put("/template_assets/{template_asset_id}", response_model=TemplateAssetSummary)
def update_template_asset(
    template_asset_id: str,
    payload: TemplateAssetUpdate,
    user: CurrentUser = Depends(get_current_user),
    svc: TemplateAssetService = Depends(get_service),
) -> TemplateAssetSummary:
    template_asset = svc.get_template_asset(template_asset_id, user)
    updated = svc.update_template_asset(template_asset, payload.model_dump(exclude_unset=True))
    return _summary(updated)


@app.delete("/template_assets/{template_asset_id}")
def delete_template_asset(
    template_asset_id: str,
    user: CurrentUser = Depends(get_current_user),
    svc: TemplateAssetService = Depends(get_service),
) -> Dict[str, str]:
    svc.delete_template_asset(svc.get_template_asset(template_asset_id, user))
    return {"status": "deleted"}


@app.get("/template_assets/{template_asset_id}/download")
def download_template_asset(
    template_asset_id: str,
    user: CurrentUser = Depends(get_current_user),
    svc: TemplateAssetService = Depends(get_service),
) -> Response:
    template_asset = svc.get_template_asset(template_asset_id, user)
    return _zip_response(template_asset.file_name, svc.download_zip_from_storage(user, template_asset_id))


@app.post("/template_assets/{template_asset_id}/import", response_model=ImportResult)
def import_template_asset(
    template_asset_id: str,
    params: Optional[Dict[str, Any]] = Body(None),
    record: APIKeyRecord = Depends(enforce_import_limits),
    svc: TemplateAssetService = Depends(get_service),
) -> ImportResult:
    created = svc.import_template_asset(record.user, template_asset_id, format_opts(params))
    return ImportResult(**{key: entity.to_dict() for key, entity in created.items()})


@app.post("/template_assets/{template_asset_id}/import_jobs", response_model=JobSummary, status_code=202)
def create_import_job(
    template_asset_id: str,
    params: Optional[Dict[str, Any]] = Body(None),
    record: APIKeyRecord = Depends(enforce_import_limits),
    manager: ImportJobManager = Depends(get_job_manager),
) -> JobSummary:
    return manager.create_job(record.user, template_asset_id, format_opts(params))


# --- import jobs -----------------------------------------------------------


@app.get("/import_jobs", response_model=List[JobSummary])
def list_import_jobs(
    user: CurrentUser = Depends(get_current_user), manager: ImportJobManager = Depends(get_job_manager)
) -> List[JobSummary]:
    return manager.list_jobs(user)


@app.get("/import_jobs/{job_id}", response_model=JobDetail)
def get_import_job(
    job_id: str,
    user: CurrentUser = Depends(get_current_user),
    manager: ImportJobManager = Depends(get_job_manager),
) -> JobDetail:
    job = manager.get_job(job_id, user)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


# --- markdown --------------------------------------------------------------


@app.post("/markdown", response_model=MarkdownResponse)
def convert_markdown(payload: MarkdownRequest, user: CurrentUser = Depends(get_current_user)) -> MarkdownResponse:
    return MarkdownResponse(markdown=convert(payload.document))
