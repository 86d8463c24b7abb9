from __future__ import annotations

import json
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import Depends, FastAPI, File, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.openapi.docs import get_swagger_ui_html
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse, Response

from . import __version__
from .configuration import configure_logging, load_config
from .errors import DocumentNotFoundError, InvalidSnapshotError, SyncError, UploadRejectedError
from .models import ConversionResult, ServiceIndex, ServiceStatus, SnapshotInfo
from .sync_manager import SyncManager

config = load_config()
configure_logging(config.log_level)

sync_manager = SyncManager(config)

UPLOAD_CHUNK_SIZE = 8 * 1024 * 1024


@asynccontextmanager
async def lifespan(_: FastAPI):
    sync_manager.startup()
    try:
        yield
    finally:
        sync_manager.shutdown()


app = FastAPI(
    title="Postman OpenAPI Sync",
    version=__version__,
    docs_url=None,
    redoc_url=None,
    openapi_url="/service-openapi.json",
    lifespan=lifespan,
)

allowed_origins = ["*"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_sync_manager() -> SyncManager:
    return sync_manager


@app.get("/", response_model=ServiceIndex)
def index() -> ServiceIndex:
    return ServiceIndex(
        name=app.title,
        version=__version__,
        endpoints={
            "collection": "/api/collection",
            "upload": "/api/upload",
            "openapi": "/api/openapi",
            "update": "/api/update",
            "backups": "/api/backups",
            "restore": "/api/restore/{filename}",
            "status": "/api/status",
            "health": "/health",
            "docs": "/docs",
        },
    )


@app.get("/health")
def healthcheck(manager: SyncManager = Depends(get_sync_manager)) -> JSONResponse:
    status_code, report = manager.health()
    return JSONResponse(status_code=status_code, content=report.model_dump(mode="json"))


@app.get("/api/collection")
def get_collection(manager: SyncManager = Depends(get_sync_manager)) -> JSONResponse:
    try:
        data = manager.load_collection()
    except DocumentNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Postman collection not found") from exc
    except SyncError as exc:
        raise HTTPException(status_code=500, detail=f"Error reading collection: {exc}") from exc
    return JSONResponse(content=data)


@app.post("/api/collection")
async def save_collection(request: Request, manager: SyncManager = Depends(get_sync_manager)) -> Dict[str, Any]:
    try:
        payload = await request.json()
    except json.JSONDecodeError as exc:
        raise HTTPException(status_code=400, detail="Invalid JSON payload") from exc

    try:
        snapshot = manager.save_collection(payload)
    except SyncError as exc:
        raise HTTPException(status_code=500, detail=f"Error saving collection: {exc}") from exc

    return {"status": "saved", "backup": snapshot.filename if snapshot else None}


async def _read_upload(file: UploadFile, limit: int) -> bytes:
    chunks = []
    size = 0
    while chunk := await file.read(UPLOAD_CHUNK_SIZE):
        size += len(chunk)
        if size > limit:
            raise UploadRejectedError(f"File exceeds the {limit} byte upload limit", oversize=True)
        chunks.append(chunk)
    return b"".join(chunks)


@app.post("/api/upload")
async def upload_collection(
    collection_file: UploadFile = File(..., alias="collectionFile"),
    manager: SyncManager = Depends(get_sync_manager),
) -> RedirectResponse:
    try:
        manager.check_upload_name(collection_file.filename)
        content = await _read_upload(collection_file, manager.config.upload.max_bytes)
        manager.store_upload(collection_file.filename, content)
    except UploadRejectedError as exc:
        raise HTTPException(status_code=413 if exc.oversize else 400, detail=str(exc)) from exc
    except SyncError as exc:
        raise HTTPException(status_code=500, detail=f"Error uploading file: {exc}") from exc
    finally:
        await collection_file.close()
    return RedirectResponse(url="/?success=true", status_code=303)


@app.get("/api/openapi")
def get_openapi(manager: SyncManager = Depends(get_sync_manager)) -> Response:
    try:
        content = manager.read_openapi()
    except DocumentNotFoundError as exc:
        raise HTTPException(
            status_code=404,
            detail="OpenAPI JSON not found. Please upload a valid Postman JSON.",
        ) from exc
    except SyncError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    return Response(content=content, media_type="application/json")


@app.post("/api/update", response_model=ConversionResult)
def trigger_update(background: bool = False, manager: SyncManager = Depends(get_sync_manager)):
    if background:
        manager.submit_conversion(trigger="manual")
        return JSONResponse(status_code=202, content={"status": "accepted"})

    result = manager.run_conversion(trigger="manual")
    if not result.success:
        return JSONResponse(status_code=500, content=result.model_dump(mode="json"))
    return result


@app.get("/api/backups", response_model=list[SnapshotInfo])
def list_backups(manager: SyncManager = Depends(get_sync_manager)) -> list[SnapshotInfo]:
    try:
        return manager.list_backups()
    except SyncError as exc:
        raise HTTPException(status_code=500, detail=f"Error getting backups: {exc}") from exc


@app.post("/api/restore/{filename}")
def restore_backup(filename: str, manager: SyncManager = Depends(get_sync_manager)) -> Dict[str, Any]:
    try:
        kind, conversion = manager.restore_backup(filename)
    except DocumentNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Backup file not found") from exc
    except InvalidSnapshotError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except SyncError as exc:
        raise HTTPException(status_code=500, detail=f"Error restoring backup: {exc}") from exc

    return {
        "status": "restored",
        "kind": kind.value,
        "conversion": conversion.model_dump(mode="json") if conversion else None,
    }


@app.get("/api/status", response_model=ServiceStatus)
def service_status(manager: SyncManager = Depends(get_sync_manager)) -> ServiceStatus:
    return manager.status()


@app.get("/docs", include_in_schema=False)
def swagger_ui() -> HTMLResponse:
    return get_swagger_ui_html(
        openapi_url="/api/openapi",
        title="API Documentation",
        swagger_ui_parameters={"displayRequestDuration": True, "defaultModelsExpandDepth": -1},
    )


@app.get("/service-docs", include_in_schema=False)
def service_docs() -> HTMLResponse:
    return get_swagger_ui_html(openapi_url=app.openapi_url, title=f"{app.title} - Service API")
