from __future__ import annotations

import logging
import re
from functools import lru_cache
from typing import Any, Dict, List, Optional

from fastapi import Body, Depends, FastAPI, File, HTTPException, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from omegaconf import DictConfig

from .configuration import load_settings
from .errors import (
    ContainerError,
    ConversionError,
    ConversionTimeoutError,
    GatewayError,
    InvalidArchiveError,
    ManifestParseError,
    MissingManifestError,
    NoValidEntriesError,
    NotConvertedError,
    NotFoundError,
    PlatformRequestError,
    StorageError,
    TemplateCreationError,
    TemplateDeletionError,
    ValidationError,
)
from .models import (
    AuthStatus,
    ConversionResult,
    DeploymentResult,
    DeployRequest,
    ErrorResponse,
    IngestResult,
    RegistryEntry,
    RepositoryListing,
)
from .platform_client import PlatformClient
from .utils import manifest_filename_for_archive
from .workflow import TemplateWorkflow

logger = logging.getLogger(__name__)

app = FastAPI(title="Template Gateway API", version="0.1.0")

allowed_origins = ["*"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@lru_cache(maxsize=1)
def get_settings() -> DictConfig:
    return load_settings()


@lru_cache(maxsize=1)
def get_workflow() -> TemplateWorkflow:
    return TemplateWorkflow.from_settings(get_settings())


def get_platform_client(workflow: TemplateWorkflow = Depends(get_workflow)) -> PlatformClient:
    return workflow.require_platform()


# =============================================================================
# ERROR MAPPING
# =============================================================================

_BAD_REQUEST = (
    InvalidArchiveError,
    MissingManifestError,
    ManifestParseError,
    NoValidEntriesError,
    ValidationError,
    NotConvertedError,
)
_BAD_GATEWAY = (ConversionError, PlatformRequestError, StorageError, ContainerError)


def status_for_error(exc: GatewayError) -> int:
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, TemplateDeletionError) and exc.not_found:
        return 404
    if isinstance(exc, TemplateCreationError) and exc.invalid_definition:
        return 400
    if isinstance(exc, _BAD_REQUEST):
        return 400
    if isinstance(exc, ConversionTimeoutError):
        return 504
    if isinstance(exc, _BAD_GATEWAY):
        return 502
    # persistence and configuration failures
    return 500


def error_title(exc: GatewayError) -> str:
    """``NotConvertedError`` becomes ``Not Converted``."""
    name = re.sub(r"Error$", "", type(exc).__name__) or "Gateway"
    return re.sub(r"(?<=[a-z])(?=[A-Z])", " ", name)


@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
    status_code = status_for_error(exc)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    else:
        logger.warning(f"{request.method} {request.url.path} rejected: {exc}")
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=error_title(exc), message=str(exc)).model_dump(),
    )


# =============================================================================
# REGISTRY
# =============================================================================

@app.get("/healthz")
def healthcheck() -> Dict[str, str]:
    return {"status": "ok"}


@app.post("/registry", response_model=IngestResult, response_model_by_alias=True)
async def ingest_archive(
    file: UploadFile = File(...),
    workflow: TemplateWorkflow = Depends(get_workflow),
) -> IngestResult:
    if not file.filename:
        raise HTTPException(status_code=400, detail="Archive must have a filename")
    if not file.filename.lower().endswith(".zip"):
        raise HTTPException(status_code=400, detail="Only ZIP files are allowed")

    archive_bytes = await file.read()
    await file.close()

    manifest_name = manifest_filename_for_archive(file.filename, workflow.options.manifest_suffix)
    return await workflow.ingest(archive_bytes, manifest_filename=manifest_name)


@app.get("/registry", response_model=List[RegistryEntry])
async def list_registry(workflow: TemplateWorkflow = Depends(get_workflow)) -> List[RegistryEntry]:
    return await workflow.list_registry()


@app.post("/registry/convert", response_model=ConversionResult, response_model_by_alias=True)
async def convert_document(
    docid: str = Query(..., min_length=1),
    workflow: TemplateWorkflow = Depends(get_workflow),
) -> ConversionResult:
    return await workflow.convert(docid)


@app.post("/registry/deploy", response_model=DeploymentResult)
async def deploy_document(
    request: DeployRequest,
    workflow: TemplateWorkflow = Depends(get_workflow),
) -> DeploymentResult:
    return await workflow.deploy(request.docid, request.template_folder)


@app.get("/registry/{docid:path}", response_model=RegistryEntry)
async def get_registry_entry(docid: str, workflow: TemplateWorkflow = Depends(get_workflow)) -> RegistryEntry:
    return await workflow.get_entry(docid)


# =============================================================================
# TEMPLATE PLATFORM
# =============================================================================

@app.get("/sharedo/auth/status", response_model=AuthStatus)
async def auth_status(platform: PlatformClient = Depends(get_platform_client)) -> AuthStatus:
    return await platform.get_auth_status()


@app.get("/sharedo/templates/types")
async def template_types(platform: PlatformClient = Depends(get_platform_client)) -> Any:
    return await platform.list_template_types()


@app.get("/sharedo/worktypes")
async def work_types(platform: PlatformClient = Depends(get_platform_client)) -> Any:
    return await platform.list_work_types()


@app.get("/sharedo/participanttypes")
async def participant_types(platform: PlatformClient = Depends(get_platform_client)) -> Any:
    return await platform.list_participant_types()


@app.get("/sharedo/tags")
async def tags(platform: PlatformClient = Depends(get_platform_client)) -> Any:
    return await platform.get_tags()


@app.get("/sharedo/repositories")
async def repositories(platform: PlatformClient = Depends(get_platform_client)) -> Any:
    return await platform.list_repositories()


@app.get("/sharedo/documents", response_model=RepositoryListing, response_model_by_alias=True)
async def list_root_documents(platform: PlatformClient = Depends(get_platform_client)) -> Dict[str, Any]:
    return await platform.list_documents()


@app.get("/sharedo/documents/{folder}", response_model=RepositoryListing, response_model_by_alias=True)
async def list_folder_documents(folder: str, platform: PlatformClient = Depends(get_platform_client)) -> Dict[str, Any]:
    return await platform.list_documents(folder)


@app.post("/sharedo/templates/{folder}/upload")
async def upload_template_document(
    folder: str,
    file: UploadFile = File(...),
    platform: PlatformClient = Depends(get_platform_client),
) -> List[Dict[str, Any]]:
    if not file.filename:
        raise HTTPException(status_code=400, detail="File must have a filename")
    data = await file.read()
    await file.close()
    return await platform.upload_document(data, file.filename, folder)


@app.post("/sharedo/templates/{system_name}")
async def create_template(
    system_name: str,
    definition: Dict[str, Any] = Body(...),
    platform: PlatformClient = Depends(get_platform_client),
) -> Any:
    return await platform.create_template(system_name, definition)


@app.delete("/sharedo/templates/{system_name}")
async def delete_template(
    system_name: str,
    workflow: TemplateWorkflow = Depends(get_workflow),
) -> Optional[Dict[str, Any]]:
    return await workflow.delete_template(system_name)
