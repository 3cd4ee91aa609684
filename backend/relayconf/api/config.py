"""
Configuration API endpoints.

Authentication is handled upstream: the session/RBAC middleware in front of
this router sets request.state.editor to the administrator's Editor.
"""
import json
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, Field

from relayconf.services.config_manager import ConfigManager
from relayconf.services.results import Editor
from relayconf.utils.errors import ErrorCode, create_error_response

router = APIRouter(prefix="/api/config", tags=["config"])


class StageRequest(BaseModel):
    """Partial parameter set; null unsets a parameter."""

    parameters: Dict[str, Optional[str]]


class ApplyRequest(BaseModel):
    notes: Optional[str] = Field(None, max_length=1000)


class DiffEntryResponse(BaseModel):
    key: str
    category: str
    old_value: Optional[str]
    new_value: Optional[str]


class ValidationErrorResponse(BaseModel):
    field: str
    message: str


class ValidationResponse(BaseModel):
    ok: bool
    errors: List[ValidationErrorResponse]
    warnings: List[ValidationErrorResponse] = []


class ApplyResponse(BaseModel):
    success: bool
    message: str
    applied_count: int
    version_number: Optional[int]


class RollbackResponse(BaseModel):
    success: bool
    message: str
    version_number: Optional[int]


class VersionSummaryResponse(BaseModel):
    version_number: int
    status: str
    created_at: datetime
    created_by: str
    applied_at: Optional[datetime]
    applied_by: Optional[str]
    notes: Optional[str]


class VersionResponse(VersionSummaryResponse):
    full_content: str
    parameters: Dict[str, Any]


class AuditEntryResponse(BaseModel):
    timestamp: datetime
    username: Optional[str]
    action: str
    resource_id: Optional[str]
    summary: Optional[str]
    status: str
    error_code: Optional[str]
    error_message: Optional[str]


def get_config_manager(request: Request) -> ConfigManager:
    return request.app.state.config_manager


def require_editor(request: Request) -> Editor:
    """Dependency returning the editor set by the auth middleware."""
    editor = getattr(request.state, "editor", None)
    if not isinstance(editor, Editor):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=create_error_response(ErrorCode.NOT_AUTHENTICATED, "Authentication required", 401),
        )
    return editor


def _diff(entries) -> List[DiffEntryResponse]:
    return [DiffEntryResponse(**e.to_dict()) for e in entries]


@router.get("/current", response_model=Dict[str, Optional[str]])
async def get_current(
    editor: Editor = Depends(require_editor),
    manager: ConfigManager = Depends(get_config_manager),
):
    """Live parameters, secrets masked."""
    return await manager.get_current()


@router.get("/staged", response_model=List[DiffEntryResponse])
async def get_staged_diff(
    editor: Editor = Depends(require_editor),
    manager: ConfigManager = Depends(get_config_manager),
):
    return _diff(await manager.get_staged_diff())


@router.post("/staged", response_model=List[DiffEntryResponse])
async def stage(
    body: StageRequest,
    editor: Editor = Depends(require_editor),
    manager: ConfigManager = Depends(get_config_manager),
):
    """Validate and stage parameter changes; returns the full staged diff."""
    return _diff(await manager.stage(body.parameters, editor))


@router.delete("/staged/{key}")
async def unstage(
    key: str,
    editor: Editor = Depends(require_editor),
    manager: ConfigManager = Depends(get_config_manager),
):
    if not await manager.unstage(key, editor):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=create_error_response(ErrorCode.NOT_FOUND, f"'{key}' is not staged", 404),
        )
    return {"removed": key}


@router.delete("/staged")
async def discard_staged(
    editor: Editor = Depends(require_editor),
    manager: ConfigManager = Depends(get_config_manager),
):
    return {"discarded": await manager.discard_staged(editor)}


@router.post("/validate", response_model=ValidationResponse)
async def validate_only(
    editor: Editor = Depends(require_editor),
    manager: ConfigManager = Depends(get_config_manager),
):
    report = await manager.validate_only()
    return report.to_dict()


@router.post("/apply", response_model=ApplyResponse)
async def apply(
    body: Optional[ApplyRequest] = None,
    editor: Editor = Depends(require_editor),
    manager: ConfigManager = Depends(get_config_manager),
):
    result = await manager.apply(editor, body.notes if body else None)
    return ApplyResponse(**result.__dict__)


@router.post("/versions/{version_number}/rollback", response_model=RollbackResponse)
async def rollback(
    version_number: int,
    editor: Editor = Depends(require_editor),
    manager: ConfigManager = Depends(get_config_manager),
):
    result = await manager.rollback(version_number, editor)
    return RollbackResponse(**result.__dict__)


@router.get("/versions", response_model=List[VersionSummaryResponse])
async def list_history(
    limit: int = Query(50, ge=1, le=500),
    editor: Editor = Depends(require_editor),
    manager: ConfigManager = Depends(get_config_manager),
):
    return [VersionSummaryResponse(**v.__dict__) for v in await manager.list_history(limit)]


@router.get("/versions/{version_number}", response_model=VersionResponse)
async def get_version(
    version_number: int,
    editor: Editor = Depends(require_editor),
    manager: ConfigManager = Depends(get_config_manager),
):
    version = await manager.get_version(version_number)
    return VersionResponse(
        version_number=version.version_number,
        status=version.status,
        created_at=version.created_at,
        created_by=version.created_by_username,
        applied_at=version.applied_at,
        applied_by=version.applied_by_username,
        notes=version.notes,
        full_content=version.full_content,
        parameters=json.loads(version.parameters_json),
    )


@router.get("/audit", response_model=List[AuditEntryResponse])
async def get_audit_log(
    limit: int = Query(100, ge=1, le=1000),
    action: Optional[str] = None,
    editor: Editor = Depends(require_editor),
    manager: ConfigManager = Depends(get_config_manager),
):
    entries = await manager.get_audit_log(limit, action)
    return [
        AuditEntryResponse(
            timestamp=e.timestamp,
            username=e.username,
            action=e.action,
            resource_id=e.resource_id,
            summary=e.summary,
            status=e.status,
            error_code=e.error_code,
            error_message=e.error_message,
        )
        for e in entries
    ]


@router.get("/status")
async def get_status(
    editor: Editor = Depends(require_editor),
    manager: ConfigManager = Depends(get_config_manager),
):
    return await manager.status()
