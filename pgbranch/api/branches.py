"""
Database branch management API endpoints
"""
import logging
from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field

from ..core.auth import require_api_key
from ..models.branch import BranchInfo
from ..services.database import (
    DatabaseBranchManager, BranchError, SourceNotFound, ConnectionUnavailable
)


logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/branches",
    tags=["branches"],
    dependencies=[Depends(require_api_key)],
)


# Request/Response Models
class BranchCreateRequest(BaseModel):
    """Request model for branch creation"""
    name: str = Field(..., min_length=1)
    source_database: str = Field(..., min_length=1, alias="sourceDatabase")

    class Config:
        populate_by_name = True


class CleanupRequest(BaseModel):
    """Request model for branch cleanup"""
    dry_run: bool = Field(default=False, alias="dryRun")
    exclude: List[str] = Field(default_factory=list)

    class Config:
        populate_by_name = True


class BranchResponse(BaseModel):
    """A branch as listed from the catalog"""
    name: str
    size: str
    size_bytes: int
    connections: int


class BranchListResponse(BaseModel):
    branches: List[BranchResponse]
    count: int
    pattern: str


class BranchCreateResponse(BaseModel):
    success: bool
    branch_name: str
    source_database: str
    connection_url: str
    message: str


class BranchDeleteResponse(BaseModel):
    success: bool
    branch_name: str
    message: str


class BranchExistsResponse(BaseModel):
    exists: bool
    branch_name: str
    connection_url: Optional[str]


class ConnectionUrlResponse(BaseModel):
    branch_name: str
    connection_url: str


def get_branch_manager(request: Request) -> DatabaseBranchManager:
    """Branch manager the application was created with"""
    return request.app.state.branch_manager


def _http_error(error: BranchError, action: str) -> HTTPException:
    """Map a branch error onto an HTTP error"""
    if isinstance(error, SourceNotFound):
        status_code = status.HTTP_404_NOT_FOUND
    elif isinstance(error, ConnectionUnavailable):
        status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    else:
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    logger.error(f"Failed to {action}: {error}")
    return HTTPException(status_code=status_code, detail=str(error))


def _branch_response(branch: BranchInfo) -> BranchResponse:
    return BranchResponse(**branch.to_dict())


@router.get("", response_model=BranchListResponse)
async def list_branches(
    pattern: Optional[str] = None,
    manager: DatabaseBranchManager = Depends(get_branch_manager)
):
    """
    List database branches
    """
    try:
        branches = await manager.list_branches(pattern)
    except BranchError as e:
        raise _http_error(e, "list database branches")

    return BranchListResponse(
        branches=[_branch_response(b) for b in branches],
        count=len(branches),
        pattern=pattern or "default"
    )


@router.post("", response_model=BranchCreateResponse, status_code=status.HTTP_201_CREATED)
async def create_branch(
    request: BranchCreateRequest,
    manager: DatabaseBranchManager = Depends(get_branch_manager)
):
    """
    Create a database branch from a source database
    """
    try:
        connection_url = await manager.create_branch(request.name, request.source_database)
    except BranchError as e:
        raise _http_error(e, "create database branch")

    return BranchCreateResponse(
        success=True,
        branch_name=request.name,
        source_database=request.source_database,
        connection_url=connection_url,
        message=f"Database branch '{request.name}' created successfully"
    )


@router.post("/cleanup")
async def cleanup_branches(
    request: CleanupRequest,
    manager: DatabaseBranchManager = Depends(get_branch_manager)
):
    """
    Delete idle branches, or report which would be deleted
    """
    try:
        result = await manager.cleanup_branches(dry_run=request.dry_run, exclude=request.exclude)
    except BranchError as e:
        raise _http_error(e, "cleanup branches")

    if result.dry_run:
        return {
            "dry_run": True,
            "branches_to_delete": [b.to_dict() for b in result.candidates],
            "count": len(result.candidates),
            "message": f"{len(result.candidates)} branches would be deleted"
        }

    return {
        "success": True,
        "results": [o.to_dict() for o in result.outcomes],
        "deleted": result.deleted,
        "failed": result.failed,
        "message": f"Cleanup completed: {result.deleted} deleted, {result.failed} failed"
    }


@router.delete("/{name}", response_model=BranchDeleteResponse)
async def delete_branch(
    name: str,
    manager: DatabaseBranchManager = Depends(get_branch_manager)
):
    """
    Delete a database branch
    """
    try:
        await manager.delete_branch(name)
    except BranchError as e:
        raise _http_error(e, "delete database branch")

    return BranchDeleteResponse(
        success=True,
        branch_name=name,
        message=f"Database branch '{name}' deleted successfully"
    )


@router.get("/{name}/exists", response_model=BranchExistsResponse)
async def branch_exists(
    name: str,
    manager: DatabaseBranchManager = Depends(get_branch_manager)
):
    """
    Check whether a branch exists
    """
    try:
        exists = await manager.branch_exists(name)
    except BranchError as e:
        raise _http_error(e, "check branch existence")

    return BranchExistsResponse(
        exists=exists,
        branch_name=name,
        connection_url=manager.get_connection_url(name) if exists else None
    )


@router.get("/{name}/url", response_model=ConnectionUrlResponse)
async def get_connection_url(
    name: str,
    manager: DatabaseBranchManager = Depends(get_branch_manager)
):
    """
    Get the connection URL of an existing branch
    """
    try:
        exists = await manager.branch_exists(name)
    except BranchError as e:
        raise _http_error(e, "get branch connection URL")

    if not exists:
        raise HTTPException(status_code=404, detail=f"Branch '{name}' not found")

    return ConnectionUrlResponse(
        branch_name=name,
        connection_url=manager.get_connection_url(name)
    )
