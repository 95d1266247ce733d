"""Shared request dependencies for the API routers."""
from dataclasses import dataclass
from uuid import UUID

from fastapi import Depends, Header, Request
from sqlalchemy.orm import Session

from app.config import get_settings
from app.database import get_db
from app.services.chunk_store import ChunkStore
from app.services.upload_service import UploadJobManager


@dataclass(slots=True)
class WorkspaceContext:
    """Tenant and owner identity supplied by the upstream auth layer."""

    workspace_id: UUID
    user_id: UUID


def get_workspace_context(
    x_workspace_id: UUID = Header(...),
    x_user_id: UUID = Header(...),
) -> WorkspaceContext:
    return WorkspaceContext(workspace_id=x_workspace_id, user_id=x_user_id)


def get_chunk_store() -> ChunkStore:
    return ChunkStore(get_settings().upload_dir)


def get_scheduler(request: Request):
    """Processing scheduler started by the application lifespan."""
    return getattr(request.app.state, "scheduler", None)


def get_upload_manager(
    db: Session = Depends(get_db),
    chunk_store: ChunkStore = Depends(get_chunk_store),
    scheduler=Depends(get_scheduler),
    context: WorkspaceContext = Depends(get_workspace_context),
) -> UploadJobManager:
    return UploadJobManager(db, chunk_store, scheduler, workspace_id=context.workspace_id)
