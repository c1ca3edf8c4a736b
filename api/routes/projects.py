"""
api/routes/projects.py -- Project CRUD and membership management.

Routes:
  GET    /api/projects        -- projects the caller is a member of
  POST   /api/projects        -- create a project owned by the caller
  PATCH  /api/projects/{id}   -- owner or admin: rename, replace member list
  DELETE /api/projects/{id}   -- owner or admin: delete (owner keeps at least one)

Project names are unique per owner, compared case-insensitively.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Path, Request

from api.models import ProjectCreate, ProjectPatch, ProjectResponse, SuccessResponse
from auth.dependencies import get_current_user
from auth.models import User
from auth.store import MAX_ROW_ID, UserStore
from projects.models import Project
from projects.store import ProjectStore

logger = logging.getLogger("pmtracker.api.projects")

router = APIRouter()


def _get_manageable_project(store: ProjectStore, project_id: int, user: User) -> Project:
    """Return the project if user owns it or is an admin. 404 / 403 otherwise."""
    project = store.get_project(project_id)
    if project is None:
        raise HTTPException(status_code=404, detail="Project not found")
    if project.user_id != user.id and not user.is_admin:
        raise HTTPException(status_code=403, detail="Only the project owner can change this project")
    return project


@router.get("/projects", response_model=list[ProjectResponse])
def list_projects(request: Request, current_user: User = Depends(get_current_user)) -> list[ProjectResponse]:
    project_store: ProjectStore = request.app.state.project_store
    return [ProjectResponse.from_project(p) for p in project_store.list_projects_for_member(current_user.id)]


@router.post("/projects", response_model=ProjectResponse, status_code=201)
def create_project(
    request: Request,
    body: ProjectCreate,
    current_user: User = Depends(get_current_user),
) -> ProjectResponse:
    project_store: ProjectStore = request.app.state.project_store
    if project_store.find_owned_by_name(current_user.id, body.name) is not None:
        raise HTTPException(status_code=409, detail="You already have a project with that name")
    project_id = project_store.create_project(current_user.id, body.name)
    logger.info("User %d created project %d", current_user.id, project_id)
    return ProjectResponse.from_project(project_store.get_project(project_id))


@router.patch("/projects/{project_id}", response_model=ProjectResponse)
def update_project(
    request: Request,
    body: ProjectPatch,
    project_id: int = Path(gt=0, le=MAX_ROW_ID),
    current_user: User = Depends(get_current_user),
) -> ProjectResponse:
    """Rename a project and/or replace its member list.

    Unknown user ids in member_user_ids are ignored. The owner always remains
    a member.
    """
    project_store: ProjectStore = request.app.state.project_store
    user_store: UserStore = request.app.state.user_store
    project = _get_manageable_project(project_store, project_id, current_user)

    if body.name is not None:
        if not body.name:
            raise HTTPException(status_code=400, detail="Project name is required")
        if project_store.find_owned_by_name(project.user_id, body.name, exclude_id=project_id) is not None:
            raise HTTPException(status_code=409, detail="You already have a project with that name")
        project_store.rename_project(project_id, body.name)

    if body.member_user_ids is not None:
        known = [uid for uid in body.member_user_ids if 0 < uid <= MAX_ROW_ID and user_store.user_exists(uid)]
        project_store.replace_members(project_id, known, added_by=current_user.id)

    return ProjectResponse.from_project(project_store.get_project(project_id))


@router.delete("/projects/{project_id}", response_model=SuccessResponse)
def delete_project(
    request: Request,
    project_id: int = Path(gt=0, le=MAX_ROW_ID),
    current_user: User = Depends(get_current_user),
) -> SuccessResponse:
    project_store: ProjectStore = request.app.state.project_store
    project = _get_manageable_project(project_store, project_id, current_user)
    if project_store.count_owned(project.user_id) <= 1:
        raise HTTPException(status_code=400, detail="At least one project must remain")
    project_store.delete_project(project_id)
    logger.info("User %d deleted project %d", current_user.id, project_id)
    return SuccessResponse()
