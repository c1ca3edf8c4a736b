"""
api/routes/context.py -- Expose and change the resolved (user, project) context.

Routes:
  GET /api/context          -- {"user_id", "project_id"} as the resolver sees this request
  PUT /api/context/project  -- switch the active project; sets pm_project_id
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from api.models import ContextResponse, ProjectSelect
from auth.tokens import set_project_cookie
from projects.context import RequestContext, get_request_context
from projects.store import ProjectStore

router = APIRouter()


@router.get("/context", response_model=ContextResponse)
def get_context(ctx: RequestContext = Depends(get_request_context)) -> ContextResponse:
    return ContextResponse(user_id=ctx.user_id, project_id=ctx.project_id)


@router.put("/context/project", response_model=ContextResponse)
def select_project(
    request: Request,
    body: ProjectSelect,
    ctx: RequestContext = Depends(get_request_context),
) -> JSONResponse:
    """Make body.project_id the active project for later requests.

    Returns 404 for projects that do not exist or that the user is not a
    member of, so ids of other tenants' projects are not disclosed.
    """
    project_store: ProjectStore = request.app.state.project_store
    if not project_store.is_member(body.project_id, ctx.user_id):
        raise HTTPException(status_code=404, detail="Project not found")
    resp = JSONResponse(content=ContextResponse(user_id=ctx.user_id, project_id=body.project_id).model_dump())
    set_project_cookie(resp, body.project_id)
    return resp
