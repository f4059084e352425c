"""
Router for role management.

Lists and deletes roles, and drives server-side role editor sessions: open an
editor (create or edit), apply form changes and selection actions, then save
with a single call to the CRM role service.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status

from crm_access.dependencies.authz import (
    current_principal_dependency,
    grant_cache_dep,
    principal_client_dependency,
    registry_dep,
    require_menu_access,
)
from crm_access.dependencies.crm_api_client import get_editor_store
from crm_access.external_services.crm_api_client import CRMAPIClient
from crm_access.schemas.access_schemas import (
    EditorActionRequest,
    EditorFormUpdate,
    EditorSessionResponse,
    OpenEditorRequest,
)
from crm_access.schemas.role_schemas import RolePage, RoleSearchParams
from crm_access.services.access_resolver import ResolverRegistry
from crm_access.services.editor_store import EditorSession, RoleEditorStore
from crm_access.services.grant_cache import GrantCacheService
from crm_access.services.role_editor import RoleEditor
from crm_access.services.selection_engine import Action
from crm_access.utils.auth import Principal
from crm_access.utils.errors import AccessError, ValidationFailure, http_status_for

logger = logging.getLogger(__name__)

ROLES_ITEM_CODE = "ROLES"

router = APIRouter(
    prefix="/api/roles",
    tags=["Role_Management"],
    dependencies=[Depends(require_menu_access(ROLES_ITEM_CODE))],
)

editor_store_dependency = Depends(get_editor_store)


def _raise_for(e: AccessError, action: str):
    if isinstance(e, ValidationFailure):
        raise HTTPException(status.HTTP_422_UNPROCESSABLE_ENTITY, detail={"message": e.message, "errors": e.errors}) from e
    logger.error("Error %s: %s", action, e, exc_info=True)
    raise HTTPException(status_code=http_status_for(e), detail={"kind": e.kind.value, "message": e.message}) from e


def _invalidate_grants(grant_cache: GrantCacheService, registry: ResolverRegistry) -> None:
    # Any principal may hold the changed role.
    cleared = grant_cache.invalidate_all()
    stale = registry.invalidate_all()
    logger.info("Role changed: cleared %d cached grant entries, marked %d resolvers stale", cleared, stale)


# ============================================================================
# Roles
# ============================================================================


@router.get(
    "",
    response_model=RolePage,
    summary="List roles",
    description="Paginated role list from the CRM role service.",
)
async def list_roles(
    page: int = Query(0, ge=0),
    size: int = Query(10, ge=1, le=200),
    sort_by: str = Query("id", alias="sortBy"),
    sort_direction: str = Query("asc", alias="sortDirection", pattern="^(asc|desc)$"),
    client: CRMAPIClient = principal_client_dependency,
):
    params = RoleSearchParams(page=page, size=size, sort_by=sort_by, sort_direction=sort_direction)
    try:
        return await client.get_roles_paginated(params)
    except AccessError as e:
        _raise_for(e, "listing roles")


@router.delete(
    "/{role_id}",
    summary="Delete role",
    description="Delete a role. System roles cannot be deleted.",
)
async def delete_role(
    role_id: int,
    client: CRMAPIClient = principal_client_dependency,
    grant_cache: GrantCacheService = grant_cache_dep,
    registry: ResolverRegistry = registry_dep,
):
    try:
        role = await client.get_role(role_id)
        if role.is_system_role:
            raise HTTPException(status.HTTP_409_CONFLICT, "system roles cannot be deleted")
        await client.delete_role(role_id)
    except AccessError as e:
        _raise_for(e, f"deleting role {role_id}")
    _invalidate_grants(grant_cache, registry)
    return {"deleted": role_id}


# ============================================================================
# Role editor sessions
# ============================================================================


def _session_response(session: EditorSession) -> EditorSessionResponse:
    return EditorSessionResponse(session_id=session.session_id, editor=session.editor.view())


def _get_session(session_id: str, principal: Principal, store: RoleEditorStore) -> EditorSession:
    session = store.get(session_id, principal.cache_key)
    if session is None:
        raise HTTPException(status.HTTP_404_NOT_FOUND, "editor session not found")
    return session


@router.post(
    "/editor",
    response_model=EditorSessionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Open role editor",
    description="Start a create (no `roleId`) or edit session. The catalog and the role are loaded concurrently.",
)
async def open_editor(
    body: OpenEditorRequest,
    principal: Principal = current_principal_dependency,
    client: CRMAPIClient = principal_client_dependency,
    store: RoleEditorStore = editor_store_dependency,
):
    editor = RoleEditor(role_id=body.role_id)
    await editor.load(client)
    session = store.open(principal.cache_key, editor)
    return _session_response(session)


@router.get("/editor/{session_id}", response_model=EditorSessionResponse, summary="Get role editor")
async def get_editor(
    session_id: str,
    principal: Principal = current_principal_dependency,
    store: RoleEditorStore = editor_store_dependency,
):
    return _session_response(_get_session(session_id, principal, store))


@router.delete("/editor/{session_id}", status_code=status.HTTP_204_NO_CONTENT, summary="Close role editor")
async def close_editor(
    session_id: str,
    principal: Principal = current_principal_dependency,
    store: RoleEditorStore = editor_store_dependency,
):
    if not store.close(session_id, principal.cache_key):
        raise HTTPException(status.HTTP_404_NOT_FOUND, "editor session not found")


@router.patch("/editor/{session_id}/form", response_model=EditorSessionResponse, summary="Update role form")
async def update_editor_form(
    session_id: str,
    body: EditorFormUpdate,
    principal: Principal = current_principal_dependency,
    store: RoleEditorStore = editor_store_dependency,
):
    session = _get_session(session_id, principal, store)
    session.editor.update_form(**body.model_dump(exclude_none=True))
    return _session_response(session)


@router.post(
    "/editor/{session_id}/actions",
    response_model=EditorSessionResponse,
    summary="Apply selection action",
    description="TOGGLE_MENU, TOGGLE_ITEM, SELECT_ALL, SET_ITEM, TOGGLE_EXPAND, CLEAR_ALL or RESET. Unknown codes are ignored.",
)
async def apply_editor_action(
    session_id: str,
    body: EditorActionRequest,
    principal: Principal = current_principal_dependency,
    store: RoleEditorStore = editor_store_dependency,
):
    session = _get_session(session_id, principal, store)
    session.editor.dispatch(Action(body.type, body.menu_code, body.item_code, body.select))
    return _session_response(session)


@router.post(
    "/editor/{session_id}/save",
    response_model=EditorSessionResponse,
    summary="Save role",
    description="Validate and persist the role with its menu access. On failure the session keeps its state for retry.",
)
async def save_editor(
    session_id: str,
    principal: Principal = current_principal_dependency,
    client: CRMAPIClient = principal_client_dependency,
    store: RoleEditorStore = editor_store_dependency,
    grant_cache: GrantCacheService = grant_cache_dep,
    registry: ResolverRegistry = registry_dep,
):
    session = _get_session(session_id, principal, store)
    try:
        await session.editor.save(client)
    except AccessError as e:
        _raise_for(e, f"saving role in session {session_id}")
    _invalidate_grants(grant_cache, registry)
    return _session_response(session)
