"""Request and response models of the access and role editor endpoints."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from crm_access.schemas.menu_schemas import MenuItem, UserMenuGroup
from crm_access.schemas.role_schemas import RoleStatus
from crm_access.services.access_resolver import AccessSnapshot
from crm_access.services.route_guard import GuardDecision
from crm_access.services.selection_engine import ActionType


class AccessStateResponse(BaseModel):
    status: str
    is_loading: bool = Field(..., alias="isLoading")
    error: str | None = None
    source: str
    is_admin: bool = Field(False, alias="isAdmin")
    permissions: list[str] = Field(default_factory=list)
    roles: list[str] = Field(default_factory=list)
    user_menu: list[UserMenuGroup] = Field(default_factory=list, alias="userMenu")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_snapshot(cls, snapshot: AccessSnapshot) -> "AccessStateResponse":
        return cls(
            status=snapshot.status.value,
            is_loading=snapshot.is_loading,
            error=snapshot.error.value if snapshot.error else None,
            source=snapshot.source.value,
            is_admin=snapshot.is_admin,
            permissions=sorted(snapshot.permissions),
            roles=list(snapshot.roles),
            user_menu=list(snapshot.user_menu),
        )


class MenuGroupItemsResponse(BaseModel):
    menu_code: str = Field(..., alias="menuCode")
    items: list[MenuItem] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True)


class GuardDecisionResponse(BaseModel):
    state: str
    reason: str | None = None
    actions: list[str] = Field(default_factory=list)
    redirect_to: str | None = Field(None, alias="redirectTo")
    message: str = ""

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_decision(cls, decision: GuardDecision) -> "GuardDecisionResponse":
        return cls(
            state=decision.state.value,
            reason=decision.reason.value if decision.reason else None,
            actions=[action.value for action in decision.actions],
            redirect_to=decision.redirect_to,
            message=decision.message,
        )


# ============================================================================
# Role editor
# ============================================================================


class OpenEditorRequest(BaseModel):
    role_id: int | None = Field(None, alias="roleId")

    model_config = ConfigDict(populate_by_name=True)


class EditorFormUpdate(BaseModel):
    role_code: str | None = Field(None, alias="roleCode")
    role_name: str | None = Field(None, alias="roleName")
    description: str | None = None
    status: RoleStatus | None = None

    model_config = ConfigDict(populate_by_name=True)


class EditorActionRequest(BaseModel):
    type: ActionType
    menu_code: str | None = Field(None, alias="menuCode")
    item_code: str | None = Field(None, alias="itemCode")
    select: bool = True

    model_config = ConfigDict(populate_by_name=True)


class EditorSessionResponse(BaseModel):
    session_id: str = Field(..., alias="sessionId")
    editor: dict[str, Any]

    model_config = ConfigDict(populate_by_name=True)
