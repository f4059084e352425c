"""
Role create/edit workflow.

``RoleEditor`` wraps a ``SelectionEngine`` with the role form fields, loads
the catalog tree and (in edit mode) the existing role concurrently, and
persists the result with a single create or update call.
"""

import asyncio
import enum
import logging
from dataclasses import asdict, dataclass
from typing import Any, Protocol

from crm_access.schemas.menu_schemas import Menu
from crm_access.schemas.role_schemas import Role, RolePayload, RoleStatus, validate_role_fields
from crm_access.services.menu_tree import MenuTreeIndex, MenuTreeLoader
from crm_access.services.selection_engine import Action, SelectionEngine
from crm_access.utils.errors import AccessError, ErrorKind, NotFound, ValidationFailure

logger = logging.getLogger(__name__)


class EditorMode(enum.StrEnum):
    CREATE = "create"
    EDIT = "edit"


class RoleBackend(Protocol):
    async def get_menu_tree(self) -> list[Menu]: ...

    async def get_role(self, role_id: int) -> Role: ...

    async def create_role_with_menu_access(self, payload: RolePayload) -> Role: ...

    async def update_role_with_menu_access(self, role_id: int, payload: RolePayload) -> Role: ...


@dataclass(frozen=True)
class RoleForm:
    role_code: str = ""
    role_name: str = ""
    description: str = ""
    status: RoleStatus = RoleStatus.ACTIVE


FORM_FIELDS = ("role_code", "role_name", "description", "status")


class RoleEditor:
    def __init__(self, role_id: int | None = None):
        self.role_id = role_id
        self.mode = EditorMode.EDIT if role_id is not None else EditorMode.CREATE
        self.engine = SelectionEngine()
        self.tree_loaded = False
        self.role_loaded = False
        self.role_missing = False
        self.is_system_role = False
        self.saving = False
        self.saved_role: Role | None = None
        self.field_errors: dict[str, str] = {}
        self.last_error: ErrorKind | None = None
        self.last_error_message: str | None = None
        self._base_form = RoleForm()
        self._form_edits: dict[str, Any] = {}

    # -- inputs -------------------------------------------------------

    def set_menu_tree(self, tree: MenuTreeIndex) -> None:
        self.engine.set_tree(tree)
        self.tree_loaded = True

    def set_existing_role(self, role: Role) -> None:
        self.role_id = role.id
        self.mode = EditorMode.EDIT
        self.is_system_role = role.is_system_role
        self._base_form = RoleForm(
            role_code=role.role_code,
            role_name=role.role_name,
            description=role.description or "",
            status=role.status,
        )
        self._form_edits.pop("role_code", None)
        self.engine.set_persisted(role.menu_access)
        self.role_loaded = True
        self.role_missing = False

    # -- editing ------------------------------------------------------

    @property
    def form(self) -> RoleForm:
        return RoleForm(**{**asdict(self._base_form), **self._form_edits})

    def update_form(self, **fields: Any) -> RoleForm:
        for name, value in fields.items():
            if name not in FORM_FIELDS:
                raise TypeError(f"unknown role form field: {name}")
            if value is None:
                continue
            if name == "role_code" and self.mode == EditorMode.EDIT:
                logger.warning("Ignoring roleCode change on existing role %s", self.role_id)
                continue
            if name == "status":
                value = RoleStatus(value)
            self._form_edits[name] = value
        self.field_errors = {}
        return self.form

    def dispatch(self, action: Action) -> None:
        self.engine.dispatch(action)

    def validate(self) -> dict[str, str]:
        form = self.form
        self.field_errors = validate_role_fields(form.role_code, form.role_name)
        return self.field_errors

    def build_payload(self) -> RolePayload:
        errors = self.validate()
        if errors:
            raise ValidationFailure(errors)
        form = self.form
        return RolePayload(
            role_code=form.role_code.strip(),
            role_name=form.role_name.strip(),
            description=form.description or None,
            status=form.status,
            menu_access=self.engine.menu_access,
        )

    @property
    def is_dirty(self) -> bool:
        return bool(self._form_edits) or self.engine.is_dirty

    # -- I/O ----------------------------------------------------------

    async def load(self, client: RoleBackend) -> None:
        """Fetch the tree and, when editing, the role; each is applied as it arrives."""

        async def _load_tree() -> None:
            try:
                self.set_menu_tree(await MenuTreeLoader(client).load())
            except AccessError as exc:
                logger.error("Failed to load menu data: %s", exc)
                self._record_failure(exc)

        async def _load_role() -> None:
            try:
                self.set_existing_role(await client.get_role(self.role_id))
            except NotFound as exc:
                logger.warning("Role %s not found; editor left on empty defaults", self.role_id)
                self.role_missing = True
                self._record_failure(exc)
            except AccessError as exc:
                logger.error("Failed to load role %s: %s", self.role_id, exc)
                self._record_failure(exc)

        loaders = [_load_tree()]
        if self.mode == EditorMode.EDIT and self.role_id is not None:
            loaders.append(_load_role())
        await asyncio.gather(*loaders)

    async def save(self, client: RoleBackend) -> Role:
        """Persist with one remote call. On failure the editor keeps its state."""
        try:
            payload = self.build_payload()
        except ValidationFailure as exc:
            self._record_failure(exc)
            raise

        self.saving = True
        try:
            if self.mode == EditorMode.EDIT and self.role_id is not None:
                role = await client.update_role_with_menu_access(self.role_id, payload)
            else:
                role = await client.create_role_with_menu_access(payload)
        except AccessError as exc:
            logger.error("Failed to %s role %s: %s", self.mode.value, payload.role_code, exc)
            self._record_failure(exc)
            raise
        finally:
            self.saving = False

        logger.info("Role %s saved (id=%s)", role.role_code, role.id)
        self.saved_role = role
        self.last_error = None
        self.last_error_message = None
        self._form_edits = {}
        self.set_existing_role(role)
        self.engine.reset()
        return role

    def _record_failure(self, exc: AccessError) -> None:
        self.last_error = exc.kind
        self.last_error_message = exc.message

    # -- presentation -------------------------------------------------

    def view(self) -> dict[str, Any]:
        engine = self.engine
        state = engine.state
        menus = []
        if engine.tree is not None:
            for menu in engine.tree.menus:
                selected = state.items_of(menu.menu_code)
                menus.append(
                    {
                        "menuCode": menu.menu_code,
                        "menuName": menu.menu_name,
                        "icon": menu.icon,
                        "expanded": menu.menu_code in state.expanded_menus,
                        "isAllSelected": engine.is_all_menu_items_selected(menu.menu_code),
                        "isAnySelected": engine.is_any_menu_items_selected(menu.menu_code),
                        "selectedCount": len(selected),
                        "items": [
                            {
                                "itemCode": item.item_code,
                                "itemName": item.item_name,
                                "selected": item.item_code in selected,
                            }
                            for item in engine.tree.items_of(menu.menu_code)
                        ],
                    }
                )

        form = self.form
        return {
            "mode": self.mode.value,
            "roleId": self.role_id,
            "form": {
                "roleCode": form.role_code,
                "roleName": form.role_name,
                "description": form.description,
                "status": form.status.value,
            },
            "isSystemRole": self.is_system_role,
            "menuAccess": engine.menu_access,
            "selectedMenus": list(engine.selected_menus),
            "expandedMenus": sorted(state.expanded_menus),
            "selectedMenuCount": engine.selected_menu_count,
            "selectedMenuItemCount": engine.selected_menu_item_count,
            "menus": menus,
            "staleGrants": engine.stale_grants,
            "treeLoaded": self.tree_loaded,
            "roleLoaded": self.role_loaded,
            "roleMissing": self.role_missing,
            "isDirty": self.is_dirty,
            "saving": self.saving,
            "fieldErrors": dict(self.field_errors),
            "lastError": self.last_error.value if self.last_error else None,
            "lastErrorMessage": self.last_error_message,
        }
