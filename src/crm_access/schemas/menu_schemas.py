"""
Menu catalog schemas.

These mirror the upstream CRM wire format (camelCase) and are the only
representation of menus and menu items used inside the service.
"""

import enum
import logging
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator

logger = logging.getLogger(__name__)


class ItemStatus(enum.StrEnum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


class MenuItem(BaseModel):
    """A single navigable destination inside a menu group."""

    id: int | str | None = None
    item_code: str = Field(..., alias="itemCode", min_length=1)
    item_name: str = Field("", alias="itemName")
    item_type: str = Field("LINK", alias="itemType")
    url: str = ""
    icon: str = ""
    sort_order: int = Field(0, alias="sortOrder")
    requires_permission: str = Field("", alias="requiresPermission")
    menu_code: str | None = Field(None, alias="menuCode")
    parent_id: int | str | None = Field(None, alias="parentId")
    status: ItemStatus = ItemStatus.ACTIVE

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    @model_validator(mode="before")
    @classmethod
    def _coerce_legacy_fields(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        # Older endpoints send isActive instead of status
        if "status" not in data and "isActive" in data:
            data["status"] = ItemStatus.ACTIVE if data.get("isActive") else ItemStatus.INACTIVE
        if "parentId" not in data and "parentItemId" in data:
            data["parentId"] = data.get("parentItemId")
        for key in ("icon", "url", "requiresPermission", "itemName"):
            if data.get(key) is None and key in data:
                data[key] = ""
        return data

    @property
    def is_active(self) -> bool:
        return self.status == ItemStatus.ACTIVE


class Menu(BaseModel):
    """A menu group with its ordered items."""

    id: int | str | None = None
    menu_code: str = Field(..., alias="menuCode", min_length=1)
    menu_name: str = Field("", alias="menuName")
    description: str | None = None
    icon: str = "layout"
    sort_order: int = Field(0, alias="sortOrder")
    items: list[MenuItem] = Field(
        default_factory=list,
        validation_alias=AliasChoices("menuItems", "items"),
        serialization_alias="menuItems",
    )

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @model_validator(mode="after")
    def _bind_items_to_menu(self) -> "Menu":
        bound = []
        for item in self.items:
            if item.menu_code is None:
                item = item.model_copy(update={"menu_code": self.menu_code})
            elif item.menu_code != self.menu_code:
                logger.warning(
                    "Dropping item %s: filed under menu %s but names menu %s", item.item_code, self.menu_code, item.menu_code
                )
                continue
            bound.append(item)
        self.items = bound
        return self


class UserMenuGroup(BaseModel):
    """A menu group already filtered down to what a principal may see."""

    menu_code: str = Field(..., alias="menuCode")
    menu_name: str = Field("", alias="menuName")
    description: str | None = None
    icon: str = "layout"
    sort_order: int = Field(0, alias="sortOrder")
    accessible_menus: list[MenuItem] = Field(default_factory=list, alias="accessibleMenus")

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class UserAccess(BaseModel):
    """Identity record of the current principal as returned upstream."""

    permissions: list[str] = Field(default_factory=list)
    roles: list[str] = Field(default_factory=list)

    model_config = ConfigDict(extra="ignore")
