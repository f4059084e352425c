"""
Navigation renderer.

Turns a principal's visible menu groups into the sidebar model the SPA draws:
labelled groups in display order, items with resolved icons and the item
matching the current location flagged as active.
"""

from collections.abc import Iterable
from urllib.parse import urlsplit

from pydantic import BaseModel, ConfigDict, Field

from crm_access.schemas.menu_schemas import UserMenuGroup
from crm_access.services.menu_tree import sort_items
from crm_access.utils.icons import resolve_icon

GROUP_LABELS: dict[str, str] = {
    "MAIN_NAV": "Main Navigation",
    "SALES": "Sales Pipeline",
    "COMMUNICATIONS": "Communications",
    "AI_MARKETING": "AI Marketing",
    "SOCIAL_MEDIA": "Social Media",
    "BUSINESS_INTEL": "Business Intelligence",
    "ADMINISTRATION": "Administration",
    "MASTERS": "Masters Data",
}

DEFAULT_LOCATION_LABEL = "Dashboard"


class NavItem(BaseModel):
    item_code: str = Field(..., alias="itemCode")
    label: str
    url: str
    icon: str
    is_active: bool = Field(False, alias="isActive")

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class NavGroup(BaseModel):
    menu_code: str = Field(..., alias="menuCode")
    label: str
    items: list[NavItem]

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class NavigationView(BaseModel):
    groups: list[NavGroup] = Field(default_factory=list)
    is_empty: bool = Field(True, alias="isEmpty")
    current_location: str = Field(DEFAULT_LOCATION_LABEL, alias="currentLocation")
    active_item_code: str | None = Field(None, alias="activeItemCode")

    model_config = ConfigDict(populate_by_name=True)


def normalize_path(path: str | None) -> str:
    """Path component only, without query/fragment and trailing slash."""
    if not path:
        return "/"
    value = urlsplit(path).path or "/"
    if len(value) > 1:
        value = value.rstrip("/") or "/"
    return value


def is_active_path(item_url: str, current_path: str | None) -> bool:
    if not item_url:
        return False
    return normalize_path(item_url) == normalize_path(current_path)


def group_label(group: UserMenuGroup) -> str:
    return GROUP_LABELS.get(group.menu_code) or group.menu_name or group.menu_code


def current_location_label(path: str | None) -> str:
    segment = normalize_path(path).rsplit("/", 1)[-1]
    return segment.replace("-", " ") if segment else DEFAULT_LOCATION_LABEL


def render_navigation(user_menu: Iterable[UserMenuGroup], current_path: str | None = None) -> NavigationView:
    groups = []
    active_code = None
    for group in sorted(user_menu, key=lambda g: g.sort_order):
        items = []
        for item in sort_items(group.accessible_menus):
            active = is_active_path(item.url, current_path)
            if active and active_code is None:
                active_code = item.item_code
            items.append(
                NavItem(
                    item_code=item.item_code,
                    label=item.item_name or item.item_code,
                    url=item.url,
                    icon=resolve_icon(item.icon),
                    is_active=active,
                )
            )
        if items:
            groups.append(NavGroup(menu_code=group.menu_code, label=group_label(group), items=items))

    return NavigationView(
        groups=groups,
        is_empty=not groups,
        current_location=current_location_label(current_path),
        active_item_code=active_code,
    )
