from conftest import CATALOG, build_catalog

from crm_access.schemas.menu_schemas import MenuItem, UserMenuGroup
from crm_access.services.access_resolver import build_user_menu
from crm_access.services.menu_tree import MenuTreeIndex
from crm_access.services.navigation import current_location_label, normalize_path, render_navigation
from crm_access.utils.icons import FALLBACK_ICON, ICON_MAP, resolve_icon


def _group(code, name, sort_order, items):
    return UserMenuGroup(menu_code=code, menu_name=name, sort_order=sort_order, accessible_menus=items)


def test_groups_and_items_follow_sort_order_and_labels():
    menu = [
        _group("SALES", "Sales", 2, [MenuItem(item_code="DEALS", url="/deals", sort_order=2), MenuItem(item_code="CONTACTS", url="/contacts", sort_order=1)]),
        _group("MAIN_NAV", "Main", 1, [MenuItem(item_code="DASHBOARD", url="/dashboard", icon="bar-chart-3")]),
        _group("CUSTOM", "Custom Group", 3, [MenuItem(item_code="X", url="/x", icon="does-not-exist")]),
    ]
    view = render_navigation(menu, "/contacts")

    assert [group.label for group in view.groups] == ["Main Navigation", "Sales Pipeline", "Custom Group"]
    assert [item.item_code for item in view.groups[1].items] == ["CONTACTS", "DEALS"]
    assert view.groups[0].items[0].icon == "BarChart3"
    assert view.groups[2].items[0].icon == FALLBACK_ICON
    assert view.active_item_code == "CONTACTS"
    assert not view.is_empty


def test_active_match_is_exact_ignoring_trailing_slash_and_query():
    menu = [_group("SALES", "Sales", 1, [MenuItem(item_code="DEALS", url="/deals"), MenuItem(item_code="DEALS_NEW", url="/deals/new")])]

    view = render_navigation(menu, "/deals/?tab=open#top")
    assert [item.is_active for item in view.groups[0].items] == [True, False]

    view = render_navigation(menu, "/deals/new/details")
    assert view.active_item_code is None


def test_empty_groups_are_omitted_and_empty_state_flagged():
    view = render_navigation([_group("SALES", "Sales", 1, [])], "/")
    assert view.groups == []
    assert view.is_empty


def test_current_location_label():
    assert current_location_label("/user-management") == "user management"
    assert current_location_label("/") == "Dashboard"
    assert current_location_label(None) == "Dashboard"
    assert normalize_path("/a/b/") == "/a/b"


def test_every_fixture_icon_resolves():
    tree = MenuTreeIndex(build_catalog())
    icons = {item.icon for menu in tree.menus for item in tree.items_of(menu.menu_code)}
    icons |= {menu["icon"] for menu in CATALOG}
    for icon in icons:
        assert resolve_icon(icon) != FALLBACK_ICON, icon


def test_icon_table_is_exhaustive_and_falls_back():
    for key, component in ICON_MAP.items():
        assert resolve_icon(key) == component
    assert resolve_icon("") == FALLBACK_ICON
    assert resolve_icon(None) == FALLBACK_ICON
    assert resolve_icon("sparkles") == FALLBACK_ICON


def test_navigation_from_resolved_catalog(catalog):
    user_menu = build_user_menu(MenuTreeIndex(catalog), {"SALES": ["DEALS"], "ADMINISTRATION": ["ROLES"]})
    view = render_navigation(user_menu, "/roles")
    assert [group.menu_code for group in view.groups] == ["SALES", "ADMINISTRATION"]
    assert view.active_item_code == "ROLES"
    assert view.current_location == "roles"
