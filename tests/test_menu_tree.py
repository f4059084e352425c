import pytest
from conftest import MockCRMClient

from crm_access.schemas.menu_schemas import ItemStatus, Menu, MenuItem
from crm_access.services.menu_tree import MenuTreeIndex, MenuTreeLoader


def test_items_are_ordered_by_sort_order(catalog):
    tree = MenuTreeIndex(catalog)
    assert tree.menu_codes == ("MAIN_NAV", "SALES", "ADMINISTRATION", "MASTERS")
    assert tree.item_codes_of("SALES") == ("CONTACTS", "DEALS", "QUOTES")


def test_owner_lookup_and_unknown_codes(catalog):
    tree = MenuTreeIndex(catalog)
    assert tree.owner_of("DEALS") == "SALES"
    assert tree.owner_of("NOPE") is None
    assert tree.get_item("ROLES").requires_permission == "ROLE_MANAGE"
    assert tree.item_codes_of("UNKNOWN") == ()
    assert "SALES" in tree
    assert "UNKNOWN" not in tree
    assert None not in tree


def test_duplicate_item_code_is_kept_under_first_menu():
    menus = [
        Menu(menu_code="A", sort_order=1, items=[MenuItem(item_code="X")]),
        Menu(menu_code="B", sort_order=2, items=[MenuItem(item_code="X"), MenuItem(item_code="Y")]),
    ]
    tree = MenuTreeIndex(menus)
    assert tree.owner_of("X") == "A"
    assert tree.item_codes_of("B") == ("Y",)


def test_legacy_is_active_flag_maps_to_status():
    item = MenuItem.model_validate({"itemCode": "Q", "isActive": False, "icon": None, "parentItemId": 4})
    assert item.status == ItemStatus.INACTIVE
    assert not item.is_active
    assert item.icon == ""
    assert item.parent_id == 4


def test_items_inherit_menu_code_and_drop_foreign_items(caplog):
    menu = Menu.model_validate({"menuCode": "SALES", "items": [{"itemCode": "DEALS"}]})
    assert menu.items[0].menu_code == "SALES"

    menu = Menu.model_validate(
        {
            "menuCode": "SALES",
            "menuItems": [{"itemCode": "DEALS", "menuCode": "MAIN_NAV"}, {"itemCode": "CONTACTS", "menuCode": "SALES"}],
        }
    )
    assert [item.item_code for item in menu.items] == ["CONTACTS"]
    assert "Dropping item DEALS" in caplog.text


@pytest.mark.asyncio
async def test_loader_builds_index_from_catalog():
    client = MockCRMClient()
    tree = await MenuTreeLoader(client).load()
    assert len(tree) == 4
    assert client.calls["get_menu_tree"] == 1
