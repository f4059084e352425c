"""
Menu tree loader and lookup index.

The catalog arrives as a list of menus with embedded items. ``MenuTreeIndex``
answers the questions every other component asks of it: which menus exist,
which items a menu holds (in display order) and which menu owns an item.
"""

import logging
from collections.abc import Iterable
from typing import Protocol

from crm_access.schemas.menu_schemas import Menu, MenuItem

logger = logging.getLogger(__name__)


class MenuCatalog(Protocol):
    async def get_menu_tree(self) -> list[Menu]: ...


def sort_items(items: Iterable[MenuItem]) -> list[MenuItem]:
    # sorted() is stable, so equal sortOrder keeps catalog order
    return sorted(items, key=lambda item: item.sort_order)


class MenuTreeIndex:
    """Read-only index over the menu catalog."""

    def __init__(self, menus: Iterable[Menu]):
        self._menus: list[Menu] = []
        self._by_code: dict[str, Menu] = {}
        self._items: dict[str, tuple[MenuItem, ...]] = {}
        self._owner: dict[str, str] = {}

        for menu in sorted(menus, key=lambda m: m.sort_order):
            if menu.menu_code in self._by_code:
                logger.warning("Duplicate menu code in catalog ignored: %s", menu.menu_code)
                continue
            items = []
            for item in sort_items(menu.items):
                if item.item_code in self._owner:
                    logger.warning(
                        "Item %s listed under %s is already owned by %s; ignored",
                        item.item_code,
                        menu.menu_code,
                        self._owner[item.item_code],
                    )
                    continue
                self._owner[item.item_code] = menu.menu_code
                items.append(item)
            self._menus.append(menu)
            self._by_code[menu.menu_code] = menu
            self._items[menu.menu_code] = tuple(items)

    def __len__(self) -> int:
        return len(self._menus)

    def __contains__(self, menu_code: object) -> bool:
        return isinstance(menu_code, str) and menu_code in self._by_code

    @property
    def menus(self) -> tuple[Menu, ...]:
        return tuple(self._menus)

    @property
    def menu_codes(self) -> tuple[str, ...]:
        return tuple(menu.menu_code for menu in self._menus)

    def items_of(self, menu_code: str) -> tuple[MenuItem, ...]:
        return self._items.get(menu_code, ())

    def item_codes_of(self, menu_code: str) -> tuple[str, ...]:
        return tuple(item.item_code for item in self.items_of(menu_code))

    def owner_of(self, item_code: str) -> str | None:
        return self._owner.get(item_code)

    def get_item(self, item_code: str) -> MenuItem | None:
        owner = self._owner.get(item_code)
        if owner is None:
            return None
        for item in self._items[owner]:
            if item.item_code == item_code:
                return item
        return None


class MenuTreeLoader:
    """Fetches the full catalog and builds a ``MenuTreeIndex`` from it."""

    def __init__(self, catalog: MenuCatalog):
        self._catalog = catalog

    async def load(self) -> MenuTreeIndex:
        menus = await self._catalog.get_menu_tree()
        index = MenuTreeIndex(menus)
        logger.debug("Menu tree loaded: %d menus", len(index))
        return index
