"""
Selection engine for role menu grants.

Holds the in-progress "which menus and items does this role grant" state
while a role is created or edited. Everything here is pure and synchronous:
transitions are plain functions of (state, action, tree) and never raise.

The working state is always derived, never patched in place::

    state = fold(apply, recorded_actions, reconcile(persisted, tree).state)

so the persisted grants and the catalog tree can arrive in any order and the
result is re-derived whenever either of them changes.
"""

import enum
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from crm_access.schemas.role_schemas import MenuAccess, normalize_menu_access
from crm_access.services.menu_tree import MenuTreeIndex

logger = logging.getLogger(__name__)


class ActionType(enum.StrEnum):
    TOGGLE_MENU = "TOGGLE_MENU"
    TOGGLE_ITEM = "TOGGLE_ITEM"
    SELECT_ALL = "SELECT_ALL"
    SET_ITEM = "SET_ITEM"
    TOGGLE_EXPAND = "TOGGLE_EXPAND"
    CLEAR_ALL = "CLEAR_ALL"
    RESET = "RESET"


@dataclass(frozen=True)
class Action:
    type: ActionType
    menu_code: str | None = None
    item_code: str | None = None
    select: bool = True


@dataclass(frozen=True)
class SelectionState:
    """Immutable grant map plus the editor's expanded groups.

    ``grants`` keeps key insertion order so an untouched role is re-persisted
    exactly as it was loaded.
    """

    grants: tuple[tuple[str, tuple[str, ...]], ...] = ()
    expanded_menus: frozenset[str] = field(default_factory=frozenset)

    @classmethod
    def from_access(cls, menu_access: Mapping[str, Iterable[str]] | None, expanded: Iterable[str] = ()) -> "SelectionState":
        normalized = normalize_menu_access(menu_access)
        return cls(
            grants=tuple((menu_code, tuple(codes)) for menu_code, codes in normalized.items()),
            expanded_menus=frozenset(expanded),
        )

    @property
    def menu_access(self) -> MenuAccess:
        return {menu_code: list(codes) for menu_code, codes in self.grants}

    @property
    def selected_menus(self) -> tuple[str, ...]:
        return tuple(menu_code for menu_code, codes in self.grants if codes)

    def items_of(self, menu_code: str) -> tuple[str, ...]:
        for code, items in self.grants:
            if code == menu_code:
                return items
        return ()

    def is_menu_selected(self, menu_code: str) -> bool:
        return bool(self.items_of(menu_code))

    @property
    def selected_menu_count(self) -> int:
        return len(self.selected_menus)

    @property
    def selected_menu_item_count(self) -> int:
        return sum(len(codes) for _, codes in self.grants)

    def _with_access(self, menu_access: MenuAccess) -> "SelectionState":
        return SelectionState.from_access(menu_access, self.expanded_menus)


@dataclass(frozen=True)
class Reconciliation:
    state: SelectionState
    stale_grants: MenuAccess = field(default_factory=dict)
    tree_loaded: bool = False


def reconcile(persisted: Mapping[str, Iterable[str]] | None, tree: MenuTreeIndex | None) -> Reconciliation:
    """Rebuild the grant state from persisted ``menuAccess`` and the catalog tree.

    Without a tree the persisted map is taken as-is. With a tree, every
    granted item is filed under the menu that owns it (legacy maps keyed by
    anything else are re-homed), and items the catalog no longer knows are
    dropped and reported as stale.
    """
    normalized = normalize_menu_access(persisted)
    if tree is None:
        return Reconciliation(state=SelectionState.from_access(normalized))

    grants: MenuAccess = {}
    stale: MenuAccess = {}
    for menu_code, item_codes in normalized.items():
        for item_code in item_codes:
            owner = tree.owner_of(item_code)
            if owner is None:
                stale.setdefault(menu_code, []).append(item_code)
                continue
            bucket = grants.setdefault(owner, [])
            if item_code not in bucket:
                bucket.append(item_code)

    if stale:
        logger.info("Dropping grants to items missing from the catalog: %s", stale)
    return Reconciliation(state=SelectionState.from_access(grants), stale_grants=stale, tree_loaded=True)


def apply(
    state: SelectionState,
    action: Action,
    tree: MenuTreeIndex | None,
    base: SelectionState | None = None,
) -> SelectionState:
    """Return the state after ``action``. Unknown menus or items leave it unchanged."""
    if action.type == ActionType.RESET:
        return base if base is not None else SelectionState()
    if action.type == ActionType.CLEAR_ALL:
        return SelectionState(expanded_menus=state.expanded_menus)

    menu_code = action.menu_code
    if tree is None or not isinstance(menu_code, str) or menu_code not in tree:
        return state

    if action.type == ActionType.TOGGLE_EXPAND:
        expanded = set(state.expanded_menus)
        expanded.symmetric_difference_update({menu_code})
        return SelectionState(grants=state.grants, expanded_menus=frozenset(expanded))

    access = state.menu_access
    all_codes = list(tree.item_codes_of(menu_code))

    if action.type == ActionType.TOGGLE_MENU:
        if menu_code in access:
            del access[menu_code]
        else:
            access[menu_code] = all_codes
        return state._with_access(access)

    if action.type == ActionType.SELECT_ALL:
        if action.select:
            access[menu_code] = all_codes
        else:
            access.pop(menu_code, None)
        return state._with_access(access)

    if action.type in (ActionType.TOGGLE_ITEM, ActionType.SET_ITEM):
        item_code = action.item_code
        if menu_code not in access or item_code not in all_codes:
            return state
        current = access[menu_code]
        want = item_code not in current if action.type == ActionType.TOGGLE_ITEM else action.select
        if want and item_code not in current:
            current.append(item_code)
        elif not want and item_code in current:
            current.remove(item_code)
        return state._with_access(access)

    return state


def is_all_menu_items_selected(state: SelectionState, tree: MenuTreeIndex | None, menu_code: str) -> bool:
    if tree is None:
        return False
    all_codes = tree.item_codes_of(menu_code)
    selected = state.items_of(menu_code)
    return bool(all_codes) and all(code in selected for code in all_codes)


def is_any_menu_items_selected(state: SelectionState, menu_code: str) -> bool:
    return state.is_menu_selected(menu_code)


def check_invariants(state: SelectionState, tree: MenuTreeIndex | None) -> list[str]:
    """List every grant-model invariant the state violates (empty when sound)."""
    problems = []
    for menu_code, codes in state.grants:
        if not codes:
            problems.append(f"{menu_code}: empty item set must be an absent key")
        if len(set(codes)) != len(codes):
            problems.append(f"{menu_code}: duplicate item codes")
        if tree is None:
            continue
        if menu_code not in tree:
            problems.append(f"{menu_code}: not a menu of the catalog")
            continue
        allowed = set(tree.item_codes_of(menu_code))
        dangling = [code for code in codes if code not in allowed]
        if dangling:
            problems.append(f"{menu_code}: items outside the menu {dangling}")
    return problems


def _as_intent(action: Action, after: SelectionState) -> Action:
    # Toggles are recorded as absolute intents so that replaying them on a
    # re-derived base gives what the user saw, not its inverse.
    if action.type == ActionType.TOGGLE_MENU:
        return Action(ActionType.SELECT_ALL, action.menu_code, select=after.is_menu_selected(action.menu_code))
    if action.type == ActionType.TOGGLE_ITEM:
        return Action(
            ActionType.SET_ITEM,
            action.menu_code,
            action.item_code,
            select=action.item_code in after.items_of(action.menu_code),
        )
    return action


class SelectionEngine:
    """State container for role grant editing with named transitions."""

    def __init__(self, tree: MenuTreeIndex | None = None, persisted: Mapping[str, Iterable[str]] | None = None):
        self._tree = tree
        self._persisted = normalize_menu_access(persisted)
        self._actions: list[Action] = []
        self._base = Reconciliation(state=SelectionState())
        self._state = SelectionState()
        self._rederive()

    # -- inputs -------------------------------------------------------

    @property
    def tree(self) -> MenuTreeIndex | None:
        return self._tree

    def set_tree(self, tree: MenuTreeIndex | None) -> SelectionState:
        self._tree = tree
        return self._rederive()

    def set_persisted(self, menu_access: Mapping[str, Iterable[str]] | None) -> SelectionState:
        self._persisted = normalize_menu_access(menu_access)
        return self._rederive()

    def _rederive(self) -> SelectionState:
        self._base = reconcile(self._persisted, self._tree)
        state = self._base.state
        for action in self._actions:
            state = apply(state, action, self._tree, self._base.state)
        self._commit(state)
        return state

    # -- transitions --------------------------------------------------

    def dispatch(self, action: Action) -> SelectionState:
        if action.type == ActionType.RESET:
            self._actions.clear()
            self._commit(self._base.state)
            return self._state
        after = apply(self._state, action, self._tree, self._base.state)
        if after != self._state:
            self._actions.append(_as_intent(action, after))
        self._commit(after)
        return after

    def toggle_menu_selection(self, menu_code: str) -> SelectionState:
        return self.dispatch(Action(ActionType.TOGGLE_MENU, menu_code))

    def toggle_menu_item_selection(self, menu_code: str, item_code: str) -> SelectionState:
        return self.dispatch(Action(ActionType.TOGGLE_ITEM, menu_code, item_code))

    def select_all_menu_items(self, menu_code: str, select: bool) -> SelectionState:
        return self.dispatch(Action(ActionType.SELECT_ALL, menu_code, select=select))

    def toggle_menu_expansion(self, menu_code: str) -> SelectionState:
        return self.dispatch(Action(ActionType.TOGGLE_EXPAND, menu_code))

    def clear_all(self) -> SelectionState:
        return self.dispatch(Action(ActionType.CLEAR_ALL))

    def reset(self) -> SelectionState:
        return self.dispatch(Action(ActionType.RESET))

    def _commit(self, state: SelectionState) -> None:
        problems = check_invariants(state, self._tree if self._base.tree_loaded else None)
        if problems:
            logger.error("Selection state violates grant invariants: %s", problems)
        self._state = state

    # -- queries ------------------------------------------------------

    @property
    def state(self) -> SelectionState:
        return self._state

    @property
    def menu_access(self) -> MenuAccess:
        return self._state.menu_access

    @property
    def selected_menus(self) -> tuple[str, ...]:
        return self._state.selected_menus

    @property
    def stale_grants(self) -> MenuAccess:
        return {menu_code: list(codes) for menu_code, codes in self._base.stale_grants.items()}

    @property
    def is_dirty(self) -> bool:
        return self._state.grants != self._base.state.grants

    def is_all_menu_items_selected(self, menu_code: str) -> bool:
        return is_all_menu_items_selected(self._state, self._tree, menu_code)

    def is_any_menu_items_selected(self, menu_code: str) -> bool:
        return is_any_menu_items_selected(self._state, menu_code)

    @property
    def selected_menu_count(self) -> int:
        return self._state.selected_menu_count

    @property
    def selected_menu_item_count(self) -> int:
        return self._state.selected_menu_item_count
