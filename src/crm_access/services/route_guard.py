"""
Route guards.

A guard evaluates an ``AccessSnapshot`` against a predicate and decides
whether a protected destination renders, shows an error panel, waits, or
redirects to the unauthorized page. Evaluation is pure: the same snapshot
always yields the same decision.
"""

import enum
import logging
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass

from crm_access.services.access_resolver import AccessResolver, AccessSnapshot
from crm_access.utils.errors import ErrorKind

logger = logging.getLogger(__name__)

UNAUTHORIZED_PATH = "/unauthorized"


class GuardState(enum.StrEnum):
    LOADING = "LOADING"
    DENIED = "DENIED"
    GRANTED = "GRANTED"
    REDIRECT = "REDIRECT"


class GuardAction(enum.StrEnum):
    TRY_AGAIN = "TRY_AGAIN"
    GO_BACK = "GO_BACK"
    RETRY_CONNECTION = "RETRY_CONNECTION"
    REFRESH_PAGE = "REFRESH_PAGE"


@dataclass(frozen=True)
class GuardDecision:
    state: GuardState
    reason: ErrorKind | None = None
    actions: tuple[GuardAction, ...] = ()
    redirect_to: str | None = None
    message: str = ""

    @property
    def granted(self) -> bool:
        return self.state == GuardState.GRANTED


LOADING = GuardDecision(GuardState.LOADING)
GRANTED = GuardDecision(GuardState.GRANTED)

ACCESS_DENIED_PANEL = GuardDecision(
    GuardState.DENIED,
    reason=ErrorKind.ACCESS_DENIED,
    actions=(GuardAction.TRY_AGAIN, GuardAction.GO_BACK),
    message="You don't have permission to access this page. Please contact your administrator if you believe this is an error.",
)
NETWORK_PANEL = GuardDecision(
    GuardState.DENIED,
    reason=ErrorKind.NETWORK,
    actions=(GuardAction.RETRY_CONNECTION, GuardAction.REFRESH_PAGE),
    message="Unable to verify your access permissions. Please check your internet connection and try again.",
)


def _redirect(unauthorized_path: str) -> GuardDecision:
    return GuardDecision(GuardState.REDIRECT, redirect_to=unauthorized_path)


def role_allowed(roles: Sequence[str], allowed_roles: Iterable[str] = (), restricted_roles: Iterable[str] = ()) -> bool:
    """Check the primary (first) role; principals without roles are not role-gated."""
    if not roles:
        return True
    primary = roles[0]
    allowed = tuple(allowed_roles)
    if allowed and primary not in allowed:
        return False
    return primary not in tuple(restricted_roles)


def evaluate_guard(
    snapshot: AccessSnapshot,
    predicate: Callable[[AccessSnapshot], bool],
    *,
    roles: Sequence[str] = (),
    allowed_roles: Iterable[str] = (),
    restricted_roles: Iterable[str] = (),
    unauthorized_path: str = UNAUTHORIZED_PATH,
) -> GuardDecision:
    if snapshot.is_loading:
        return LOADING
    if snapshot.error == ErrorKind.ACCESS_DENIED:
        return ACCESS_DENIED_PANEL
    if snapshot.error == ErrorKind.NETWORK:
        return NETWORK_PANEL
    # Any other error, including the fallback account menu, never grants.
    if snapshot.error:
        return _redirect(unauthorized_path)
    if not predicate(snapshot):
        return _redirect(unauthorized_path)
    if not role_allowed(roles, allowed_roles, restricted_roles):
        return _redirect(unauthorized_path)
    return GRANTED


class MenuItemGuard:
    """Gate on a menu item grant, optionally with a permission on top."""

    def __init__(
        self,
        item_code: str,
        permission_code: str | None = None,
        *,
        check_item_permission: bool = False,
        allowed_roles: Iterable[str] = (),
        restricted_roles: Iterable[str] = (),
        unauthorized_path: str = UNAUTHORIZED_PATH,
    ):
        self.item_code = item_code
        self.permission_code = permission_code
        self.check_item_permission = check_item_permission
        self.allowed_roles = tuple(allowed_roles)
        self.restricted_roles = tuple(restricted_roles)
        self.unauthorized_path = unauthorized_path

    def _predicate(self, snapshot: AccessSnapshot) -> bool:
        if self.check_item_permission:
            if not snapshot.can_open(self.item_code):
                return False
        elif not snapshot.has_menu_access(self.item_code):
            return False
        return not self.permission_code or snapshot.has_permission(self.permission_code)

    def evaluate(self, snapshot: AccessSnapshot, roles: Sequence[str] = ()) -> GuardDecision:
        return evaluate_guard(
            snapshot,
            self._predicate,
            roles=roles,
            allowed_roles=self.allowed_roles,
            restricted_roles=self.restricted_roles,
            unauthorized_path=self.unauthorized_path,
        )


class PermissionGuard:
    """Gate on a literal permission code."""

    def __init__(
        self,
        permission_code: str,
        *,
        allowed_roles: Iterable[str] = (),
        restricted_roles: Iterable[str] = (),
        unauthorized_path: str = UNAUTHORIZED_PATH,
    ):
        self.permission_code = permission_code
        self.allowed_roles = tuple(allowed_roles)
        self.restricted_roles = tuple(restricted_roles)
        self.unauthorized_path = unauthorized_path

    def evaluate(self, snapshot: AccessSnapshot, roles: Sequence[str] = ()) -> GuardDecision:
        return evaluate_guard(
            snapshot,
            lambda s: s.has_permission(self.permission_code),
            roles=roles,
            allowed_roles=self.allowed_roles,
            restricted_roles=self.restricted_roles,
            unauthorized_path=self.unauthorized_path,
        )


class ReactiveRouteGuard:
    """Re-evaluates a guard on every resolver change, reporting only transitions."""

    def __init__(
        self,
        resolver: AccessResolver,
        guard: MenuItemGuard | PermissionGuard,
        on_change: Callable[[GuardDecision], None],
    ):
        self.resolver = resolver
        self.guard = guard
        self.on_change = on_change
        self.decision = self._evaluate(resolver.snapshot)
        self._unsubscribe = resolver.subscribe(self._handle)

    def _evaluate(self, snapshot: AccessSnapshot) -> GuardDecision:
        return self.guard.evaluate(snapshot, self.resolver.principal.roles)

    def _handle(self, snapshot: AccessSnapshot) -> None:
        decision = self._evaluate(snapshot)
        if decision == self.decision:
            return
        logger.debug("Guard decision changed: %s -> %s", self.decision.state, decision.state)
        self.decision = decision
        self.on_change(decision)

    def close(self) -> None:
        self._unsubscribe()
