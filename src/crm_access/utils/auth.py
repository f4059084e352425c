import logging
import os
from dataclasses import dataclass, field

import jwt

logger = logging.getLogger(__name__)

# === Config ===
# Tokens are issued by the CRM identity service; this service only verifies them.
JWT_SECRET = os.environ.get("JWT_SECRET", "change_this_secret")
JWT_ALG = os.environ.get("JWT_ALG", "HS256")

ADMIN_ROLES = frozenset({"ADMIN", "ADMINISTRATOR"})


def decode_jwt(token: str) -> dict | None:
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALG])
    except jwt.ExpiredSignatureError:
        logger.debug("JWT decode failed: token expired")
        return None
    except jwt.InvalidTokenError as exc:
        logger.debug("JWT decode failed: %s", exc)
        return None


@dataclass(frozen=True)
class Principal:
    """The authenticated CRM user a request acts for."""

    user_id: int | str
    token: str = field(repr=False)
    role_id: int | None = None
    roles: tuple[str, ...] = ()
    tenant_id: str | None = None
    billing_status: str | None = None

    @property
    def is_admin(self) -> bool:
        return any(role.upper() in ADMIN_ROLES for role in self.roles)

    @property
    def cache_key(self) -> str:
        # role_id is part of the key so a reassigned user never sees old grants
        parts = [str(self.tenant_id or "default"), str(self.user_id), str(self.role_id or "-")]
        return ":".join(parts)


def principal_from_claims(payload: dict, token: str) -> Principal | None:
    """Build a Principal from verified token claims; None when they carry no user."""
    user_id = payload.get("userId", payload.get("sub"))
    if user_id is None or user_id == "":
        return None

    roles = payload.get("roles") or []
    if isinstance(roles, str):
        roles = [roles]
    role_id = payload.get("roleId")
    try:
        role_id = int(role_id) if role_id not in (None, "") else None
    except (TypeError, ValueError):
        logger.warning("Ignoring non-numeric roleId claim: %r", role_id)
        role_id = None

    tenant_id = payload.get("tenantId")
    billing_status = payload.get("billingStatus")
    return Principal(
        user_id=user_id,
        token=token,
        role_id=role_id,
        roles=tuple(str(role) for role in roles if role),
        tenant_id=str(tenant_id) if tenant_id is not None else None,
        billing_status=str(billing_status) if billing_status else None,
    )
