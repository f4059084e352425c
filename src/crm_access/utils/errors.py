"""
Error taxonomy shared by the access-control core.

Every failure that crosses a component boundary is expressed as an
``AccessError`` carrying an ``ErrorKind``. The upstream client raises them,
the resolver folds them into its snapshot and the routers translate them into
HTTP responses.
"""

import enum


class ErrorKind(enum.StrEnum):
    VALIDATION = "VALIDATION"
    ACCESS_DENIED = "ACCESS_DENIED"
    NETWORK = "NETWORK"
    PERSISTENCE_FAILURE = "PERSISTENCE_FAILURE"
    NOT_FOUND = "NOT_FOUND"
    UNKNOWN = "UNKNOWN"


class AccessError(Exception):
    """Base class for errors surfaced by the access-control core."""

    kind: ErrorKind = ErrorKind.UNKNOWN

    def __init__(self, message: str = "", *, status_code: int | None = None):
        super().__init__(message or self.kind.value)
        self.message = message or self.kind.value
        self.status_code = status_code


class ValidationFailure(AccessError):
    """Raised before any network call when a role payload is malformed."""

    kind = ErrorKind.VALIDATION

    def __init__(self, errors: dict[str, str]):
        summary = "; ".join(f"{field}: {msg}" for field, msg in errors.items())
        super().__init__(summary or "invalid input")
        self.errors = errors


class AccessDenied(AccessError):
    kind = ErrorKind.ACCESS_DENIED


class AuthenticationExpired(AccessError):
    # 401 from upstream: the token is no longer valid. Treated as "no grants",
    # not as an error state.
    kind = ErrorKind.ACCESS_DENIED


class NetworkFailure(AccessError):
    kind = ErrorKind.NETWORK


class PersistenceFailure(AccessError):
    kind = ErrorKind.PERSISTENCE_FAILURE


class NotFound(AccessError):
    kind = ErrorKind.NOT_FOUND


class UpstreamError(AccessError):
    """Any other non-success answer from the upstream CRM API."""

    kind = ErrorKind.UNKNOWN


HTTP_STATUS_BY_KIND = {
    ErrorKind.VALIDATION: 422,
    ErrorKind.ACCESS_DENIED: 403,
    ErrorKind.NETWORK: 503,
    ErrorKind.PERSISTENCE_FAILURE: 502,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.UNKNOWN: 502,
}


def http_status_for(error: AccessError) -> int:
    if isinstance(error, AuthenticationExpired):
        return 401
    return HTTP_STATUS_BY_KIND.get(error.kind, 502)
