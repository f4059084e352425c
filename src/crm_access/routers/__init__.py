from . import health, menu_access, roles  # noqa: F401
