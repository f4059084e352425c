"""Catalog icon keys -> icon component names understood by the SPA."""

FALLBACK_ICON = "HelpCircle"

ICON_MAP: dict[str, str] = {
    "bar-chart-3": "BarChart3",
    "users": "Users",
    "target": "Target",
    "check-square": "CheckSquare",
    "message-square": "MessageSquare",
    "building": "Building",
    "trending-up": "TrendingUp",
    "calendar": "Calendar",
    "file-text": "FileText",
    "user-plus": "UserPlus",
    "git-branch": "GitBranch",
    "quote": "Quote",
    "dollar-sign": "DollarSign",
    "phone": "Phone",
    "mail": "Mail",
    "activity": "Activity",
    "folder-open": "FolderOpen",
    "bell": "Bell",
    "sliders": "Sliders",
    "users-icon": "UsersIcon",
    "shield": "Shield",
    "wand-2": "Wand2",
    "volume-2": "Volume2",
    "megaphone": "Megaphone",
    "users-2": "Users2",
    "pen-tool": "PenTool",
    "database": "Database",
    "menu": "Menu",
    "home": "Home",
    # used by the basic account menu
    "user": "User",
    "lock": "Lock",
}


def resolve_icon(icon_key: str | None) -> str:
    if not icon_key:
        return FALLBACK_ICON
    return ICON_MAP.get(icon_key, FALLBACK_ICON)
