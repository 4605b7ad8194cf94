"""
Role-based permission system (RBAC).

Roles, lowest to highest:
    Player → Moderator → Admin → Superuser

Each role lists its permissions explicitly; nothing is inherited. Superuser
holds ``FULL_ACCESS``, which grants everything.

Admins can grant moderator status per user at runtime with the
``admin.grantModerator`` and ``admin.revokeModerator`` events; the dispatcher
treats such a player as holding the ``moderator`` role for that call.

Every admin wire event maps to one permission in :data:`EVENT_PERMISSIONS`,
checked against the server-side session role before the event runs. The
client never asserts its own privileges.
"""

from enum import Enum

# ============================================================================
# ROLE DEFINITIONS
# ============================================================================


class Role(Enum):
    """User roles, ordered by privilege."""

    PLAYER = "player"
    MODERATOR = "moderator"
    ADMIN = "admin"
    SUPERUSER = "superuser"


# ============================================================================
# PERMISSION DEFINITIONS
# ============================================================================


class Permission(Enum):
    """Individual capabilities checked by the dispatcher and routes."""

    # Everyday communication and trading
    CHAT = "chat"
    DIRECT_MESSAGE = "direct_message"
    MAIL = "mail"
    FORUM_POST = "forum_post"
    TRADE = "trade"

    # Moderation
    MODERATE_FORUM = "moderate_forum"  # Lock, pin and delete topics/replies
    MUTE_USERS = "mute_users"
    SLOW_MODE = "slow_mode"

    # Administration
    BAN_USERS = "ban_users"
    BAN_IPS = "ban_ips"
    BROADCAST = "broadcast"  # System chat lines
    SYSTEM_MAIL = "system_mail"
    VIEW_METRICS = "view_metrics"
    MANAGE_MODERATORS = "manage_moderators"  # Runtime moderator grants

    FULL_ACCESS = "full_access"  # Superuser only


_PLAYER_PERMISSIONS = {
    Permission.CHAT,
    Permission.DIRECT_MESSAGE,
    Permission.MAIL,
    Permission.FORUM_POST,
    Permission.TRADE,
}

ROLE_PERMISSIONS: dict[Role, set[Permission]] = {
    Role.PLAYER: set(_PLAYER_PERMISSIONS),
    Role.MODERATOR: _PLAYER_PERMISSIONS
    | {
        Permission.MODERATE_FORUM,
        Permission.MUTE_USERS,
        Permission.SLOW_MODE,
    },
    Role.ADMIN: _PLAYER_PERMISSIONS
    | {
        Permission.MODERATE_FORUM,
        Permission.MUTE_USERS,
        Permission.SLOW_MODE,
        Permission.BAN_USERS,
        Permission.BAN_IPS,
        Permission.BROADCAST,
        Permission.SYSTEM_MAIL,
        Permission.VIEW_METRICS,
        Permission.MANAGE_MODERATORS,
    },
    Role.SUPERUSER: {Permission.FULL_ACCESS},
}

# Wire event type -> permission required to send it.
EVENT_PERMISSIONS: dict[str, Permission] = {
    "chat.send": Permission.CHAT,
    "chat.history": Permission.CHAT,
    "dm.send": Permission.DIRECT_MESSAGE,
    "dm.conversation": Permission.DIRECT_MESSAGE,
    "dm.markRead": Permission.DIRECT_MESSAGE,
    "dm.block": Permission.DIRECT_MESSAGE,
    "dm.unblock": Permission.DIRECT_MESSAGE,
    "mail.send": Permission.MAIL,
    "mail.fetch": Permission.MAIL,
    "mail.read": Permission.MAIL,
    "mail.delete": Permission.MAIL,
    "mail.archive": Permission.MAIL,
    "forum.createTopic": Permission.FORUM_POST,
    "forum.reply": Permission.FORUM_POST,
    "forum.get": Permission.FORUM_POST,
    "forum.list": Permission.FORUM_POST,
    "forum.lock": Permission.MODERATE_FORUM,
    "forum.pin": Permission.MODERATE_FORUM,
    "forum.delete": Permission.MODERATE_FORUM,
    "forum.deleteReply": Permission.MODERATE_FORUM,
    "trade.propose": Permission.TRADE,
    "trade.update": Permission.TRADE,
    "trade.confirm": Permission.TRADE,
    "trade.cancel": Permission.TRADE,
    "trade.get": Permission.TRADE,
    "trade.history": Permission.TRADE,
    "admin.muteUser": Permission.MUTE_USERS,
    "admin.unmuteUser": Permission.MUTE_USERS,
    "admin.slowMode": Permission.SLOW_MODE,
    "admin.banUser": Permission.BAN_USERS,
    "admin.unbanUser": Permission.BAN_USERS,
    "admin.banIp": Permission.BAN_IPS,
    "admin.unbanIp": Permission.BAN_IPS,
    "admin.broadcast": Permission.BROADCAST,
    "admin.systemMail": Permission.SYSTEM_MAIL,
    "admin.grantModerator": Permission.MANAGE_MODERATORS,
    "admin.revokeModerator": Permission.MANAGE_MODERATORS,
}


# ============================================================================
# PERMISSION CHECKING FUNCTIONS
# ============================================================================


def has_permission(role: str, permission: Permission) -> bool:
    """
    Check if a role has a specific permission.

    Args:
        role: Role string, case-insensitive.
        permission: Permission to check.

    Returns:
        True if granted. Unknown roles are denied everything.

    Example:
        >>> has_permission("moderator", Permission.MUTE_USERS)
        True
        >>> has_permission("player", Permission.BAN_USERS)
        False
    """
    try:
        role_enum = Role(role.lower())
    except ValueError:
        return False

    if role_enum == Role.SUPERUSER:
        return True

    return permission in ROLE_PERMISSIONS.get(role_enum, set())


def permission_for_event(event_type: str) -> Permission | None:
    return EVENT_PERMISSIONS.get(event_type)


# ============================================================================
# ROLE HIERARCHY FUNCTIONS
# ============================================================================

_HIERARCHY = {
    "player": 0,
    "moderator": 1,
    "admin": 2,
    "superuser": 3,
}


def get_role_hierarchy_level(role: str) -> int:
    """Numeric privilege level (0-3). Unknown roles rank as players."""
    return _HIERARCHY.get(role.lower(), 0)


def can_manage_role(manager_role: str, target_role: str) -> bool:
    """
    Check if a manager may mute or ban a target user.

    You can only sanction users strictly below your own level, so a
    moderator cannot mute an admin and nobody can sanction a peer.

    Example:
        >>> can_manage_role("admin", "moderator")
        True
        >>> can_manage_role("moderator", "moderator")
        False
    """
    return get_role_hierarchy_level(manager_role) > get_role_hierarchy_level(target_role)
