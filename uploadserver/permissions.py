"""Permission groups and membership checks."""

from typing import Dict, Optional

from uploadserver.repositories.user_repository import User

PERMISSION_GROUPS: Dict[str, int] = {
    "user": 0,
    "vip": 5,
    "vvip": 10,
    "moderator": 50,
    "admin": 80,
    "superadmin": 100,
}

MODERATOR_GROUP = "moderator"


def is_member(user: Optional[User], group: str) -> bool:
    """
    Check whether a user belongs to a group or any group above it.

    Unknown groups never match.
    """
    if user is None or group not in PERMISSION_GROUPS:
        return False
    return user.permission >= PERMISSION_GROUPS[group]


def is_moderator(user: Optional[User]) -> bool:
    return is_member(user, MODERATOR_GROUP)
