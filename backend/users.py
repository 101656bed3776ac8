import logging
import re
from typing import List, Optional, Tuple

from .errors import NotFoundError, ValidationError
from .models import GameSession, User
from .store import Store


logger = logging.getLogger(__name__)

# UUID v4, 8-4-4-4-12
USER_ID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)
MAX_USERNAME_LENGTH = 50


def is_valid_user_id(user_id) -> bool:
    return isinstance(user_id, str) and bool(USER_ID_PATTERN.match(user_id))


def is_valid_username(username) -> bool:
    return isinstance(username, str) and 0 < len(username.strip()) <= MAX_USERNAME_LENGTH


def user_to_dict(user: User) -> dict:
    return {"user_id": user.user_id, "username": user.username}


class UserRegistry:
    def __init__(self, store: Store):
        self.store = store

    def create(self, username: Optional[str] = None) -> User:
        if username is not None:
            if not isinstance(username, str):
                raise ValidationError("Username must be a string if provided", "Invalid username type")
            if not is_valid_username(username):
                raise ValidationError(
                    f"Username must be between 1 and {MAX_USERNAME_LENGTH} characters if provided",
                    "Invalid username length",
                )
            username = username.strip()
        user = self.store.create_user(username)
        logger.info("[USERS] Created user %s", user.user_id)
        return user

    def get(self, user_id: str) -> Optional[User]:
        if not is_valid_user_id(user_id):
            return None
        return self.store.get_user_by_id(user_id)

    def sessions_for(self, user_id: str) -> Tuple[User, List[GameSession]]:
        """Return the user together with their sessions, newest first."""
        if not is_valid_user_id(user_id):
            raise ValidationError("Invalid user ID format", "User ID must be a valid UUID")
        user = self.get(user_id)
        if user is None:
            raise NotFoundError("User not found", f"User with ID {user_id} does not exist")
        return user, self.store.get_sessions_for_user(user_id)
