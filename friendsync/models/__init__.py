from friendsync.models.user import User
from friendsync.models.friendship import Friendship

__all__ = ["User", "Friendship"]
