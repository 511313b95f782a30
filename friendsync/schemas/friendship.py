from pydantic import BaseModel, ConfigDict, EmailStr
from datetime import datetime
from typing import List, Optional
from enum import Enum

from friendsync.utils.exceptions import ErrorKind


class FriendshipStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    BLOCKED = "blocked"


class RequestDirection(str, Enum):
    INCOMING = "incoming"
    OUTGOING = "outgoing"


class ChangeType(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class FriendView(BaseModel):
    """One accepted edge, seen from the viewer's side"""
    model_config = ConfigDict(frozen=True)

    friend_user_id: str
    friend_email: str
    friend_name: Optional[str] = None
    friendship_id: str
    friendship_created_at: Optional[datetime] = None


class PendingRequestView(BaseModel):
    """One pending edge, tagged with its direction relative to the viewer"""
    model_config = ConfigDict(frozen=True)

    request_id: str
    requester_id: str
    requester_email: str
    requester_name: Optional[str] = None
    recipient_id: str
    direction: RequestDirection
    created_at: Optional[datetime] = None


class FriendshipStatusResult(BaseModel):
    status: Optional[FriendshipStatus] = None
    friendship_id: Optional[str] = None
    requester_id: Optional[str] = None
    # Set when the sentinel stands in for a failed lookup
    error: Optional[ErrorKind] = None

    @classmethod
    def none(cls, error: Optional[ErrorKind] = None) -> "FriendshipStatusResult":
        return cls(error=error)


class FriendRequestByEmail(BaseModel):
    email: EmailStr


class FriendRequestResult(BaseModel):
    message: str
    success: bool = True


class FriendshipChange(BaseModel):
    """Change-feed event; subscribers treat it as "something changed"."""
    type: ChangeType
    friendship_id: str
    requester_id: str
    recipient_id: str
    status: Optional[FriendshipStatus] = None
    timestamp: datetime

    def participants(self) -> List[str]:
        return [self.requester_id, self.recipient_id]


class FriendsList(BaseModel):
    friends: List[FriendView]
    total_count: int


class PendingRequests(BaseModel):
    requests: List[PendingRequestView]
    total_incoming: int
    total_outgoing: int


class FriendRequestCreate(BaseModel):
    # Validated by the service so every caller gets the same error
    email: str
