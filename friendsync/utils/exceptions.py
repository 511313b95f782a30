from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    FORBIDDEN = "forbidden"
    FETCH_FAILED = "fetch_failed"
    MUTATION_FAILED = "mutation_failed"


class FriendSyncException(Exception):
    """Base exception for the application"""
    kind: Optional[ErrorKind] = None


class AuthenticationError(FriendSyncException):
    """Authentication related errors"""
    pass


class AuthorizationError(FriendSyncException):
    """Authorization related errors"""
    pass


class ValidationError(FriendSyncException):
    """Validation related errors"""
    kind = ErrorKind.MUTATION_FAILED


class NotFoundError(FriendSyncException):
    """Resource not found errors"""
    kind = ErrorKind.MUTATION_FAILED


class ConflictError(FriendSyncException):
    """Resource conflict errors"""
    kind = ErrorKind.MUTATION_FAILED


class UnauthenticatedError(AuthenticationError):
    """No current user is available"""
    kind = ErrorKind.UNAUTHENTICATED


class ForbiddenError(AuthorizationError):
    """The store rejected a mutation because of ownership rules"""
    kind = ErrorKind.FORBIDDEN


class FetchFailedError(FriendSyncException):
    """A read against the relationship store failed"""
    kind = ErrorKind.FETCH_FAILED


class MutationFailedError(FriendSyncException):
    """A write against the relationship store failed"""
    kind = ErrorKind.MUTATION_FAILED
