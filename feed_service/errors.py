"""
Feed service exceptions.

Each error carries the HTTP status the API layer maps it to.
"""


class FeedError(Exception):
    """Base class for feed errors surfaced to callers."""
    status_code = 500


class AuthorizationError(FeedError):
    """Scope requires an authenticated user but none was supplied."""
    status_code = 401


class UnknownCategoryError(FeedError):
    """Category path parameter does not name a known category."""
    status_code = 404


class FeedUnavailableError(FeedError):
    """A downstream collaborator (e.g. content metadata store) is down."""
    status_code = 503
