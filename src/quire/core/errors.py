"""Exception hierarchy for content operations."""


class QuireError(Exception):
    """Base class for all content-layer errors."""

    status_code: int = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(QuireError):
    """The addressed topic, subtopic or content entry does not exist."""

    status_code = 404


class ConflictError(QuireError):
    """A slug is already taken within its scope."""

    status_code = 409


class BadRequestError(QuireError):
    """The request passed field validation but cannot be carried out."""

    status_code = 400


class RevalidationError(QuireError):
    """A cache backend failed to invalidate a path.

    The content write that triggered the dispatch has already committed;
    ``revalidated`` lists the paths that were invalidated before the failure.
    """

    status_code = 502

    def __init__(self, message: str, revalidated: frozenset[str] = frozenset()):
        super().__init__(message)
        self.revalidated = revalidated
