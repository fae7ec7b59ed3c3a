"""Error taxonomy shared by the store, the search mirror and the HTTP layer."""


class ValidationError(ValueError):
    """Malformed or contradictory input. Raised before any write happens."""

    def __init__(self, message: str, error_key: str = "validation"):
        super().__init__(message)
        self.error_key = error_key


class NotFoundError(LookupError):
    def __init__(self, message: str, error_key: str = "notfound"):
        super().__init__(message)
        self.error_key = error_key


class SearchBackendError(RuntimeError):
    """The search index rejected a query or could not be reached.

    ``status_code`` is 400 for queries the index cannot parse and 503 when
    the index itself is unavailable.
    """

    def __init__(self, message: str, status_code: int = 503, error_key: str = "searchbackend"):
        super().__init__(message)
        self.status_code = status_code
        self.error_key = error_key
