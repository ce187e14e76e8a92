"""
Error taxonomy shared by the ledger, the reviewer protocol and the search index.

Every error carries a human readable ``detail``; the HTTP layer maps ``kind``
and ``status_code`` straight onto the response.
"""


class ChainIndexError(Exception):
    status_code = 400

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail

    @property
    def kind(self) -> str:
        return type(self).__name__


class ValidationError(ChainIndexError):
    """Malformed or out-of-range input."""
    status_code = 400


class AuthorizationError(ChainIndexError):
    """The acting identity lacks the role the operation requires."""
    status_code = 403


class NotFoundError(ChainIndexError):
    status_code = 404


class ConflictError(ChainIndexError):
    """The request contradicts current state (duplicate hash/DOI, inactive paper, ...)."""
    status_code = 409


class OracleRequestError(ChainIndexError):
    """The randomness oracle refused or failed to accept a request."""
    status_code = 503
