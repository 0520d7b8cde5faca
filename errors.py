class IdentityError(Exception):
    """Base for failures raised while resolving an identity.

    The transport layer maps every subclass to the same opaque failure; `code`
    only shows up in logs.
    """

    code = "identity.failed"

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class StoreFailure(IdentityError):
    """A read or write against the contact store failed."""

    code = "store.failed"


class InvariantViolation(IdentityError):
    """The resolved component has no primary contact."""

    code = "identity.no_primary"
