class ApplicationError(Exception):
    """Base class for errors raised while handling an admission request."""


class InvalidRequestError(ApplicationError):
    """The admission review is well-formed but cannot be evaluated."""
