"""Error taxonomy shared by the services and rendered by the API layer."""


class PrealertError(Exception):
    status_code = 500
    code = "error"
    retryable = False

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class Unauthorized(PrealertError):
    status_code = 401
    code = "unauthorized"


class Forbidden(PrealertError):
    status_code = 403
    code = "forbidden"


class NotFound(PrealertError):
    status_code = 404
    code = "not_found"


class Conflict(PrealertError):
    status_code = 409
    code = "conflict"
    retryable = True


class InvalidArgument(PrealertError):
    status_code = 422
    code = "invalid_argument"


class Unavailable(PrealertError):
    """The store or identity provider failed; the caller may retry."""

    status_code = 503
    code = "unavailable"
    retryable = True


class UpstreamUnavailable(PrealertError):
    """Routing service or recommendation oracle failed.

    Always caught inside the services and replaced by a fallback result.
    """

    status_code = 503
    code = "upstream_unavailable"
    retryable = True
