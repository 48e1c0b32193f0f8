class IssuerError(Exception):
    """ Base class for everything the issuer raises. """


class InvalidRequest(IssuerError):
    """
    The caller supplied a request that can never succeed (no identity,
    non-positive TTL, missing role). Never retried.
    """


class ConfigurationError(IssuerError):
    """
    Raised while constructing a TrustConfig, BackendClient or PkiIssuer
    (or while reading the config file) when the settings are unusable.
    """


class Cancelled(IssuerError):
    """ The caller's deadline elapsed or its cancel event was set. """


class BackendError(IssuerError):
    """
    The backend could not be reached, answered with a non-2xx status or
    sent a body we could not decode.

    Args:
        message (str): human readable summary.
        path (str): the backend path that was requested.
        status (int): HTTP status code, or None for transport failures.
        errors (list): the literal error strings reported by the backend.
    """

    def __init__(self, message, path=None, status=None, errors=None):
        super().__init__(message)
        self.path = path
        self.status = status
        self.errors = list(errors or [])

    def __str__(self):
        text = super().__str__()
        if self.errors:
            text = f"{text}: {'; '.join(self.errors)}"
        if self.path:
            text = f"{text} (path: {self.path})"
        return text


class TTLExceeded(BackendError):
    """
    The backend refused (or would have shortened) the requested TTL
    because it exceeds the role's or mount's maximum lease TTL.
    """


class MalformedResponse(IssuerError):
    """
    The backend reported success but the payload is missing fields or is
    cryptographically inconsistent (key mismatch, broken chain).
    """

    def __init__(self, message, path=None):
        super().__init__(message)
        self.path = path
