"""Exception taxonomy.

Fatal errors end the process. Connection failures drive reconnection.
Request errors never leave the dispatcher: they become an ``ErrorDetail``
in the response for that request.
"""


class LLMuleError(Exception):
    """Base class for all client errors."""


# -----------------------------------------------------------------------------
# Fatal (terminal, no retry)
# -----------------------------------------------------------------------------

class FatalSessionError(LLMuleError):
    """The session cannot continue and must not reconnect."""


class AuthenticationMissing(FatalSessionError):
    """No API key is available and none could be obtained."""


class AuthenticationFailed(FatalSessionError):
    """The network rejected our API key."""


class ReconnectBudgetExhausted(FatalSessionError):
    """Too many consecutive connection attempts failed."""

    def __init__(self, attempts: int, last_error: str = ""):
        self.attempts = attempts
        self.last_error = last_error
        msg = f"Gave up after {attempts} failed connection attempts"
        if last_error:
            msg = f"{msg} (last error: {last_error})"
        super().__init__(msg)


# -----------------------------------------------------------------------------
# Connection-level (recoverable)
# -----------------------------------------------------------------------------

class ConnectionFailure(LLMuleError):
    """The connection could not be opened or was lost."""


class ConnectTimeout(ConnectionFailure):
    """The connection did not open within the connect timeout."""


class TransportError(ConnectionFailure):
    """Network or handshake failure on the persistent connection."""


class ProtocolError(ConnectionFailure):
    """An inbound frame could not be understood."""


# -----------------------------------------------------------------------------
# Request-level (converted to an error response)
# -----------------------------------------------------------------------------

class RequestError(LLMuleError):
    """A failure confined to a single request."""

    code = "internal_error"


class ModelUnavailable(RequestError):
    code = "model_unavailable"


class ConcurrencyExceeded(RequestError):
    code = "concurrency_exceeded"


class BackendError(RequestError):
    code = "backend_error"


class InvalidRequest(RequestError):
    code = "invalid_request"


class InvalidTransition(LLMuleError):
    """A state transition not allowed by the session state machine."""
