class ChatloadError(Exception):
    """Base class for harness errors."""

    def __init__(self, message, session_id=None):
        super().__init__(message)
        self.session_id = session_id


class ConfigError(ChatloadError, ValueError):
    pass


class ConnectError(ChatloadError):
    """The WebSocket handshake did not complete with status 101."""


class SendError(ChatloadError):
    pass


class ProcessingError(ChatloadError):
    """A well-formed envelope could not be handled."""


class DecodeError(ChatloadError):
    def __init__(self, message, raw, session_id=None):
        super().__init__(message, session_id=session_id)
        self.raw = raw


class MalformedJSON(DecodeError):
    pass


class NotArray(DecodeError):
    pass
