class RemoteError(Exception):
    """Base error raised by a remote store call."""

    retryable = True

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class RemoteTimeout(RemoteError):
    pass


class RemoteUnavailable(RemoteError):
    """Connection refused, DNS failure, 5xx."""


class RemoteRejected(RemoteError):
    """The server refused the request (4xx); retrying will not help."""

    retryable = False
