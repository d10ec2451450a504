"""Error taxonomy shared by the providers, the store and the HTTP layer.

Each error carries the HTTP status it maps to and the short label used in the
``{"error": ..., "message": ...}`` response envelope.
"""


class ChatError(Exception):
    """Base class for errors that end a chat turn."""

    status_code = 500
    error = "Internal server error"

    def __init__(self, message: str = "", error: str = ""):
        super().__init__(message or self.error)
        self.message = message or self.error
        if error:
            self.error = error


class InvalidRequest(ChatError):
    """Malformed message, conversation id or history."""

    status_code = 400
    error = "Invalid request"


class UnknownModel(ChatError):
    """The requested model id is not in the catalog."""

    status_code = 400
    error = "Invalid model"


class InvalidModel(ChatError):
    """The model id is not served by the provider it was sent to."""

    status_code = 404
    error = "Model not found"


class UpstreamUnavailable(ChatError):
    """Network failure or timeout talking to an upstream provider."""

    status_code = 502
    error = "External API error"


class ProviderError(ChatError):
    """A provider-specific step (handshake, token fetch, ...) failed."""

    status_code = 502
    error = "External API error"


class UnparseableResponse(ProviderError):
    """No extractor could pull text out of an upstream payload."""


class StorageFailure(ChatError):
    """Writing a transcript, the index or the insights artifact failed."""

    status_code = 500
    error = "Storage error"
